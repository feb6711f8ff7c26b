"""Registry schemas: the immutable agent roster and phase plan.

Loaded once from agents.toml and phases.toml. Every model here is frozen;
the only mutable agent data (runtime status) lives in OrchestratorState.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class ExecutorKind(StrEnum):
    """Built-in executor implementations an agent can be bound to."""

    SIMULATED = "simulated"
    COMMAND = "command"
    SECURITY_SCAN = "security_scan"


class ExecutorConfig(BaseModel):
    """How an agent's tasks are executed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ExecutorKind = Field(
        default=ExecutorKind.SIMULATED, description="Executor implementation"
    )
    delay: float = Field(
        default=0.0, ge=0.0, description="Seconds a simulated task takes"
    )
    command: str = Field(
        default="", description="Shell command for the command executor"
    )
    cwd: str = Field(
        default="", description="Working directory for commands (empty = current)"
    )
    documents: str = Field(
        default="", description="Glob of design documents for the security scanner"
    )


class AgentSpec(BaseModel):
    """One entry of the agent capability table."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(description="Agent identity (e.g. 'api', 'security')")
    display_name: str = Field(default="", description="Human-friendly name")
    description: str = Field(default="", description="What the agent is responsible for")
    capabilities: dict[int, tuple[str, ...]] = Field(
        default_factory=dict,
        description="Capability names per phase number; missing phase = no capability",
    )
    dependencies: tuple[str, ...] = Field(
        default=(), description="Agents that must finish their phase work first"
    )
    priority: int = Field(default=0, description="Declared dispatch priority (higher first)")
    estimated_duration: float = Field(
        default=60.0, gt=0.0, description="Expected task duration in seconds"
    )
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)

    def capabilities_for(self, phase: int) -> tuple[str, ...]:
        """Return the agent's capability set for a phase (possibly empty)."""
        return self.capabilities.get(phase, ())

    @property
    def name(self) -> str:
        return self.display_name or self.id


class MilestoneSpec(BaseModel):
    """A named exit criterion of a phase."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(description="Globally unique milestone id")
    name: str = Field(description="Short milestone name")
    description: str = Field(default="", description="What the milestone delivers")
    agents: tuple[str, ...] = Field(
        description="Agents whose tasks must all complete for the milestone"
    )


class PhaseSpec(BaseModel):
    """One ordered stage of the workflow."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    number: int = Field(ge=0, description="Phase number, contiguous from 0")
    name: str = Field(description="Phase name")
    description: str = Field(default="", description="Phase summary")
    milestones: tuple[MilestoneSpec, ...] = Field(description="Required milestones")
    check_command: str = Field(
        default="", description="Optional command run by the 'test' operation"
    )
    exit_criteria: tuple[str, ...] = Field(
        default=(), description="Human-readable exit criteria for reports"
    )
