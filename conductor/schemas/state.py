"""Orchestrator state schemas.

OrchestratorState is the root aggregate persisted to state.json. It is owned
by the engine; other components only ever see deep copies of it. Every model
rejects unknown fields so that a malformed state file fails loudly on load.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from conductor.schemas.results import Conflict, Severity

STATE_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(UTC)


class PhaseStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class AgentStatus(StrEnum):
    """Runtime status of an agent, also used as the status of a task.

    Tasks are WAITING while queued, ACTIVE in flight and COMPLETED or
    FAILED once terminal.
    """

    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"


class MilestoneStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_TERMINAL = frozenset({AgentStatus.COMPLETED, AgentStatus.FAILED})


class _StateModel(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class PhaseState(_StateModel):
    number: int = Field(ge=0)
    name: str
    status: PhaseStatus = PhaseStatus.NOT_STARTED


class MilestoneState(_StateModel):
    id: str
    phase: int = Field(ge=0)
    name: str
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING
    required_agents: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str = ""


class AgentTask(_StateModel):
    """A unit of dispatched work for one agent, tied to one milestone."""

    id: str
    agent_type: str
    phase: int = Field(ge=0)
    milestone: str
    description: str = ""
    priority: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    sequence: int = Field(default=0, ge=0, description="Creation order")
    status: AgentStatus = AgentStatus.WAITING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_kind: str | None = None
    error: str = ""
    estimated_duration: float = Field(default=60.0, gt=0.0)
    manual: bool = Field(default=False, description="Enqueued by deploy_agent")
    abandoned: bool = Field(default=False, description="Cancelled by a rollback")

    @property
    def terminal(self) -> bool:
        return self.status in _TERMINAL


class AgentMetrics(_StateModel):
    agent_type: str
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_duration: float = 0.0
    success_rate: float = 0.0
    last_active_at: datetime | None = None

    def observe(self, succeeded: bool, duration: float, when: datetime) -> None:
        if succeeded:
            self.tasks_completed += 1
            n = self.tasks_completed
            self.average_duration = (self.average_duration * (n - 1) + duration) / n
        else:
            self.tasks_failed += 1
        self.success_rate = self.tasks_completed / (self.tasks_completed + self.tasks_failed)
        self.last_active_at = when


class ErrorEntry(_StateModel):
    timestamp: datetime = Field(default_factory=utcnow)
    phase: int
    agent: str | None = None
    milestone: str | None = None
    kind: str = ""
    message: str
    severity: Severity = Severity.MEDIUM


class OrchestratorState(_StateModel):
    """Root aggregate of the orchestration engine."""

    schema_version: int = STATE_SCHEMA_VERSION
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    current_phase: int = Field(default=0, ge=0)
    workflow_complete: bool = False
    phases: list[PhaseState] = Field(default_factory=list)
    milestones: dict[str, MilestoneState] = Field(default_factory=dict)
    agents: dict[str, AgentStatus] = Field(default_factory=dict)
    queue: list[AgentTask] = Field(
        default_factory=list, description="Waiting and in-flight tasks"
    )
    history: list[AgentTask] = Field(
        default_factory=list, description="Archived terminal tasks, append-only"
    )
    conflicts: dict[str, Conflict] = Field(default_factory=dict)
    paused: bool = False
    pause_conflicts: list[str] = Field(
        default_factory=list, description="Unresolved conflict ids holding the pause"
    )
    metrics: dict[str, AgentMetrics] = Field(default_factory=dict)
    errors: list[ErrorEntry] = Field(default_factory=list)
    next_sequence: int = Field(default=0, ge=0)

    # ── Read helpers ──

    def phase(self, number: int) -> PhaseState:
        for p in self.phases:
            if p.number == number:
                return p
        raise KeyError(f"Unknown phase {number}")

    @property
    def current(self) -> PhaseState:
        return self.phase(self.current_phase)

    def all_tasks(self) -> Iterator[AgentTask]:
        """Archived then queued tasks, in creation order."""
        yield from sorted([*self.history, *self.queue], key=lambda t: t.sequence)

    def tasks_for(
        self,
        phase: int,
        *,
        milestone: str | None = None,
        agent: str | None = None,
        include_abandoned: bool = False,
    ) -> list[AgentTask]:
        return [
            t for t in self.all_tasks()
            if t.phase == phase
            and (milestone is None or t.milestone == milestone)
            and (agent is None or t.agent_type == agent)
            and (include_abandoned or not t.abandoned)
        ]

    def queued_for(self, agent: str) -> list[AgentTask]:
        return [t for t in self.queue if t.agent_type == agent]

    def active_tasks(self) -> list[AgentTask]:
        return [t for t in self.queue if t.status == AgentStatus.ACTIVE]

    def find_queued(self, task_id: str) -> AgentTask | None:
        for t in self.queue:
            if t.id == task_id:
                return t
        return None

    def unresolved_conflicts(self) -> list[Conflict]:
        return [c for c in self.conflicts.values() if not c.resolved]
