"""Agent result and conflict schemas.

AgentResult is what an executor hands back for one AgentTask. Conflicts are
carried inside its metadata as a ``conflicts`` list; the ConflictGovernor
turns each entry into an immutable Conflict record.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Severity(StrEnum):
    """Severity of a detected conflict."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ErrorKind(StrEnum):
    """Well-known task failure kinds.

    Conflict failures use ``<CATEGORY>_CONFLICT``; only the security
    category has a named member.
    """

    SECURITY_CONFLICT = "SECURITY_CONFLICT"
    EXECUTION_FAILURE = "EXECUTION_FAILURE"
    AGENT_EXCEPTION = "AGENT_EXCEPTION"
    ABANDONED = "ABANDONED"


class AgentResult(BaseModel):
    """Outcome of executing one AgentTask."""

    success: bool = Field(description="Whether the task achieved its goal")
    error_code: str | None = Field(default=None, description="Machine-readable failure code")
    output: str = Field(default="", description="Human-readable output summary")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Structured extras; a 'conflicts' list signals conflicts",
    )
    duration: float = Field(default=0.0, ge=0.0, description="Execution time in seconds")


class ConflictReport(BaseModel):
    """A conflict as reported by an agent, before it is recorded."""

    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(
        default="", alias="sourceId", description="Agent-side identifier (e.g. VULN-002)"
    )
    category: str = Field(default="security", description="Conflict category")
    severity: Severity = Field(default=Severity.HIGH)
    description: str = Field(default="", description="What was found")
    recommendation: str = Field(default="", description="Suggested remediation")
    requires_human_input: bool = Field(
        default=True,
        alias="requiresHumanInput",
        description="Whether only an explicit resolution may clear the pause",
    )


class Conflict(BaseModel):
    """A recorded conflict. Immutable; resolution replaces it with a copy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(description="Engine-assigned conflict id")
    source_id: str = Field(default="")
    category: str
    severity: Severity
    description: str = ""
    recommendation: str = ""
    requires_human_input: bool = True
    task_id: str
    agent_type: str
    phase: int
    milestone: str
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    resolved: bool = False
    resolved_at: datetime | None = None
    resolution_note: str = ""

    def resolve(self, note: str, when: datetime | None = None) -> Conflict:
        """Return a resolved copy of this conflict."""
        return self.model_copy(
            update={
                "resolved": True,
                "resolved_at": when or datetime.now(UTC),
                "resolution_note": note,
            }
        )
