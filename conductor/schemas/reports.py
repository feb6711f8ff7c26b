"""Read-only views returned by the engine's public operations."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from conductor.schemas.lessons import LessonRecord
from conductor.schemas.results import Conflict
from conductor.schemas.state import (
    AgentMetrics,
    AgentStatus,
    ErrorEntry,
    MilestoneStatus,
    PhaseStatus,
)


class MilestoneReport(BaseModel):
    """Status of one milestone with the reason it is not yet completed."""

    id: str
    name: str
    phase: int
    status: MilestoneStatus
    required_agents: list[str] = Field(default_factory=list)
    detail: str = Field(default="", description="Why the milestone is not completed")


class StatusReport(BaseModel):
    """Snapshot returned by ``status()``. Never partially applied."""

    version: int = 0
    current_phase: int = 0
    phase_name: str = ""
    phase_status: PhaseStatus = PhaseStatus.NOT_STARTED
    workflow_complete: bool = False
    running: bool = False
    paused: bool = False
    pause_reason: str = ""
    unresolved_conflicts: list[Conflict] = Field(default_factory=list)
    milestones: list[MilestoneReport] = Field(default_factory=list)
    blocked_milestones: list[str] = Field(default_factory=list)
    agents: dict[str, AgentStatus] = Field(default_factory=dict)
    queued_tasks: int = 0
    active_tasks: int = 0
    phase_progress: float = Field(default=0.0, ge=0.0, le=1.0)
    overall_progress: float = Field(default=0.0, ge=0.0, le=1.0)
    state_error: str = Field(default="", description="Set when state could not be loaded")


class PhaseValidation(BaseModel):
    """Result of validating the current phase without dispatching work."""

    phase: int
    phase_name: str
    ready: bool
    milestones: list[MilestoneReport] = Field(default_factory=list)
    blocking: list[str] = Field(default_factory=list)
    exit_criteria: list[str] = Field(default_factory=list)
    check_command: str = ""
    check_passed: bool | None = None
    check_output: str = ""


class TickResult(BaseModel):
    """What a single tick did."""

    version: int = 0
    dispatched: list[str] = Field(default_factory=list)
    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    discarded: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    paused: bool = False
    advanced: bool = False
    skipped_reason: str = ""


class HistoryStats(BaseModel):
    """Per-agent aggregate over the execution history database."""

    agent_type: str
    executions: int = 0
    successes: int = 0
    failures: int = 0
    average_duration: float = 0.0


class ExecutionRecord(BaseModel):
    """One row of the execution history database."""

    id: int = 0
    task_id: str
    agent_type: str
    phase: int
    milestone: str
    status: AgentStatus
    error_kind: str | None = None
    error: str = ""
    manual: bool = False
    duration: float = 0.0
    estimated_duration: float = 0.0
    conflict_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime
    state_version: int = 0


class EngineReport(BaseModel):
    """Full operator report returned by ``report()``."""

    generated_at: datetime
    status: StatusReport
    exit_criteria: list[str] = Field(default_factory=list)
    metrics: list[AgentMetrics] = Field(default_factory=list)
    recurring_lessons: list[LessonRecord] = Field(default_factory=list)
    recent_errors: list[ErrorEntry] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    completed_tasks: int = 0
    failed_tasks: int = 0
    estimated_completion: datetime | None = None
    history: list[HistoryStats] = Field(default_factory=list)
    total_executions: int = 0
    recent_executions: list[ExecutionRecord] = Field(default_factory=list)
    slow_tasks: list[str] = Field(
        default_factory=list, description="Tasks that overran their estimate in this process"
    )
    timeline: list[str] = Field(default_factory=list, description="Latest progress.md entries")
