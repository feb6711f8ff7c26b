"""Conductor schema definitions.

All Pydantic v2 models used by the registry, engine state, agent results,
lessons and operator reports.
"""

from conductor.schemas.config import EngineConfig
from conductor.schemas.lessons import LessonRecord
from conductor.schemas.registry import (
    AgentSpec,
    ExecutorConfig,
    ExecutorKind,
    MilestoneSpec,
    PhaseSpec,
)
from conductor.schemas.reports import (
    EngineReport,
    HistoryStats,
    MilestoneReport,
    PhaseValidation,
    StatusReport,
    TickResult,
)
from conductor.schemas.results import (
    AgentResult,
    Conflict,
    ConflictReport,
    ErrorKind,
    Severity,
)
from conductor.schemas.state import (
    AgentMetrics,
    AgentStatus,
    AgentTask,
    ErrorEntry,
    MilestoneState,
    MilestoneStatus,
    OrchestratorState,
    PhaseState,
    PhaseStatus,
)

__all__ = [
    "AgentMetrics",
    "AgentResult",
    "AgentSpec",
    "AgentStatus",
    "AgentTask",
    "Conflict",
    "ConflictReport",
    "EngineConfig",
    "EngineReport",
    "ErrorEntry",
    "ErrorKind",
    "ExecutorConfig",
    "ExecutorKind",
    "HistoryStats",
    "LessonRecord",
    "MilestoneReport",
    "MilestoneSpec",
    "MilestoneState",
    "MilestoneStatus",
    "OrchestratorState",
    "PhaseSpec",
    "PhaseState",
    "PhaseStatus",
    "PhaseValidation",
    "Severity",
    "StatusReport",
    "TickResult",
]
