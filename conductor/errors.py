"""Exception hierarchy for the Conductor orchestration engine.

Configuration errors are fatal to ``start()``. Dispatch and transition errors
are raised synchronously before any state mutation. Conflict pauses are not
errors at all; they are reported through ``status()``.
"""

from __future__ import annotations


class ConductorError(Exception):
    """Base exception for all engine errors."""


# ── Configuration ───────────────────────────────────────────────


class ConfigurationError(ConductorError):
    """Invalid configuration, registry or persisted state."""


class RegistryError(ConfigurationError):
    """The agent roster or phase plan is inconsistent."""


class StateCorruptError(ConfigurationError):
    """Persisted state failed schema or reference validation."""


class EngineDisabledError(ConfigurationError):
    """The engine is disabled by configuration."""


class StaleStateError(ConductorError):
    """A save was attempted with an older version than the persisted one."""


# ── Dispatch ────────────────────────────────────────────────────


class DispatchError(ConductorError):
    """A task could not be enqueued. No state was changed."""


class UnknownAgentError(DispatchError):
    """The agent type is not in the registry."""


class CapabilityMismatchError(DispatchError):
    """The agent has no declared capability for the current phase."""


class DependencyNotSatisfiedError(DispatchError):
    """An agent this one depends on has not finished its phase work."""


class AgentBusyError(DispatchError):
    """The agent already has a queued or in-flight task."""


class UnknownMilestoneError(DispatchError):
    """The milestone is not part of the current phase for this agent."""


# ── Phase transitions ───────────────────────────────────────────


class TransitionError(ConductorError):
    """A phase transition was refused. No state was changed."""


class PhaseNotReadyError(TransitionError):
    """The current phase still has milestones that are not completed."""

    def __init__(self, phase: int, blocking: list[str]) -> None:
        self.phase = phase
        self.blocking = list(blocking)
        detail = ", ".join(blocking) if blocking else "unknown"
        super().__init__(f"Phase {phase} is not ready to advance (blocking: {detail})")


class RollbackError(TransitionError):
    """There is no previous phase to roll back to."""


# ── Conflicts ───────────────────────────────────────────────────


class UnknownConflictError(ConductorError, LookupError):
    """No conflict with the given id has been recorded."""


# ── Backups ─────────────────────────────────────────────────────


class BackupNotFoundError(ConductorError, LookupError):
    """The requested state backup does not exist."""
