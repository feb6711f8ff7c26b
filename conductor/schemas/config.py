"""Engine configuration schema.

Loaded from defaults.toml and overridden by CONDUCTOR_* environment
variables. Read once when the engine starts.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Top-level configuration of the orchestration engine."""

    enabled: bool = Field(default=True, description="Master switch for the run loop")
    auto_advance: bool = Field(
        default=False, description="Advance automatically once a phase is complete"
    )
    tick_interval: float = Field(
        default=5.0, gt=0.0, description="Seconds between run-loop ticks"
    )
    max_parallel_agents: int = Field(
        default=4, ge=1, description="Upper bound on tasks dispatched per tick"
    )
    state_dir: str = Field(
        default=".conductor", description="Directory holding the persisted artifacts"
    )
    slow_task_check_interval: float = Field(
        default=1.0, gt=0.0, description="Seconds between slow-task checks"
    )
    lessons_recency_days: int = Field(
        default=7, ge=1, description="Window for failures counted by the dispatch bias"
    )
    recurring_threshold: int = Field(
        default=3, ge=2, description="Occurrences before a failure pattern is recurring"
    )
    max_error_entries: int = Field(
        default=100, ge=1, description="Errors retained inside state.json"
    )
    max_backups: int = Field(
        default=10, ge=1, description="State backups kept; older ones are pruned after each rollback"
    )
    history_enabled: bool = Field(
        default=True, description="Record task executions to the SQLite history"
    )
    history_db_path: str = Field(
        default="", description="History database path (empty = <state_dir>/history.db)"
    )

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def history_path(self) -> Path:
        if self.history_db_path:
            return Path(self.history_db_path).expanduser()
        return self.state_path / "history.db"
