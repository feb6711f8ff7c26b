from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class LessonRecord(BaseModel):
    """Occurrence counter for one (agent, phase, reason) outcome pattern.

    ``reason`` is None for successful outcomes and the error kind otherwise.
    """

    model_config = ConfigDict(extra="forbid")

    signature: str
    agent_type: str
    phase: int = Field(ge=0)
    reason: str | None = None
    occurrences: int = Field(default=0, ge=0)
    first_seen: datetime
    last_seen: datetime
    total_duration: float = Field(default=0.0, ge=0.0)
    recent: list[datetime] = Field(
        default_factory=list, description="Timestamps of the latest occurrences"
    )

    @property
    def is_failure(self) -> bool:
        return self.reason is not None

    @property
    def average_duration(self) -> float:
        return self.total_duration / self.occurrences if self.occurrences else 0.0
