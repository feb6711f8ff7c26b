"""Lessons tracker: outcome counters that bias dispatch order.

Each applied task result increments the counter for its
(agent, phase, reason) pattern, where the reason is the task's error kind
or None for a success. Recent failures for an agent in a phase become a
dispatch penalty. The penalty only reorders candidates; it never blocks
an agent from being dispatched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from conductor.schemas.lessons import LessonRecord
from conductor.schemas.results import AgentResult
from conductor.schemas.state import AgentTask, utcnow

logger = logging.getLogger(__name__)

# Timestamps retained per pattern for the recency window
_RECENT_LIMIT = 50

_SUCCESS = "success"


def lesson_signature(agent_type: str, phase: int, reason: str | None) -> str:
    return f"{agent_type}:{phase}:{reason or _SUCCESS}"


class LessonsTracker:
    """Records task outcomes and surfaces recurring failure patterns."""

    def __init__(
        self,
        recency_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._window = timedelta(days=recency_days)
        self._clock = clock
        self._records: dict[str, LessonRecord] = {}

    @property
    def records(self) -> list[LessonRecord]:
        return sorted(self._records.values(), key=lambda r: r.signature)

    def get(self, agent_type: str, phase: int, reason: str | None = None) -> LessonRecord | None:
        return self._records.get(lesson_signature(agent_type, phase, reason))

    def record(
        self,
        task: AgentTask,
        result: AgentResult,
        error_kind: str | None = None,
    ) -> LessonRecord:
        """Count one outcome of *task*.

        Args:
            task: The task the result belongs to.
            result: The executor's result (its duration is accumulated).
            error_kind: Failure reason, or None when the task completed.
        """
        now = self._clock()
        signature = lesson_signature(task.agent_type, task.phase, error_kind)
        record = self._records.get(signature)
        if record is None:
            record = LessonRecord(
                signature=signature,
                agent_type=task.agent_type,
                phase=task.phase,
                reason=error_kind,
                first_seen=now,
                last_seen=now,
            )
            self._records[signature] = record

        record.occurrences += 1
        record.last_seen = now
        record.total_duration += result.duration
        record.recent.append(now)
        if len(record.recent) > _RECENT_LIMIT:
            del record.recent[: len(record.recent) - _RECENT_LIMIT]

        if record.is_failure:
            logger.debug(
                "Lesson %s now seen %d time(s)", signature, record.occurrences
            )
        return record

    def bias_for(self, agent_type: str, phase: int) -> int:
        """Number of failures of *agent_type* in *phase* within the recency window.

        Higher means the agent is dispatched later among otherwise equal
        candidates.
        """
        cutoff = self._clock() - self._window
        return sum(
            1
            for r in self._records.values()
            if r.is_failure and r.agent_type == agent_type and r.phase == phase
            for seen in r.recent
            if seen >= cutoff
        )

    def recurring(self, threshold: int = 3) -> list[LessonRecord]:
        """Failure patterns seen at least *threshold* times, most frequent first."""
        hits = [r for r in self._records.values() if r.is_failure and r.occurrences >= threshold]
        return sorted(hits, key=lambda r: (-r.occurrences, r.signature))

    def snapshot(self) -> list[LessonRecord]:
        return [r.model_copy(deep=True) for r in self.records]

    def restore(self, records: Iterable[LessonRecord]) -> None:
        self._records = {r.signature: r.model_copy(deep=True) for r in records}
