"""Conflict governor.

Classifies agent results. A result whose metadata carries a non-empty
``conflicts`` list is a conflict pause, not an execution failure: the
task fails with a conflict error kind, every conflict is recorded with a
fresh id, and the workflow is paused until a human resolves them.
Conflicts that do not require human input are advisory; a pause held
only by advisory conflicts is lifted by the next successful result.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError

from conductor.schemas.results import (
    AgentResult,
    Conflict,
    ConflictReport,
    ErrorKind,
    Severity,
)
from conductor.schemas.state import AgentStatus, AgentTask, OrchestratorState, utcnow

logger = logging.getLogger(__name__)

_SECURITY = "security"
_NON_WORD = re.compile(r"[^A-Za-z0-9]+")


def _new_conflict_id() -> str:
    return f"conflict-{uuid.uuid4().hex[:12]}"


def conflict_error_kind(category: str) -> str:
    """Error kind for a conflict category: ``SECURITY_CONFLICT``, ``<CATEGORY>_CONFLICT``."""
    if category.strip().lower() == _SECURITY:
        return ErrorKind.SECURITY_CONFLICT.value
    name = _NON_WORD.sub("_", category.strip()).strip("_").upper() or "UNKNOWN"
    return f"{name}_CONFLICT"


@dataclass
class Classification:
    """How the engine must apply one result."""

    status: AgentStatus
    error_kind: str | None = None
    error: str = ""
    conflicts: list[Conflict] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == AgentStatus.COMPLETED

    @property
    def pause(self) -> bool:
        return bool(self.conflicts)

    @property
    def requires_human_input(self) -> bool:
        return any(c.requires_human_input for c in self.conflicts)


class ConflictGovernor:
    """Turns agent results into task outcomes and conflict records."""

    def __init__(
        self,
        id_factory: Callable[[], str] = _new_conflict_id,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._new_id = id_factory
        self._clock = clock

    def parse_reports(self, result: AgentResult) -> list[ConflictReport]:
        """Read the conflict list out of result metadata.

        Entries may use snake_case or camelCase keys. An entry that cannot
        be parsed is still a conflict signal and is recorded as a critical
        conflict requiring human input.
        """
        raw = result.metadata.get("conflicts") or []
        if not isinstance(raw, list):
            raw = [raw]

        reports: list[ConflictReport] = []
        for entry in raw:
            if isinstance(entry, ConflictReport):
                reports.append(entry)
                continue
            try:
                reports.append(ConflictReport.model_validate(entry))
            except ValidationError as e:
                logger.warning("Unparseable conflict entry %r: %s", entry, e)
                reports.append(
                    ConflictReport(
                        category="unknown",
                        severity=Severity.CRITICAL,
                        description=f"Unparseable conflict report: {entry!r}",
                        requires_human_input=True,
                    )
                )
        return reports

    def classify(self, task: AgentTask, result: AgentResult) -> Classification:
        """Classify one result for *task*."""
        reports = self.parse_reports(result)
        if reports:
            return self._conflict_outcome(task, result, reports)

        if result.success:
            return Classification(status=AgentStatus.COMPLETED)

        kind = result.error_code or ErrorKind.EXECUTION_FAILURE.value
        return Classification(
            status=AgentStatus.FAILED,
            error_kind=str(kind),
            error=result.output or f"{task.agent_type} failed {task.milestone}",
        )

    def _conflict_outcome(
        self, task: AgentTask, result: AgentResult, reports: list[ConflictReport]
    ) -> Classification:
        now = self._clock()
        conflicts = [
            Conflict(
                id=self._new_id(),
                source_id=r.source_id,
                category=r.category,
                severity=r.severity,
                description=r.description,
                recommendation=r.recommendation,
                requires_human_input=r.requires_human_input,
                task_id=task.id,
                agent_type=task.agent_type,
                phase=task.phase,
                milestone=task.milestone,
                detected_at=now,
            )
            for r in reports
        ]

        if result.error_code:
            kind = str(result.error_code)
        elif any(r.category.strip().lower() == _SECURITY for r in reports):
            kind = ErrorKind.SECURITY_CONFLICT.value
        else:
            kind = conflict_error_kind(reports[0].category)

        worst = max(conflicts, key=lambda c: c.severity.rank)
        logger.warning(
            "%s reported %d conflict(s) on %s (worst: %s %s)",
            task.agent_type, len(conflicts), task.milestone, worst.severity, worst.source_id,
        )
        return Classification(
            status=AgentStatus.FAILED,
            error_kind=kind,
            error=f"{len(conflicts)} conflict(s) detected, worst severity {worst.severity}",
            conflicts=conflicts,
        )

    # ── Pause bookkeeping ──

    @staticmethod
    def holding_conflicts(state: OrchestratorState) -> list[Conflict]:
        """Unresolved conflicts that currently hold the pause."""
        return [
            state.conflicts[cid]
            for cid in state.pause_conflicts
            if cid in state.conflicts and not state.conflicts[cid].resolved
        ]

    @classmethod
    def blocks_dispatch(cls, state: OrchestratorState) -> bool:
        """True if a holding conflict needs a human before any dispatch.

        A pause held only by advisory conflicts keeps dispatching so the
        next successful task on the milestone can clear it.
        """
        if not state.paused:
            return False
        return any(c.requires_human_input for c in cls.holding_conflicts(state))

    @classmethod
    def can_auto_resume(cls, state: OrchestratorState) -> bool:
        """True if the pause is held only by advisory conflicts."""
        if not state.paused:
            return False
        return not any(c.requires_human_input for c in cls.holding_conflicts(state))

    @classmethod
    def pause_reason(cls, state: OrchestratorState) -> str:
        if not state.paused:
            return ""
        holding = cls.holding_conflicts(state)
        if not holding:
            return "Paused"
        parts = [
            f"{c.id} ({c.severity}) {c.description or c.category} on {c.agent_type}/{c.milestone}"
            for c in holding
        ]
        return "Awaiting conflict resolution: " + "; ".join(parts)
