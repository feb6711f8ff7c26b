"""Milestone validation.

A milestone's status is a pure function of task state: each agent the
milestone requires contributes one constituent, the latest non-abandoned
task for (phase, milestone, agent). Re-evaluating the same task state
always gives the same milestone set, which is what makes rollback followed
by re-advance deterministic.
"""

from __future__ import annotations

import logging

from conductor.registry import AgentRegistry
from conductor.schemas.reports import MilestoneReport
from conductor.schemas.state import (
    AgentStatus,
    AgentTask,
    MilestoneStatus,
    OrchestratorState,
    PhaseStatus,
)

logger = logging.getLogger(__name__)

_CONFLICT_SUFFIX = "_CONFLICT"


def is_conflict_kind(error_kind: str | None) -> bool:
    return bool(error_kind) and error_kind.endswith(_CONFLICT_SUFFIX)


class MilestoneValidator:
    """Evaluates milestone and phase completion against the phase plan."""

    def __init__(self, registry: AgentRegistry) -> None:
        self._registry = registry

    def constituents(
        self, state: OrchestratorState, milestone_id: str
    ) -> dict[str, AgentTask | None]:
        """Latest non-abandoned task per required agent (None if never dispatched)."""
        spec = self._registry.milestone(milestone_id)
        phase = self._registry.milestone_phase(milestone_id)
        latest: dict[str, AgentTask | None] = {agent: None for agent in spec.agents}
        for task in state.tasks_for(phase, milestone=milestone_id):
            if task.agent_type in latest:
                latest[task.agent_type] = task
        return latest

    def evaluate(self, state: OrchestratorState, milestone_id: str) -> MilestoneStatus:
        tasks = list(self.constituents(state, milestone_id).values())
        statuses = [t.status if t else None for t in tasks]
        if statuses and all(s == AgentStatus.COMPLETED for s in statuses):
            return MilestoneStatus.COMPLETED
        if AgentStatus.FAILED in statuses:
            return MilestoneStatus.FAILED
        if AgentStatus.ACTIVE in statuses or AgentStatus.COMPLETED in statuses:
            return MilestoneStatus.IN_PROGRESS
        return MilestoneStatus.PENDING

    def evaluate_phase(
        self, state: OrchestratorState, phase: int
    ) -> dict[str, MilestoneStatus]:
        """Status of every milestone of *phase*, in phase order."""
        return {m.id: self.evaluate(state, m.id) for m in self._registry.phase(phase).milestones}

    def detail(self, state: OrchestratorState, milestone_id: str) -> str:
        """Human-readable reason a milestone is not completed (empty if it is)."""
        parts: list[str] = []
        for agent, task in self.constituents(state, milestone_id).items():
            if task is None:
                parts.append(f"{agent}: pending")
            elif task.status == AgentStatus.FAILED:
                reason = task.error_kind or "failed"
                parts.append(f"{agent}: failed ({reason})")
            elif task.status != AgentStatus.COMPLETED:
                parts.append(f"{agent}: {task.status.value}")
        return "; ".join(parts)

    def failure_kinds(self, state: OrchestratorState, milestone_id: str) -> list[str]:
        return [
            t.error_kind or ""
            for t in self.constituents(state, milestone_id).values()
            if t is not None and t.status == AgentStatus.FAILED
        ]

    # ── Phase level ──

    def readiness(self, state: OrchestratorState, phase: int) -> tuple[bool, list[str]]:
        """Whether every milestone of *phase* is completed, and which are not."""
        blocking = [
            mid for mid, status in self.evaluate_phase(state, phase).items()
            if status != MilestoneStatus.COMPLETED
        ]
        return not blocking, blocking

    def is_blocked(self, state: OrchestratorState, phase: int) -> bool:
        """True if a milestone of *phase* failed for a reason other than a conflict.

        Conflict failures pause the whole workflow instead; they do not
        block the phase.
        """
        for mid, status in self.evaluate_phase(state, phase).items():
            if status != MilestoneStatus.FAILED:
                continue
            if any(not is_conflict_kind(k) for k in self.failure_kinds(state, mid)):
                return True
        return False

    def phase_status(self, state: OrchestratorState, phase: int) -> PhaseStatus:
        """Status of *phase* given its position relative to the current phase."""
        if phase < state.current_phase or (
            phase == state.current_phase and state.workflow_complete
        ):
            return PhaseStatus.COMPLETED
        if phase > state.current_phase:
            return PhaseStatus.NOT_STARTED
        if self.is_blocked(state, phase):
            return PhaseStatus.BLOCKED
        return PhaseStatus.IN_PROGRESS

    def reports(self, state: OrchestratorState, phase: int) -> list[MilestoneReport]:
        out: list[MilestoneReport] = []
        for m in self._registry.phase(phase).milestones:
            status = self.evaluate(state, m.id)
            out.append(
                MilestoneReport(
                    id=m.id,
                    name=m.name,
                    phase=phase,
                    status=status,
                    required_agents=list(m.agents),
                    detail="" if status == MilestoneStatus.COMPLETED else self.detail(state, m.id),
                )
            )
        return out

    def phase_progress(self, state: OrchestratorState, phase: int) -> float:
        statuses = list(self.evaluate_phase(state, phase).values())
        if not statuses:
            return 1.0
        done = sum(1 for s in statuses if s == MilestoneStatus.COMPLETED)
        return done / len(statuses)

    def overall_progress(self, state: OrchestratorState) -> float:
        """Fraction of the whole plan completed, counting earlier phases in full."""
        total = len(self._registry.phases)
        if state.workflow_complete:
            return 1.0
        done = state.current_phase + self.phase_progress(state, state.current_phase)
        return min(done / total, 1.0)
