"""Task dispatcher.

Selects the tasks that may run now. Selection is a pure function of a
state snapshot, the registry and the lessons bias; the engine turns the
returned candidates into tasks. The one mutual-exclusion rule is that an
agent never has more than one queued-or-active task, so tasks for
different agents may run concurrently.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from conductor.registry import AgentRegistry
from conductor.schemas.state import AgentStatus, AgentTask, OrchestratorState

logger = logging.getLogger(__name__)

# Bias callback: (agent_type, phase) -> penalty, higher dispatches later
BiasFn = Callable[[str, int], int]


def _no_bias(agent_type: str, phase: int) -> int:
    return 0


def latest_tasks(state: OrchestratorState, agent_type: str, phase: int) -> dict[str, AgentTask]:
    """Latest non-abandoned task of *agent_type* per milestone of *phase*."""
    latest: dict[str, AgentTask] = {}
    for task in state.tasks_for(phase, agent=agent_type):
        latest[task.milestone] = task
    return latest


def derive_agent_status(
    state: OrchestratorState, registry: AgentRegistry, agent_type: str
) -> AgentStatus:
    """Runtime status of one agent in the current phase.

    - active: it has a task in flight
    - failed: a contribution failed and no retry is queued
    - completed: every milestone it contributes to has a completed task
    - waiting: it has work left but a dependency has not finished
    - idle: otherwise, including agents with no capability in the phase
    """
    phase = state.current_phase
    queued = state.queued_for(agent_type)
    if any(t.status == AgentStatus.ACTIVE for t in queued):
        return AgentStatus.ACTIVE
    if not registry.is_capable(agent_type, phase):
        return AgentStatus.IDLE

    assignments = registry.assignments(agent_type, phase)
    latest = latest_tasks(state, agent_type, phase)
    contributions = [latest.get(m.id) for m in assignments]

    if not queued:
        if any(t is not None and t.status == AgentStatus.FAILED for t in contributions):
            return AgentStatus.FAILED
        if contributions and all(
            t is not None and t.status == AgentStatus.COMPLETED for t in contributions
        ):
            return AgentStatus.COMPLETED

    has_work = bool(queued) or any(t is None for t in contributions)
    if has_work and unsatisfied_dependencies(state, registry, agent_type):
        return AgentStatus.WAITING
    return AgentStatus.IDLE


def derive_agent_statuses(
    state: OrchestratorState, registry: AgentRegistry
) -> dict[str, AgentStatus]:
    return {a: derive_agent_status(state, registry, a) for a in registry.agent_ids}


def unsatisfied_dependencies(
    state: OrchestratorState, registry: AgentRegistry, agent_type: str
) -> list[str]:
    """Dependencies of *agent_type* that have not finished their current-phase work.

    A dependency with no milestones in the current phase is satisfied.
    """
    phase = state.current_phase
    pending: list[str] = []
    for dep in registry.get(agent_type).dependencies:
        if not registry.assignments(dep, phase):
            continue
        if derive_agent_status(state, registry, dep) != AgentStatus.COMPLETED:
            pending.append(dep)
    return pending


@dataclass(frozen=True)
class DispatchCandidate:
    """One unit of work the dispatcher wants started.

    ``queued`` is set when the work is an already-queued manual task;
    otherwise the engine creates a new task for ``milestone``.
    """

    agent_type: str
    milestone: str
    priority: int
    sequence: int
    bias: int
    queued: AgentTask | None = None


class TaskDispatcher:
    """Computes eligible work for the current phase."""

    def __init__(
        self,
        registry: AgentRegistry,
        max_parallel: int = 4,
        bias: BiasFn | None = None,
    ) -> None:
        self._registry = registry
        self._max_parallel = max_parallel
        self._bias = bias or _no_bias

    def next_milestone(self, state: OrchestratorState, agent_type: str) -> str | None:
        """First milestone in phase order the agent contributes to without a task yet."""
        phase = state.current_phase
        latest = latest_tasks(state, agent_type, phase)
        for m in self._registry.assignments(agent_type, phase):
            if m.id not in latest:
                return m.id
        return None

    def candidates(self, state: OrchestratorState) -> list[DispatchCandidate]:
        """Every agent's next unit of work, ordered but not capped."""
        if state.workflow_complete:
            return []
        phase = state.current_phase
        out: list[DispatchCandidate] = []

        for agent_type in self._registry.agents_for_phase(phase):
            queued = state.queued_for(agent_type)
            if any(t.status == AgentStatus.ACTIVE for t in queued):
                continue
            spec = self._registry.get(agent_type)
            bias = self._bias(agent_type, phase)

            if queued:
                # Dependencies were checked when the manual task was deployed
                task = min(queued, key=lambda t: t.sequence)
                out.append(
                    DispatchCandidate(
                        agent_type=agent_type,
                        milestone=task.milestone,
                        priority=task.priority,
                        sequence=task.sequence,
                        bias=bias,
                        queued=task,
                    )
                )
                continue

            if derive_agent_status(state, self._registry, agent_type) != AgentStatus.IDLE:
                continue
            milestone = self.next_milestone(state, agent_type)
            if milestone is None:
                continue
            out.append(
                DispatchCandidate(
                    agent_type=agent_type,
                    milestone=milestone,
                    priority=spec.priority,
                    sequence=state.next_sequence,
                    bias=bias,
                )
            )

        out.sort(
            key=lambda c: (c.bias, -c.priority, c.sequence, self._registry.index(c.agent_type))
        )
        return out

    def select(self, state: OrchestratorState) -> list[DispatchCandidate]:
        """Candidates to start now, capped by the free parallel slots."""
        slots = self._max_parallel - len(state.active_tasks())
        if slots <= 0:
            return []
        chosen = self.candidates(state)[:slots]
        if chosen:
            logger.debug(
                "Dispatch order: %s",
                ", ".join(f"{c.agent_type}->{c.milestone}" for c in chosen),
            )
        return chosen
