"""Tests for the task dispatcher and agent status derivation."""

from __future__ import annotations

from conductor.dispatcher import (
    TaskDispatcher,
    derive_agent_status,
    derive_agent_statuses,
    unsatisfied_dependencies,
)
from conductor.registry import AgentRegistry
from conductor.schemas.registry import AgentSpec, MilestoneSpec, PhaseSpec
from conductor.schemas.state import AgentStatus, AgentTask, OrchestratorState

# ── Factories ──────────────────────────────────────────────────────


def _make_registry() -> AgentRegistry:
    """models -> api -> test chain, plus an independent docs agent."""
    agents = [
        AgentSpec(id="models", capabilities={0: ("schema",), 1: ("models",)}, priority=10),
        AgentSpec(
            id="api",
            capabilities={0: ("health",), 1: ("crud",)},
            dependencies=("models",),
            priority=8,
        ),
        AgentSpec(id="test", capabilities={1: ("tests",)}, dependencies=("api",), priority=5),
        AgentSpec(id="docs", capabilities={0: ("readme",)}, dependencies=("test",), priority=1),
    ]
    phases = [
        PhaseSpec(
            number=0,
            name="Init",
            milestones=(
                MilestoneSpec(id="p0-db", name="DB", agents=("models",)),
                MilestoneSpec(id="p0-health", name="Health", agents=("api",)),
                MilestoneSpec(id="p0-readme", name="Readme", agents=("docs",)),
            ),
        ),
        PhaseSpec(
            number=1,
            name="Core",
            milestones=(
                MilestoneSpec(id="p1-models", name="Models", agents=("models",)),
                MilestoneSpec(id="p1-crud", name="CRUD", agents=("api", "test")),
                MilestoneSpec(id="p1-audit", name="Audit", agents=("api",)),
            ),
        ),
    ]
    return AgentRegistry(agents, phases)


def _make_flat_registry(priorities: dict[str, int] | None = None) -> AgentRegistry:
    """Independent agents, one milestone each, in phase 0."""
    priorities = priorities or {"alpha": 5, "beta": 5, "gamma": 5}
    agents = [
        AgentSpec(id=a, capabilities={0: ("work",)}, priority=p) for a, p in priorities.items()
    ]
    phases = [
        PhaseSpec(
            number=0,
            name="Flat",
            milestones=tuple(MilestoneSpec(id=f"m-{a}", name=a, agents=(a,)) for a in priorities),
        )
    ]
    return AgentRegistry(agents, phases)


def _make_task(
    seq: int,
    agent: str,
    milestone: str,
    status: AgentStatus = AgentStatus.COMPLETED,
    phase: int = 0,
    **overrides,
) -> AgentTask:
    return AgentTask(
        id=f"task-{seq:04d}-{agent}",
        agent_type=agent,
        phase=phase,
        milestone=milestone,
        sequence=seq,
        status=status,
        **overrides,
    )


def _make_state(*tasks: AgentTask, current_phase: int = 0) -> OrchestratorState:
    return OrchestratorState(
        current_phase=current_phase,
        history=[t for t in tasks if t.terminal],
        queue=[t for t in tasks if not t.terminal],
        next_sequence=len(tasks),
    )


# ── Agent status derivation ───────────────────────────────────────


class TestDeriveStatus:
    def test_initial_statuses(self):
        registry = _make_registry()
        assert derive_agent_statuses(_make_state(), registry) == {
            "models": AgentStatus.IDLE,
            "api": AgentStatus.WAITING,
            "test": AgentStatus.IDLE,
            "docs": AgentStatus.IDLE,
        }

    def test_active(self):
        state = _make_state(_make_task(0, "models", "p0-db", AgentStatus.ACTIVE))
        assert derive_agent_status(state, _make_registry(), "models") == AgentStatus.ACTIVE

    def test_completed_then_dependent_unblocks(self):
        registry = _make_registry()
        state = _make_state(_make_task(0, "models", "p0-db"))
        assert derive_agent_status(state, registry, "models") == AgentStatus.COMPLETED
        assert derive_agent_status(state, registry, "api") == AgentStatus.IDLE

    def test_failed(self):
        state = _make_state(
            _make_task(0, "models", "p0-db", AgentStatus.FAILED, error_kind="EXECUTION_FAILURE")
        )
        assert derive_agent_status(state, _make_registry(), "models") == AgentStatus.FAILED

    def test_failed_with_retry_queued_is_not_failed(self):
        state = _make_state(
            _make_task(0, "models", "p0-db", AgentStatus.FAILED, error_kind="EXECUTION_FAILURE"),
            _make_task(1, "models", "p0-db", AgentStatus.WAITING, manual=True),
        )
        assert derive_agent_status(state, _make_registry(), "models") == AgentStatus.IDLE


class TestDependencies:
    def test_dependency_without_phase_work_is_satisfied(self):
        """docs depends on test, which has nothing to do in phase 0."""
        assert unsatisfied_dependencies(_make_state(), _make_registry(), "docs") == []

    def test_dependency_must_finish_every_assignment(self):
        registry = _make_registry()
        state = _make_state(
            _make_task(0, "models", "p1-models", phase=1),
            _make_task(1, "api", "p1-crud", phase=1),
            current_phase=1,
        )
        assert unsatisfied_dependencies(state, registry, "test") == ["api"]


# ── Selection ──────────────────────────────────────────────────────


class TestCandidates:
    def test_initial_phase(self):
        """Only agents with satisfied dependencies are offered, by priority."""
        dispatcher = TaskDispatcher(_make_registry())
        chosen = dispatcher.candidates(_make_state())
        assert [(c.agent_type, c.milestone) for c in chosen] == [
            ("models", "p0-db"),
            ("docs", "p0-readme"),
        ]
        assert all(c.queued is None for c in chosen)

    def test_next_milestone_in_phase_order(self):
        registry = _make_registry()
        dispatcher = TaskDispatcher(registry)
        state = _make_state(
            _make_task(0, "models", "p1-models", phase=1),
            _make_task(1, "api", "p1-crud", phase=1),
            current_phase=1,
        )
        assert dispatcher.next_milestone(state, "api") == "p1-audit"
        assert [(c.agent_type, c.milestone) for c in dispatcher.candidates(state)] == [
            ("api", "p1-audit"),
        ]

    def test_agent_with_active_task_is_skipped(self):
        dispatcher = TaskDispatcher(_make_registry())
        state = _make_state(_make_task(0, "models", "p0-db", AgentStatus.ACTIVE))
        assert [c.agent_type for c in dispatcher.candidates(state)] == ["docs"]

    def test_failed_work_is_not_retried_automatically(self):
        dispatcher = TaskDispatcher(_make_registry())
        state = _make_state(
            _make_task(0, "models", "p0-db", AgentStatus.FAILED, error_kind="EXECUTION_FAILURE"),
            _make_task(1, "docs", "p0-readme"),
        )
        assert dispatcher.candidates(state) == []

    def test_queued_manual_task_bypasses_dependencies(self):
        dispatcher = TaskDispatcher(_make_registry())
        manual = _make_task(0, "api", "p0-health", AgentStatus.WAITING, manual=True, priority=3)
        state = _make_state(manual)
        api = next(c for c in dispatcher.candidates(state) if c.agent_type == "api")
        assert api.queued is not None
        assert api.queued.id == manual.id
        assert api.priority == 3

    def test_workflow_complete_has_no_candidates(self):
        dispatcher = TaskDispatcher(_make_registry())
        state = _make_state()
        state.workflow_complete = True
        assert dispatcher.candidates(state) == []


class TestOrdering:
    def test_priority_then_enumeration_order(self):
        dispatcher = TaskDispatcher(_make_flat_registry({"alpha": 1, "beta": 9, "gamma": 1}))
        assert [c.agent_type for c in dispatcher.candidates(_make_state())] == [
            "beta", "alpha", "gamma",
        ]

    def test_bias_reorders_but_never_excludes(self):
        penalties = {"alpha": 2, "beta": 0, "gamma": 1}
        dispatcher = TaskDispatcher(
            _make_flat_registry(), bias=lambda agent, phase: penalties[agent]
        )
        chosen = dispatcher.candidates(_make_state())
        assert [c.agent_type for c in chosen] == ["beta", "gamma", "alpha"]
        assert chosen[2].bias == 2

    def test_older_manual_task_goes_first_at_equal_priority(self):
        dispatcher = TaskDispatcher(_make_flat_registry())
        state = _make_state(
            _make_task(0, "gamma", "m-gamma", AgentStatus.WAITING, manual=True, priority=5),
        )
        assert dispatcher.candidates(state)[0].agent_type == "gamma"


class TestSelect:
    def test_capped_by_max_parallel(self):
        dispatcher = TaskDispatcher(_make_flat_registry(), max_parallel=2)
        assert [c.agent_type for c in dispatcher.select(_make_state())] == ["alpha", "beta"]

    def test_active_tasks_use_slots(self):
        dispatcher = TaskDispatcher(_make_flat_registry(), max_parallel=2)
        state = _make_state(_make_task(0, "alpha", "m-alpha", AgentStatus.ACTIVE))
        assert [c.agent_type for c in dispatcher.select(state)] == ["beta"]

    def test_no_free_slots(self):
        dispatcher = TaskDispatcher(_make_flat_registry(), max_parallel=1)
        state = _make_state(_make_task(0, "alpha", "m-alpha", AgentStatus.ACTIVE))
        assert dispatcher.select(state) == []

    def test_one_task_per_agent(self):
        """No agent appears twice in a selection."""
        dispatcher = TaskDispatcher(_make_registry(), max_parallel=10)
        state = _make_state(
            _make_task(0, "models", "p1-models", phase=1),
            current_phase=1,
        )
        agents = [c.agent_type for c in dispatcher.select(state)]
        assert len(agents) == len(set(agents))
