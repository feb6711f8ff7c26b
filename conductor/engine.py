"""Orchestrator engine: the top-level driver.

Owns the OrchestratorState aggregate, the run loop and every phase
transition, and composes the dispatcher, governor, validator, lessons
tracker, state store and execution history.

State discipline:
    Every mutation runs on a deep copy of the committed state while the
    state lock is held. The copy is committed (version bump, save, swap)
    only when the whole block succeeds; otherwise it is thrown away, so a
    failed operation never leaves a partially applied state behind. The
    committed state object is never modified in place, which lets
    ``status()`` read it without taking the lock.

Tick protocol:
    1. plan    (locked)   select tasks, mark them active, persist
    2. execute (unlocked) run executors concurrently, warn on slow tasks
    3. apply   (locked)   classify results in dispatch order, persist
    Results of tasks abandoned by a rollback in the meantime are
    discarded. Operator operations may interleave between the steps.

Shared state directory:
    An operator CLI and the run loop may share one state directory. Before
    each mutation the engine adopts a newer persisted version, so changes
    committed by another process are built on rather than overwritten.
    Tasks left active by a crashed run loop are re-queued by the first
    tick, never by operator commands.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from conductor.agents import AgentExecutor, build_executors, run_command, run_executor
from conductor.dispatcher import TaskDispatcher, derive_agent_statuses, unsatisfied_dependencies
from conductor.errors import (
    AgentBusyError,
    CapabilityMismatchError,
    ConductorError,
    ConfigurationError,
    DependencyNotSatisfiedError,
    DispatchError,
    EngineDisabledError,
    PhaseNotReadyError,
    RollbackError,
    StateCorruptError,
    UnknownConflictError,
    UnknownMilestoneError,
)
from conductor.events import EngineEventEmitter, EventType
from conductor.governor import ConflictGovernor
from conductor.lessons import LessonsTracker
from conductor.persistence.database import close_db, init_db
from conductor.persistence.history import ExecutionHistory
from conductor.persistence.store import StateStore
from conductor.registry import AgentRegistry, load_engine_config, load_registry
from conductor.schemas.config import EngineConfig
from conductor.schemas.reports import (
    EngineReport,
    PhaseValidation,
    StatusReport,
    TickResult,
)
from conductor.schemas.results import AgentResult, Conflict, ErrorKind, Severity
from conductor.schemas.state import (
    AgentMetrics,
    AgentStatus,
    AgentTask,
    ErrorEntry,
    MilestoneState,
    MilestoneStatus,
    OrchestratorState,
    PhaseState,
    utcnow,
)
from conductor.validator import MilestoneValidator

logger = logging.getLogger(__name__)

# Seconds a phase check command may run before it is killed
_CHECK_TIMEOUT = 300.0

# Rows shown in the operator report
_REPORT_ERRORS = 10
_REPORT_EXECUTIONS = 10
_REPORT_TIMELINE = 15


@dataclass
class _Effects:
    """Side effects of a mutation, flushed only after it succeeds."""

    progress: list[str] = field(default_factory=list)
    errors: list[ErrorEntry] = field(default_factory=list)
    events: list[tuple[EventType, dict[str, Any]]] = field(default_factory=list)
    executions: list[tuple[AgentTask, float, int]] = field(default_factory=list)
    outcomes: list[tuple[AgentTask, AgentResult, str | None]] = field(default_factory=list)

    def event(self, event_type: EventType, **data: Any) -> None:
        self.events.append((event_type, data))


class OrchestratorEngine:
    """Drives the phased workflow.

    Args:
        config: Engine configuration, read once.
        registry: Immutable agent roster and phase plan.
        executors: One executor per registered agent id.
        store: State store (defaults to one under ``config.state_dir``).
        lessons: Lessons tracker (defaults to a fresh one).
        emitter: Event emitter (defaults to a fresh one).
        history: Execution history; opened from config when None and
            ``config.history_enabled`` is set.
        root: Working directory for phase check commands.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        config: EngineConfig,
        registry: AgentRegistry,
        executors: Mapping[str, AgentExecutor],
        store: StateStore | None = None,
        lessons: LessonsTracker | None = None,
        emitter: EngineEventEmitter | None = None,
        history: ExecutionHistory | None = None,
        root: Path | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        missing = [a for a in registry.agent_ids if a not in executors]
        if missing:
            raise ConfigurationError(f"No executor configured for agent(s): {', '.join(missing)}")

        self._config = config
        self._registry = registry
        self._executors = dict(executors)
        self._store = store or StateStore(config.state_path)
        self._clock = clock
        self._lessons = lessons or LessonsTracker(config.lessons_recency_days, clock=clock)
        self.emitter = emitter or EngineEventEmitter()
        self._history = history
        self._db = None
        self._root = root

        self._validator = MilestoneValidator(registry)
        self._governor = ConflictGovernor(clock=clock)
        self._dispatcher = TaskDispatcher(
            registry, max_parallel=config.max_parallel_agents, bias=self._lessons.bias_for
        )

        self._state: OrchestratorState | None = None
        self._lock = asyncio.Lock()
        self._tick_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._recovered = False

    @classmethod
    def from_config(
        cls,
        config: EngineConfig | None = None,
        agents_path: Path | None = None,
        phases_path: Path | None = None,
        root: Path | None = None,
        **kwargs: Any,
    ) -> OrchestratorEngine:
        """Build an engine from the TOML configuration files."""
        config = config or load_engine_config()
        registry = load_registry(agents_path, phases_path)
        return cls(config, registry, build_executors(registry, root), root=root, **kwargs)

    # ── Accessors ──

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def lessons(self) -> LessonsTracker:
        return self._lessons

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def snapshot(self) -> OrchestratorState:
        """Deep copy of the committed state."""
        return self._require_state().model_copy(deep=True)

    def _require_state(self) -> OrchestratorState:
        if self._state is None:
            raise ConfigurationError("Engine is not open; call open() or start() first")
        return self._state

    # ── Lifecycle ──

    async def open(self) -> None:
        """Load or initialise state without starting the run loop.

        Raises:
            StateCorruptError: If persisted state is malformed or references
                agents, phases or milestones unknown to the registry.
        """
        async with self._lock:
            if self._state is not None:
                return

            state = self._store.load()
            self._lessons.restore(self._store.load_lessons())
            fx = _Effects()

            if state is None:
                state = self._initial_state()
                self._refresh(state, _Effects())
                state.version = 1
                self._store.save(state)
                phase = self._registry.phase(0)
                fx.progress.append(f"Workflow initialised at phase 0 ({phase.name})")
                logger.info("Initialised new workflow state in %s", self._store.state_dir)
            else:
                self._check_references(state)
                logger.info(
                    "Loaded state version %d (phase %d) from %s",
                    state.version, state.current_phase, self._store.state_dir,
                )

            self._state = state
            if self._config.history_enabled and self._history is None:
                self._db = await init_db(str(self._config.history_path))
                self._history = ExecutionHistory(self._db)

        await self._flush(fx)

    async def _recover_in_flight(self) -> None:
        """Re-queue tasks a crashed run loop left active. Runs once, before the first tick."""
        if self._recovered:
            return
        async with self._mutation() as (working, fx):
            recovered = [t for t in working.queue if t.status == AgentStatus.ACTIVE]
            for task in recovered:
                task.status = AgentStatus.WAITING
                task.started_at = None
                fx.progress.append(f"Re-queued `{task.id}` ({task.agent_type}) left in flight")
            if recovered:
                logger.warning("Re-queued %d task(s) left in flight by a previous run", len(recovered))
        self._recovered = True

    async def start(self) -> None:
        """Open state and begin the run loop in the background.

        Raises:
            EngineDisabledError: If the engine is disabled by configuration.
            StateCorruptError: If persisted state is invalid.
        """
        self._check_enabled()
        await self.open()
        if self.running:
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self.run(), name="conductor-run-loop")
        await self.emitter.emit(EventType.ENGINE_STARTED, version=self._require_state().version)
        logger.info("Engine started (tick interval %.1fs)", self._config.tick_interval)

    async def wait(self) -> None:
        """Wait for the background run loop to finish."""
        if self._loop_task is not None:
            await self._loop_task

    async def stop(self) -> None:
        """Stop the run loop after the tick in progress, if any, finishes."""
        self._stopping.set()
        task, self._loop_task = self._loop_task, None
        if task is not None:
            await task
            await self.emitter.emit(EventType.ENGINE_STOPPED)
            logger.info("Engine stopped")

    async def close(self) -> None:
        await self.stop()
        if self._db is not None:
            await close_db(self._db)
            self._db = None
            self._history = None

    async def run(self, max_ticks: int | None = None) -> int:
        """The run loop: tick, then sleep for the tick interval.

        Stops when the workflow completes, ``stop()`` is called or
        *max_ticks* ticks have run. A failed tick is logged and the loop
        carries on. Returns the number of ticks run.
        """
        self._check_enabled()
        await self.open()
        ticks = 0
        while not self._stopping.is_set():
            try:
                await self.tick()
            except (ConductorError, OSError) as e:
                logger.error("Tick failed: %s", e)
            ticks += 1
            if self._require_state().workflow_complete:
                logger.info("Workflow complete, run loop exiting")
                break
            if max_ticks is not None and ticks >= max_ticks:
                break
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._config.tick_interval)
            except TimeoutError:
                pass
        return ticks

    def _check_enabled(self) -> None:
        if not self._config.enabled:
            raise EngineDisabledError("Engine is disabled (CONDUCTOR_ENABLED=false)")

    # ── Status ──

    async def status(self) -> StatusReport:
        """Read-only snapshot of the workflow. Never raises.

        When the state cannot be loaded, the report carries the load error
        in ``state_error`` instead.
        """
        try:
            state = self._newer_persisted() or self._state
            if state is None:
                state = self._store.load()
                if state is None:
                    state = self._initial_state()
                    self._refresh(state, _Effects())
                else:
                    self._check_references(state)
            return self._status_from(state)
        except Exception as e:
            logger.exception("Could not build status report")
            return StatusReport(state_error=str(e), running=self.running)

    def _status_from(self, state: OrchestratorState) -> StatusReport:
        phase = state.current_phase
        milestones = self._validator.reports(state, phase)
        return StatusReport(
            version=state.version,
            current_phase=phase,
            phase_name=self._registry.phase(phase).name,
            phase_status=state.current.status,
            workflow_complete=state.workflow_complete,
            running=self.running,
            paused=state.paused,
            pause_reason=self._governor.pause_reason(state),
            unresolved_conflicts=state.unresolved_conflicts(),
            milestones=milestones,
            blocked_milestones=[
                m.id for m in milestones if m.status == MilestoneStatus.FAILED
            ],
            agents=dict(state.agents),
            queued_tasks=sum(1 for t in state.queue if t.status == AgentStatus.WAITING),
            active_tasks=len(state.active_tasks()),
            phase_progress=1.0 if state.workflow_complete else self._validator.phase_progress(state, phase),
            overall_progress=self._validator.overall_progress(state),
        )

    # ── Tick ──

    async def tick(self) -> TickResult:
        """Run one dispatch cycle.

        A no-op once the workflow is complete or while a conflict that
        needs a human holds the pause. Advisory pauses keep dispatching.
        """
        self._check_enabled()
        await self.open()
        async with self._tick_lock:
            await self._recover_in_flight()
            async with self._lock:
                self._reload_if_newer()
            state = self._require_state()
            if state.workflow_complete:
                return TickResult(version=state.version, skipped_reason="workflow complete")
            if self._governor.blocks_dispatch(state):
                return TickResult(
                    version=state.version,
                    paused=True,
                    skipped_reason=self._governor.pause_reason(state),
                )

            tasks = await self._plan()
            if not tasks:
                result = TickResult(
                    version=self._require_state().version, skipped_reason="no eligible tasks"
                )
            else:
                results = await self._execute(tasks)
                result = await self._apply(tasks, results)

            if self._config.auto_advance:
                result.advanced = await self._auto_advance()

            state = self._require_state()
            result.version = state.version
            result.paused = state.paused

        await self.emitter.emit(
            EventType.TICK_COMPLETED,
            version=result.version,
            dispatched=result.dispatched,
            completed=result.completed,
            failed=result.failed,
            paused=result.paused,
        )
        return result

    async def _plan(self) -> list[AgentTask]:
        planned: list[AgentTask] = []
        async with self._mutation() as (working, fx):
            if working.workflow_complete or self._governor.blocks_dispatch(working):
                return planned
            now = self._clock()
            for candidate in self._dispatcher.select(working):
                if candidate.queued is not None:
                    task = working.find_queued(candidate.queued.id)
                    if task is None:
                        continue
                else:
                    task = self._new_task(working, candidate.agent_type, candidate.milestone)
                    working.queue.append(task)
                task.status = AgentStatus.ACTIVE
                task.started_at = now
                planned.append(task.model_copy())
                fx.progress.append(
                    f"Dispatched **{task.agent_type}** for `{task.milestone}` ({task.id})"
                )
                fx.event(
                    EventType.TASK_DISPATCHED,
                    task_id=task.id,
                    agent=task.agent_type,
                    milestone=task.milestone,
                    phase=task.phase,
                    manual=task.manual,
                )
        return planned

    async def _execute(self, tasks: list[AgentTask]) -> dict[str, AgentResult]:
        futures = {
            asyncio.create_task(run_executor(self._executors[t.agent_type], t)): t for t in tasks
        }
        pending = set(futures)
        started = time.monotonic()
        warned: set[str] = set()
        try:
            while pending:
                _, pending = await asyncio.wait(
                    pending, timeout=self._config.slow_task_check_interval
                )
                elapsed = time.monotonic() - started
                for fut in pending:
                    task = futures[fut]
                    if task.id in warned or elapsed <= task.estimated_duration:
                        continue
                    warned.add(task.id)
                    logger.warning(
                        "Task %s (%s) is slow: %.1fs elapsed, %.1fs estimated",
                        task.id, task.agent_type, elapsed, task.estimated_duration,
                    )
                    await self.emitter.emit(
                        EventType.TASK_SLOW,
                        task_id=task.id,
                        agent=task.agent_type,
                        elapsed=elapsed,
                        estimated=task.estimated_duration,
                    )
        except asyncio.CancelledError:
            for fut in pending:
                fut.cancel()
            await self._requeue([t.id for t in tasks])
            raise
        return {futures[f].id: f.result() for f in futures}

    async def _apply(
        self, tasks: list[AgentTask], results: dict[str, AgentResult]
    ) -> TickResult:
        outcome = TickResult()
        try:
            async with self._mutation() as (working, fx):
                for dispatched in tasks:
                    self._apply_one(working, fx, dispatched, results[dispatched.id], outcome)
        except (ConductorError, OSError) as e:
            logger.error("Could not apply tick results: %s", e)
            await self._record_failure(e)
            await self._requeue([t.id for t in tasks])
            raise
        outcome.dispatched = [t.id for t in tasks]
        return outcome

    def _apply_one(
        self,
        working: OrchestratorState,
        fx: _Effects,
        dispatched: AgentTask,
        result: AgentResult,
        outcome: TickResult,
    ) -> None:
        task = working.find_queued(dispatched.id)
        if task is None or task.abandoned or task.phase != working.current_phase:
            logger.info("Discarding result of %s: task no longer belongs to the active phase", dispatched.id)
            outcome.discarded.append(dispatched.id)
            fx.progress.append(f"Discarded result of abandoned task `{dispatched.id}`")
            fx.event(
                EventType.RESULT_DISCARDED,
                task_id=dispatched.id,
                agent=dispatched.agent_type,
                phase=dispatched.phase,
            )
            return

        verdict = self._governor.classify(task, result)
        now = self._clock()
        task.status = verdict.status
        task.completed_at = now
        task.error_kind = verdict.error_kind
        task.error = verdict.error
        working.queue.remove(task)
        working.history.append(task)

        metrics = working.metrics.setdefault(task.agent_type, AgentMetrics(agent_type=task.agent_type))
        metrics.observe(verdict.succeeded, result.duration, now)
        fx.executions.append((task.model_copy(), result.duration, len(verdict.conflicts)))
        fx.outcomes.append((task.model_copy(), result, verdict.error_kind))

        if verdict.conflicts:
            outcome.failed.append(task.id)
            for conflict in verdict.conflicts:
                working.conflicts[conflict.id] = conflict
                working.pause_conflicts.append(conflict.id)
                outcome.conflicts.append(conflict.id)
                self._add_error(
                    working, fx,
                    ErrorEntry(
                        timestamp=now,
                        phase=task.phase,
                        agent=task.agent_type,
                        milestone=task.milestone,
                        kind=verdict.error_kind or "",
                        message=f"{conflict.id}: {conflict.description or conflict.category}",
                        severity=conflict.severity,
                    ),
                )
                fx.event(
                    EventType.CONFLICT_DETECTED,
                    conflict_id=conflict.id,
                    source_id=conflict.source_id,
                    category=conflict.category,
                    severity=conflict.severity.value,
                    requires_human_input=conflict.requires_human_input,
                    task_id=task.id,
                    agent=task.agent_type,
                    milestone=task.milestone,
                )
            fx.progress.append(
                f"**{task.agent_type}** reported {len(verdict.conflicts)} conflict(s) "
                f"on `{task.milestone}` ({verdict.error_kind})"
            )
            fx.event(
                EventType.TASK_FAILED,
                task_id=task.id,
                agent=task.agent_type,
                milestone=task.milestone,
                error_kind=verdict.error_kind,
            )
            if not working.paused:
                working.paused = True
                fx.progress.append("Workflow paused awaiting conflict resolution")
                fx.event(
                    EventType.WORKFLOW_PAUSED,
                    conflicts=[c.id for c in verdict.conflicts],
                    requires_human_input=verdict.requires_human_input,
                )
                logger.warning("Workflow paused by %d conflict(s)", len(verdict.conflicts))
            return

        if verdict.succeeded:
            outcome.completed.append(task.id)
            fx.progress.append(
                f"**{task.agent_type}** completed `{task.milestone}` in {result.duration:.1f}s"
            )
            fx.event(
                EventType.TASK_COMPLETED,
                task_id=task.id,
                agent=task.agent_type,
                milestone=task.milestone,
                duration=result.duration,
            )
            if self._governor.can_auto_resume(working):
                self._clear_pause(working, fx, "advisory conflicts superseded by a successful task")
            return

        outcome.failed.append(task.id)
        severity = Severity.HIGH
        self._add_error(
            working, fx,
            ErrorEntry(
                timestamp=now,
                phase=task.phase,
                agent=task.agent_type,
                milestone=task.milestone,
                kind=verdict.error_kind or "",
                message=verdict.error,
                severity=severity,
            ),
        )
        fx.progress.append(
            f"**{task.agent_type}** failed `{task.milestone}` ({verdict.error_kind})"
        )
        fx.event(
            EventType.TASK_FAILED,
            task_id=task.id,
            agent=task.agent_type,
            milestone=task.milestone,
            error_kind=verdict.error_kind,
            error=verdict.error,
        )

    async def _requeue(self, task_ids: list[str]) -> None:
        """Return tasks still marked active to the queue after a failed tick."""
        try:
            async with self._mutation() as (working, fx):
                for task_id in task_ids:
                    task = working.find_queued(task_id)
                    if task is not None and task.status == AgentStatus.ACTIVE:
                        task.status = AgentStatus.WAITING
                        task.started_at = None
                        fx.progress.append(f"Re-queued `{task_id}` after an interrupted tick")
        except (ConductorError, OSError):
            logger.exception("Could not re-queue tasks %s", task_ids)

    async def _auto_advance(self) -> bool:
        state = self._require_state()
        if state.paused or state.workflow_complete:
            return False
        ready, _ = self._validator.readiness(state, state.current_phase)
        if not ready:
            return False
        await self.advance_phase()
        return True

    # ── Validation ──

    async def validate_phase(self, run_checks: bool = False) -> PhaseValidation:
        """Evaluate the current phase without dispatching anything.

        Args:
            run_checks: Also run the phase's configured check command.
        """
        await self.open()
        state = self._require_state()
        spec = self._registry.phase(state.current_phase)
        ready, blocking = self._validator.readiness(state, spec.number)
        validation = PhaseValidation(
            phase=spec.number,
            phase_name=spec.name,
            ready=ready,
            milestones=self._validator.reports(state, spec.number),
            blocking=blocking,
            exit_criteria=list(spec.exit_criteria),
            check_command=spec.check_command,
        )
        if run_checks and spec.check_command:
            code, output = await run_command(
                spec.check_command, cwd=self._root, timeout=_CHECK_TIMEOUT
            )
            validation.check_passed = code == 0
            validation.check_output = output
            if code == 0:
                logger.info("Phase %d check passed", spec.number)
            else:
                logger.warning("Phase %d check failed (exit code %s)", spec.number, code)
        return validation

    # ── Phase transitions ──

    async def advance_phase(self) -> int:
        """Complete the current phase and move to the next.

        After the last phase the workflow is marked complete instead.
        Advancing a completed workflow is a no-op.

        Returns:
            The current phase number after the operation.

        Raises:
            PhaseNotReadyError: If any milestone of the phase is not
                completed. Nothing is changed.
        """
        await self.open()
        async with self._mutation() as (working, fx):
            if working.workflow_complete:
                return working.current_phase
            phase = working.current_phase
            ready, blocking = self._validator.readiness(working, phase)
            if not ready:
                raise PhaseNotReadyError(phase, blocking)

            self._abandon_tasks(working, fx, phase, "phase advanced")
            if phase == self._registry.last_phase:
                working.workflow_complete = True
                fx.progress.append(f"Phase {phase} completed, workflow complete")
                fx.event(EventType.WORKFLOW_COMPLETED, phase=phase)
                logger.info("Workflow complete")
            else:
                working.current_phase = phase + 1
                name = self._registry.phase(phase + 1).name
                fx.progress.append(f"Advanced from phase {phase} to phase {phase + 1} ({name})")
                fx.event(EventType.PHASE_ADVANCED, from_phase=phase, to_phase=phase + 1)
                logger.info("Advanced to phase %d (%s)", phase + 1, name)
            result = working.current_phase
        return result

    async def rollback_phase(self) -> int:
        """Move the current-phase pointer back by one.

        Task and milestone history is kept. Queued and in-flight tasks of
        the phase being left are abandoned; results that arrive for them
        later are discarded. Permitted while paused.

        Returns:
            The new current phase number.

        Raises:
            RollbackError: If the current phase is the first one.
        """
        await self.open()
        async with self._mutation() as (working, fx):
            phase = working.current_phase
            if phase == 0:
                raise RollbackError("Already at phase 0, nothing to roll back to")

            backup = self._store.backup(self._require_state(), when=self._clock())
            self._store.prune_backups(self._config.max_backups)
            abandoned = self._abandon_tasks(working, fx, phase, "phase rolled back")
            working.current_phase = phase - 1
            working.workflow_complete = False
            fx.progress.append(
                f"Rolled back from phase {phase} to phase {phase - 1} "
                f"({len(abandoned)} task(s) abandoned, backup {backup.name})"
            )
            fx.event(
                EventType.PHASE_ROLLED_BACK,
                from_phase=phase,
                to_phase=phase - 1,
                abandoned=abandoned,
                backup=str(backup),
            )
            logger.warning("Rolled back from phase %d to phase %d", phase, phase - 1)
            result = working.current_phase
        return result

    async def restore_backup(self, path: Path | str | None = None) -> OrchestratorState:
        """Replace the live state with a backup, the newest one by default.

        The restored snapshot is committed as a new version, so versions
        stay monotonic and task ids are never reused. Tasks the backup holds
        as in flight are re-queued.

        Returns:
            A copy of the state after the restore.

        Raises:
            BackupNotFoundError: If there is no such backup.
            StateCorruptError: If the backup is malformed or does not match
                the registry. Nothing is changed.
        """
        await self.open()
        async with self._mutation() as (working, fx):
            source, restored = self._store.load_backup(path)
            self._check_references(restored)
            backup_version = restored.version
            for task in restored.queue:
                if task.status == AgentStatus.ACTIVE:
                    task.status = AgentStatus.WAITING
                    task.started_at = None
            restored.version = working.version
            restored.next_sequence = max(restored.next_sequence, working.next_sequence)
            for name in OrchestratorState.model_fields:
                setattr(working, name, getattr(restored, name))

            fx.progress.append(
                f"Restored backup {source.name} (version {backup_version}, "
                f"phase {working.current_phase})"
            )
            fx.event(
                EventType.STATE_RESTORED,
                backup=str(source),
                backup_version=backup_version,
                phase=working.current_phase,
            )
            logger.warning("Restored state from %s (version %d)", source, backup_version)
        return self.snapshot()

    def _abandon_tasks(
        self, working: OrchestratorState, fx: _Effects, phase: int, reason: str
    ) -> list[str]:
        now = self._clock()
        abandoned: list[str] = []
        for task in [t for t in working.queue if t.phase == phase]:
            task.abandoned = True
            task.status = AgentStatus.FAILED
            task.error_kind = ErrorKind.ABANDONED.value
            task.error = reason
            task.completed_at = now
            working.queue.remove(task)
            working.history.append(task)
            abandoned.append(task.id)
        if abandoned:
            logger.info("Abandoned %d task(s): %s", len(abandoned), reason)
        return abandoned

    # ── Manual intervention ──

    async def deploy_agent(
        self,
        agent_type: str,
        milestone: str | None = None,
        description: str | None = None,
        priority: int | None = None,
        force: bool = False,
    ) -> AgentTask:
        """Enqueue a task for *agent_type*, bypassing automatic selection.

        This is also how a failed contribution is retried.

        Args:
            agent_type: Registered agent id.
            milestone: Milestone of the current phase to work on. Defaults
                to the agent's first milestone that is not completed.
            description: Task description.
            priority: Task priority (defaults to the agent's priority).
            force: Skip the dependency check.

        Raises:
            UnknownAgentError, CapabilityMismatchError, UnknownMilestoneError,
            AgentBusyError, DependencyNotSatisfiedError. No task is created.
        """
        await self.open()
        async with self._mutation() as (working, fx):
            spec = self._registry.get(agent_type)
            phase = working.current_phase
            if working.workflow_complete:
                raise DispatchError("Workflow is complete, nothing to deploy")
            if not self._registry.is_capable(agent_type, phase):
                raise CapabilityMismatchError(
                    f"Agent {agent_type} has no capability in phase {phase}"
                )

            assignments = [m.id for m in self._registry.assignments(agent_type, phase)]
            if milestone is None:
                milestone = self._default_milestone(working, agent_type, assignments)
            if milestone not in assignments:
                raise UnknownMilestoneError(
                    f"Milestone {milestone} is not assigned to {agent_type} in phase {phase}"
                )
            if working.queued_for(agent_type):
                raise AgentBusyError(f"Agent {agent_type} already has a queued or active task")
            if not force:
                pending = unsatisfied_dependencies(working, self._registry, agent_type)
                if pending:
                    raise DependencyNotSatisfiedError(
                        f"Agent {agent_type} is waiting on: {', '.join(pending)}"
                    )

            task = self._new_task(working, agent_type, milestone, description=description)
            task.manual = True
            task.priority = spec.priority if priority is None else priority
            working.queue.append(task)
            fx.progress.append(
                f"Manually deployed **{agent_type}** for `{milestone}` ({task.id})"
            )
            logger.info("Deployed %s for %s as %s", agent_type, milestone, task.id)
            result = task.model_copy()
        return result

    def _default_milestone(
        self, working: OrchestratorState, agent_type: str, assignments: list[str]
    ) -> str:
        if not assignments:
            raise UnknownMilestoneError(
                f"Agent {agent_type} has no milestone in phase {working.current_phase}"
            )
        for mid in assignments:
            latest = working.tasks_for(working.current_phase, milestone=mid, agent=agent_type)
            if not latest or latest[-1].status != AgentStatus.COMPLETED:
                return mid
        return assignments[0]

    async def resolve_conflict(self, conflict_id: str, note: str = "") -> Conflict:
        """Mark a conflict resolved.

        The pause is lifted once every conflict holding it is resolved.
        Resolving an already resolved conflict changes nothing.

        Raises:
            UnknownConflictError: If no conflict has this id.
        """
        await self.open()
        async with self._mutation() as (working, fx):
            conflict = working.conflicts.get(conflict_id)
            if conflict is None:
                raise UnknownConflictError(f"Unknown conflict: {conflict_id}")
            if conflict.resolved:
                return conflict

            resolved = conflict.resolve(note, when=self._clock())
            working.conflicts[conflict_id] = resolved
            fx.progress.append(f"Conflict `{conflict_id}` resolved: {note or 'no note'}")
            logger.info("Conflict %s resolved", conflict_id)

            if working.paused and not self._governor.holding_conflicts(working):
                self._clear_pause(working, fx, "all conflicts resolved")
        return resolved

    def _clear_pause(self, working: OrchestratorState, fx: _Effects, reason: str) -> None:
        working.paused = False
        working.pause_conflicts = []
        fx.progress.append(f"Workflow resumed ({reason})")
        fx.event(EventType.WORKFLOW_RESUMED, reason=reason)
        logger.info("Workflow resumed: %s", reason)

    # ── Report ──

    async def report(self) -> EngineReport:
        """Operator report: status, metrics, lessons, errors and estimates."""
        await self.open()
        state = self._newer_persisted() or self._require_state()
        phase = self._registry.phase(state.current_phase)
        history_stats, total, recent = [], 0, []
        if self._history is not None:
            history_stats = await self._history.stats()
            total = await self._history.count()
            recent = await self._history.recent(_REPORT_EXECUTIONS)
        terminal = [t for t in state.history if not t.abandoned]
        return EngineReport(
            generated_at=self._clock(),
            status=self._status_from(state),
            exit_criteria=list(phase.exit_criteria),
            metrics=[state.metrics[a] for a in self._registry.agent_ids if a in state.metrics],
            recurring_lessons=self._lessons.recurring(self._config.recurring_threshold),
            recent_errors=state.errors[-_REPORT_ERRORS:],
            conflicts=list(state.conflicts.values()),
            completed_tasks=sum(1 for t in terminal if t.status == AgentStatus.COMPLETED),
            failed_tasks=sum(1 for t in terminal if t.status == AgentStatus.FAILED),
            estimated_completion=self._estimate_completion(state),
            history=history_stats,
            total_executions=total,
            recent_executions=recent,
            slow_tasks=[e.data["task_id"] for e in self.emitter.history(EventType.TASK_SLOW)],
            timeline=self._store.read_progress(limit=_REPORT_TIMELINE),
        )

    def _estimate_completion(self, state: OrchestratorState) -> datetime | None:
        """Remaining contributions times their expected duration, spread over the workers."""
        if state.workflow_complete:
            return None
        seconds = 0.0
        for spec in self._registry.phases[state.current_phase:]:
            for m in spec.milestones:
                for agent in m.agents:
                    done = state.tasks_for(spec.number, milestone=m.id, agent=agent)
                    if done and done[-1].status == AgentStatus.COMPLETED:
                        continue
                    metrics = state.metrics.get(agent)
                    if metrics is not None and metrics.tasks_completed:
                        seconds += metrics.average_duration
                    else:
                        seconds += self._registry.get(agent).estimated_duration
                    seconds += self._config.tick_interval
        seconds /= self._config.max_parallel_agents
        return self._clock() + timedelta(seconds=seconds)

    # ── Mutation machinery ──

    @asynccontextmanager
    async def _mutation(self) -> AsyncIterator[tuple[OrchestratorState, _Effects]]:
        """Run a block against a working copy and commit it atomically."""
        fx = _Effects()
        async with self._lock:
            self._reload_if_newer()
            base = self._require_state()
            working = base.model_copy(deep=True)
            yield working, fx
            self._commit(base, working, fx)
        await self._flush(fx)

    def _newer_persisted(self) -> OrchestratorState | None:
        """State another process committed after ours, if any."""
        current = self._state
        if current is None:
            return None
        disk_version = self._store.persisted_version()
        if disk_version is None or disk_version <= current.version:
            return None
        state = self._store.load()
        if state is None:
            return None
        self._check_references(state)
        return state

    def _reload_if_newer(self) -> None:
        """Adopt a newer persisted state. The caller holds the state lock."""
        state = self._newer_persisted()
        if state is None:
            return
        logger.info(
            "Reloaded state version %d written by another process (had %d)",
            state.version, self._require_state().version,
        )
        self._state = state

    def _commit(self, base: OrchestratorState, working: OrchestratorState, fx: _Effects) -> bool:
        self._refresh(working, fx)
        if working.model_dump() == base.model_dump():
            return False
        working.version = base.version + 1
        working.updated_at = self._clock()
        self._store.save(working)
        self._state = working
        logger.debug("Committed state version %d", working.version)
        return True

    async def _flush(self, fx: _Effects) -> None:
        """Apply post-commit side effects. The state is already durable."""
        try:
            for line in fx.progress:
                self._store.append_progress(line, when=self._clock())
            for entry in fx.errors:
                self._store.append_error(entry)
        except OSError:
            logger.exception("Could not append to the audit trail")

        if fx.outcomes:
            threshold = self._config.recurring_threshold
            for task, result, error_kind in fx.outcomes:
                record = self._lessons.record(task, result, error_kind)
                if record.is_failure and record.occurrences == threshold:
                    logger.warning(
                        "Recurring failure: %s seen %d times", record.signature, record.occurrences
                    )
                    fx.event(
                        EventType.LESSON_RECURRING,
                        signature=record.signature,
                        agent=record.agent_type,
                        phase=record.phase,
                        reason=record.reason,
                        occurrences=record.occurrences,
                    )
            try:
                self._store.save_lessons(self._lessons.snapshot())
            except OSError:
                logger.exception("Could not save lessons")

        if self._history is not None and fx.executions:
            version = self._state.version if self._state else 0
            for task, duration, conflicts in fx.executions:
                try:
                    await self._history.record(task, duration, conflicts, state_version=version)
                except Exception:
                    logger.exception("Could not record execution of %s", task.id)

        for event_type, data in fx.events:
            await self.emitter.emit(event_type, **data)

    async def _record_failure(self, error: Exception) -> None:
        state = self._state
        entry = ErrorEntry(
            timestamp=self._clock(),
            phase=state.current_phase if state else 0,
            kind=type(error).__name__,
            message=str(error),
            severity=Severity.HIGH,
        )
        try:
            self._store.append_error(entry)
        except OSError:
            logger.exception("Could not append to the error log")
        await self.emitter.emit(EventType.ERROR, kind=entry.kind, message=entry.message)

    def _add_error(self, working: OrchestratorState, fx: _Effects, entry: ErrorEntry) -> None:
        working.errors.append(entry)
        overflow = len(working.errors) - self._config.max_error_entries
        if overflow > 0:
            del working.errors[:overflow]
        fx.errors.append(entry)

    def _new_task(
        self,
        working: OrchestratorState,
        agent_type: str,
        milestone: str,
        description: str | None = None,
    ) -> AgentTask:
        spec = self._registry.get(agent_type)
        seq = working.next_sequence
        working.next_sequence += 1
        return AgentTask(
            id=f"task-{seq:04d}-{agent_type}",
            agent_type=agent_type,
            phase=working.current_phase,
            milestone=milestone,
            description=description or f"{spec.name}: {self._registry.milestone(milestone).name}",
            priority=spec.priority,
            created_at=self._clock(),
            sequence=seq,
            estimated_duration=spec.estimated_duration,
        )

    # ── Derived state ──

    def _initial_state(self) -> OrchestratorState:
        now = self._clock()
        return OrchestratorState(
            created_at=now,
            updated_at=now,
            phases=[PhaseState(number=p.number, name=p.name) for p in self._registry.phases],
            milestones={
                m.id: MilestoneState(
                    id=m.id,
                    phase=p.number,
                    name=m.name,
                    description=m.description,
                    required_agents=list(m.agents),
                )
                for p in self._registry.phases
                for m in p.milestones
            },
            agents={a: AgentStatus.IDLE for a in self._registry.agent_ids},
            metrics={a: AgentMetrics(agent_type=a) for a in self._registry.agent_ids},
        )

    def _refresh(self, working: OrchestratorState, fx: _Effects) -> None:
        """Recompute milestone, phase and agent statuses from task state."""
        now = self._clock()
        for mid, milestone in working.milestones.items():
            status = self._validator.evaluate(working, mid)
            previous = milestone.status
            if status == previous:
                continue
            milestone.status = status
            if status != MilestoneStatus.PENDING and milestone.started_at is None:
                milestone.started_at = now
            milestone.completed_at = now if status == MilestoneStatus.COMPLETED else None
            milestone.error = (
                self._validator.detail(working, mid) if status == MilestoneStatus.FAILED else ""
            )
            if status == MilestoneStatus.COMPLETED:
                fx.progress.append(f"Milestone `{mid}` completed")
                fx.event(EventType.MILESTONE_COMPLETED, milestone=mid, phase=milestone.phase)
            elif status == MilestoneStatus.FAILED:
                fx.event(
                    EventType.MILESTONE_FAILED,
                    milestone=mid,
                    phase=milestone.phase,
                    detail=milestone.error,
                )

        for phase in working.phases:
            phase.status = self._validator.phase_status(working, phase.number)

        working.agents = derive_agent_statuses(working, self._registry)

    def _check_references(self, state: OrchestratorState) -> None:
        """Reject persisted state that does not match the registry."""
        problems: list[str] = []
        plan = [(p.number, p.name) for p in self._registry.phases]
        if [(p.number, p.name) for p in state.phases] != plan:
            problems.append("phase list does not match the phase plan")
        if not self._registry.has_phase(state.current_phase):
            problems.append(f"unknown current phase {state.current_phase}")

        expected = {m.id for p in self._registry.phases for m in p.milestones}
        if set(state.milestones) != expected:
            unknown = sorted(set(state.milestones) - expected)
            missing = sorted(expected - set(state.milestones))
            problems.append(f"milestones differ from the plan (unknown {unknown}, missing {missing})")

        for agent in state.agents:
            if not self._registry.has_agent(agent):
                problems.append(f"unknown agent {agent}")
        for task in [*state.queue, *state.history]:
            if not self._registry.has_agent(task.agent_type):
                problems.append(f"task {task.id} references unknown agent {task.agent_type}")
            if not self._registry.has_milestone(task.milestone):
                problems.append(f"task {task.id} references unknown milestone {task.milestone}")
        for cid in state.pause_conflicts:
            if cid not in state.conflicts:
                problems.append(f"pause references unknown conflict {cid}")

        if problems:
            raise StateCorruptError("Persisted state is inconsistent: " + "; ".join(problems))
