"""Tests for the LessonsTracker outcome counters and dispatch bias."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from conductor.lessons import LessonsTracker, lesson_signature
from conductor.schemas.results import AgentResult
from conductor.schemas.state import AgentTask

_START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class _Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = _START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ── Factories ──────────────────────────────────────────────────────


def _make_task(agent: str = "api", phase: int = 1) -> AgentTask:
    return AgentTask(id=f"task-0000-{agent}", agent_type=agent, phase=phase, milestone="m")


def _ok(duration: float = 1.0) -> AgentResult:
    return AgentResult(success=True, duration=duration)


def _fail(duration: float = 1.0) -> AgentResult:
    return AgentResult(success=False, error_code="EXECUTION_FAILURE", duration=duration)


# ── Recording ──────────────────────────────────────────────────────


def test_signature_format():
    assert lesson_signature("api", 2, None) == "api:2:success"
    assert lesson_signature("security", 4, "SECURITY_CONFLICT") == "security:4:SECURITY_CONFLICT"


class TestRecord:
    def test_success_and_failure_are_separate_patterns(self):
        tracker = LessonsTracker(clock=_Clock())
        tracker.record(_make_task(), _ok())
        tracker.record(_make_task(), _fail(), "EXECUTION_FAILURE")

        assert [r.signature for r in tracker.records] == [
            "api:1:EXECUTION_FAILURE",
            "api:1:success",
        ]
        assert tracker.get("api", 1).is_failure is False
        assert tracker.get("api", 1, "EXECUTION_FAILURE").is_failure is True

    def test_occurrences_and_duration_accumulate(self):
        clock = _Clock()
        tracker = LessonsTracker(clock=clock)
        tracker.record(_make_task(), _ok(2.0))
        clock.advance(minutes=5)
        record = tracker.record(_make_task(), _ok(4.0))

        assert record.occurrences == 2
        assert record.total_duration == 6.0
        assert record.average_duration == 3.0
        assert record.first_seen == _START
        assert record.last_seen == _START + timedelta(minutes=5)

    def test_recent_timestamps_are_capped(self):
        tracker = LessonsTracker(clock=_Clock())
        for _ in range(60):
            record = tracker.record(_make_task(), _fail(), "EXECUTION_FAILURE")
        assert record.occurrences == 60
        assert len(record.recent) == 50

    def test_phase_is_part_of_the_key(self):
        tracker = LessonsTracker(clock=_Clock())
        tracker.record(_make_task(phase=1), _fail(), "EXECUTION_FAILURE")
        tracker.record(_make_task(phase=2), _fail(), "EXECUTION_FAILURE")
        assert tracker.get("api", 1, "EXECUTION_FAILURE").occurrences == 1
        assert tracker.get("api", 2, "EXECUTION_FAILURE").occurrences == 1


# ── Bias ───────────────────────────────────────────────────────────


class TestBias:
    def test_no_history_no_bias(self):
        assert LessonsTracker().bias_for("api", 1) == 0

    def test_successes_do_not_bias(self):
        tracker = LessonsTracker(clock=_Clock())
        tracker.record(_make_task(), _ok())
        assert tracker.bias_for("api", 1) == 0

    def test_recent_failures_count_across_reasons(self):
        tracker = LessonsTracker(clock=_Clock())
        tracker.record(_make_task(), _fail(), "EXECUTION_FAILURE")
        tracker.record(_make_task(), _fail(), "EXECUTION_FAILURE")
        tracker.record(_make_task(), _fail(), "AGENT_EXCEPTION")
        assert tracker.bias_for("api", 1) == 3
        assert tracker.bias_for("api", 2) == 0
        assert tracker.bias_for("test", 1) == 0

    def test_old_failures_fall_out_of_window(self):
        clock = _Clock()
        tracker = LessonsTracker(recency_days=7, clock=clock)
        tracker.record(_make_task(), _fail(), "EXECUTION_FAILURE")
        clock.advance(days=8)
        tracker.record(_make_task(), _fail(), "EXECUTION_FAILURE")
        assert tracker.bias_for("api", 1) == 1


# ── Recurring patterns ─────────────────────────────────────────────


class TestRecurring:
    def test_threshold(self):
        tracker = LessonsTracker(clock=_Clock())
        for _ in range(3):
            tracker.record(_make_task("api"), _fail(), "EXECUTION_FAILURE")
        for _ in range(2):
            tracker.record(_make_task("test"), _fail(), "EXECUTION_FAILURE")
        for _ in range(5):
            tracker.record(_make_task("models"), _ok())

        assert [r.signature for r in tracker.recurring(3)] == ["api:1:EXECUTION_FAILURE"]
        assert [r.signature for r in tracker.recurring(2)] == [
            "api:1:EXECUTION_FAILURE",
            "test:1:EXECUTION_FAILURE",
        ]

    def test_most_frequent_first(self):
        tracker = LessonsTracker(clock=_Clock())
        for _ in range(2):
            tracker.record(_make_task("api"), _fail(), "EXECUTION_FAILURE")
        for _ in range(4):
            tracker.record(_make_task("quality"), _fail(), "EXECUTION_FAILURE")
        assert tracker.recurring(2)[0].agent_type == "quality"


class TestSnapshotRestore:
    def test_restore_roundtrip(self):
        tracker = LessonsTracker(clock=_Clock())
        tracker.record(_make_task(), _fail(), "EXECUTION_FAILURE")
        snapshot = tracker.snapshot()

        other = LessonsTracker(clock=_Clock())
        other.restore(snapshot)
        assert other.get("api", 1, "EXECUTION_FAILURE").occurrences == 1
        assert other.bias_for("api", 1) == 1

    def test_snapshot_is_a_copy(self):
        tracker = LessonsTracker(clock=_Clock())
        tracker.record(_make_task(), _ok())
        snapshot = tracker.snapshot()
        snapshot[0].occurrences = 99
        assert tracker.get("api", 1).occurrences == 1
