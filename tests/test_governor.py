"""Tests for the ConflictGovernor result classification."""

from __future__ import annotations

import itertools
from datetime import UTC, datetime

from conductor.governor import ConflictGovernor, conflict_error_kind
from conductor.schemas.results import AgentResult, Conflict, ConflictReport, Severity
from conductor.schemas.state import AgentStatus, AgentTask, OrchestratorState

_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


# ── Factories ──────────────────────────────────────────────────────


def _make_governor() -> ConflictGovernor:
    counter = itertools.count(1)
    return ConflictGovernor(id_factory=lambda: f"conflict-{next(counter)}", clock=lambda: _NOW)


def _make_task(agent: str = "security", milestone: str = "engineering-design-security-scan") -> AgentTask:
    return AgentTask(id=f"task-0007-{agent}", agent_type=agent, phase=4, milestone=milestone, sequence=7)


def _make_conflict(cid: str, requires_human_input: bool = True, resolved: bool = False) -> Conflict:
    return Conflict(
        id=cid,
        source_id="VULN-002",
        category="security",
        severity=Severity.CRITICAL,
        description="Hardcoded API Credentials",
        requires_human_input=requires_human_input,
        task_id="task-0007-security",
        agent_type="security",
        phase=4,
        milestone="engineering-design-security-scan",
        resolved=resolved,
    )


# ── Classification ─────────────────────────────────────────────────


class TestClassify:
    def test_success(self):
        verdict = _make_governor().classify(_make_task(), AgentResult(success=True))
        assert verdict.status == AgentStatus.COMPLETED
        assert verdict.succeeded
        assert not verdict.pause
        assert verdict.error_kind is None

    def test_plain_failure(self):
        verdict = _make_governor().classify(
            _make_task("api", "phase-1-crud"), AgentResult(success=False, output="tests failed")
        )
        assert verdict.status == AgentStatus.FAILED
        assert verdict.error_kind == "EXECUTION_FAILURE"
        assert verdict.error == "tests failed"
        assert not verdict.pause

    def test_failure_keeps_error_code(self):
        verdict = _make_governor().classify(
            _make_task(), AgentResult(success=False, error_code="TIMEOUT")
        )
        assert verdict.error_kind == "TIMEOUT"
        assert verdict.error == "security failed engineering-design-security-scan"

    def test_security_conflict_camel_case(self):
        """Agents may report conflicts with camelCase keys."""
        result = AgentResult(
            success=False,
            metadata={
                "conflicts": [
                    {
                        "sourceId": "VULN-002",
                        "category": "security",
                        "severity": "critical",
                        "description": "Hardcoded API Credentials",
                        "requiresHumanInput": True,
                    }
                ]
            },
        )
        verdict = _make_governor().classify(_make_task(), result)

        assert verdict.status == AgentStatus.FAILED
        assert verdict.error_kind == "SECURITY_CONFLICT"
        assert verdict.pause
        assert verdict.requires_human_input
        (conflict,) = verdict.conflicts
        assert conflict.id == "conflict-1"
        assert conflict.source_id == "VULN-002"
        assert conflict.severity == Severity.CRITICAL
        assert conflict.task_id == "task-0007-security"
        assert conflict.milestone == "engineering-design-security-scan"
        assert conflict.detected_at == _NOW
        assert not conflict.resolved

    def test_conflicts_override_success_flag(self):
        result = AgentResult(
            success=True,
            metadata={"conflicts": [ConflictReport(category="security", severity=Severity.LOW)]},
        )
        verdict = _make_governor().classify(_make_task(), result)
        assert verdict.status == AgentStatus.FAILED
        assert verdict.pause

    def test_other_category_kind(self):
        result = AgentResult(
            success=False,
            metadata={"conflicts": [{"category": "api contract", "severity": "high"}]},
        )
        verdict = _make_governor().classify(_make_task("api", "phase-1-crud"), result)
        assert verdict.error_kind == "API_CONTRACT_CONFLICT"

    def test_error_code_wins_over_category(self):
        result = AgentResult(
            success=False,
            error_code="LICENSE_CONFLICT",
            metadata={"conflicts": [{"category": "security"}]},
        )
        assert _make_governor().classify(_make_task(), result).error_kind == "LICENSE_CONFLICT"

    def test_each_conflict_gets_fresh_id(self):
        result = AgentResult(
            success=False,
            metadata={"conflicts": [{"sourceId": "VULN-002"}, {"sourceId": "VULN-003"}]},
        )
        verdict = _make_governor().classify(_make_task(), result)
        assert [c.id for c in verdict.conflicts] == ["conflict-1", "conflict-2"]
        assert "worst severity high" in verdict.error

    def test_advisory_only(self):
        result = AgentResult(
            success=False,
            metadata={"conflicts": [{"severity": "medium", "requiresHumanInput": False}]},
        )
        verdict = _make_governor().classify(_make_task(), result)
        assert verdict.pause
        assert not verdict.requires_human_input


class TestParseReports:
    def test_no_conflicts(self):
        assert _make_governor().parse_reports(AgentResult(success=True, metadata={"x": 1})) == []
        assert _make_governor().parse_reports(AgentResult(success=True, metadata={"conflicts": []})) == []

    def test_single_mapping_is_accepted(self):
        result = AgentResult(success=False, metadata={"conflicts": {"source_id": "VULN-009"}})
        (report,) = _make_governor().parse_reports(result)
        assert report.source_id == "VULN-009"

    def test_unparseable_entry_becomes_critical(self):
        """An entry that cannot be parsed is still a conflict signal."""
        result = AgentResult(
            success=False, metadata={"conflicts": [{"severity": "catastrophic"}, "oops"]}
        )
        reports = _make_governor().parse_reports(result)
        assert len(reports) == 2
        assert all(r.category == "unknown" for r in reports)
        assert all(r.severity == Severity.CRITICAL for r in reports)
        assert all(r.requires_human_input for r in reports)


def test_conflict_error_kind():
    assert conflict_error_kind("security") == "SECURITY_CONFLICT"
    assert conflict_error_kind(" Security ") == "SECURITY_CONFLICT"
    assert conflict_error_kind("data-model") == "DATA_MODEL_CONFLICT"
    assert conflict_error_kind("!!!") == "UNKNOWN_CONFLICT"


# ── Pause bookkeeping ──────────────────────────────────────────────


class TestPause:
    def test_not_paused(self):
        state = OrchestratorState()
        assert not ConflictGovernor.blocks_dispatch(state)
        assert not ConflictGovernor.can_auto_resume(state)
        assert ConflictGovernor.pause_reason(state) == ""

    def test_holding_conflicts_skip_resolved(self):
        state = OrchestratorState(
            paused=True,
            conflicts={
                "c1": _make_conflict("c1", resolved=True),
                "c2": _make_conflict("c2"),
            },
            pause_conflicts=["c1", "c2"],
        )
        assert [c.id for c in ConflictGovernor.holding_conflicts(state)] == ["c2"]
        assert ConflictGovernor.blocks_dispatch(state)

    def test_pause_reason_names_conflict_and_milestone(self):
        state = OrchestratorState(
            paused=True, conflicts={"c1": _make_conflict("c1")}, pause_conflicts=["c1"]
        )
        reason = ConflictGovernor.pause_reason(state)
        assert reason.startswith("Awaiting conflict resolution: c1 (critical)")
        assert "security/engineering-design-security-scan" in reason

    def test_auto_resume_only_for_advisory(self):
        advisory = OrchestratorState(
            paused=True,
            conflicts={"c1": _make_conflict("c1", requires_human_input=False)},
            pause_conflicts=["c1"],
        )
        blocking = OrchestratorState(
            paused=True,
            conflicts={
                "c1": _make_conflict("c1", requires_human_input=False),
                "c2": _make_conflict("c2"),
            },
            pause_conflicts=["c1", "c2"],
        )
        assert ConflictGovernor.can_auto_resume(advisory)
        assert not ConflictGovernor.can_auto_resume(blocking)

    def test_advisory_pause_does_not_block_dispatch(self):
        """Only conflicts that need a human stop dispatch."""
        advisory = OrchestratorState(
            paused=True,
            conflicts={"c1": _make_conflict("c1", requires_human_input=False)},
            pause_conflicts=["c1"],
        )
        assert advisory.paused
        assert not ConflictGovernor.blocks_dispatch(advisory)

        advisory.conflicts["c2"] = _make_conflict("c2")
        advisory.pause_conflicts.append("c2")
        assert ConflictGovernor.blocks_dispatch(advisory)
