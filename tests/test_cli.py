"""Tests for the CLI.

Covers --help and --version, every command against a small two-phase plan
written to a temporary directory, JSON output and error exit codes.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from conductor.cli import app

# NO_COLOR=1 prevents Rich from injecting ANSI codes inside option names,
# which breaks substring matching in CI (headless, no TTY).
# COLUMNS=200 prevents wrapping that could split a flag across lines.
# History is off and ticks are short so each invocation is fast and hermetic.
runner = CliRunner(
    env={
        "NO_COLOR": "1",
        "COLUMNS": "200",
        "CONDUCTOR_HISTORY": "false",
        "CONDUCTOR_TICK_INTERVAL": "0.01",
        "CONDUCTOR_AUTO_ADVANCE": "false",
        "CONDUCTOR_ENABLED": "true",
    }
)

_AGENTS_TOML = """
[agents.models]
priority = 10
[agents.models.capabilities]
0 = ["schema"]
1 = ["models"]

[agents.api]
priority = 8
dependencies = ["models"]
[agents.api.capabilities]
0 = ["health"]
1 = ["crud"]

[agents.test]
priority = 5
dependencies = ["api"]
[agents.test.capabilities]
1 = ["tests"]
"""

_PHASES_TOML = """
[[phases]]
number = 0
name = "Init"
exit_criteria = ["Schema created"]

[[phases.milestones]]
id = "p0-db"
name = "DB"
agents = ["models"]

[[phases.milestones]]
id = "p0-health"
name = "Health"
agents = ["api"]

[[phases]]
number = 1
name = "Core"

[[phases.milestones]]
id = "p1-models"
name = "Models"
agents = ["models"]

[[phases.milestones]]
id = "p1-crud"
name = "CRUD"
agents = ["api", "test"]
"""


# ── Factories ──────────────────────────────────────────────────────


@pytest.fixture
def plan(tmp_path):
    """Global options pointing at a temporary plan and state directory."""
    agents = tmp_path / "agents.toml"
    phases = tmp_path / "phases.toml"
    agents.write_text(_AGENTS_TOML, encoding="utf-8")
    phases.write_text(_PHASES_TOML, encoding="utf-8")
    return [
        "--agents", str(agents),
        "--phases", str(phases),
        "--state-dir", str(tmp_path / "state"),
    ]


def _invoke(plan: list[str], *args: str):
    return runner.invoke(app, [*plan, *args])


def _status_json(plan: list[str]) -> dict:
    result = _invoke(plan, "status", "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


# ── Help & Version ─────────────────────────────────────────────────


class TestHelp:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "conductor 0.1.0" in result.output

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in (
            "start", "tick", "status", "test", "advance", "rollback", "restore", "deploy", "resolve", "report",
        ):
            assert command in result.output

    def test_deploy_help(self):
        result = runner.invoke(app, ["deploy", "--help"])
        assert result.exit_code == 0
        assert "--force" in result.output
        assert "--milestone" in result.output

    def test_missing_argument(self):
        result = runner.invoke(app, ["deploy"])
        assert result.exit_code != 0

    def test_missing_plan_file(self, tmp_path):
        result = runner.invoke(app, ["--agents", str(tmp_path / "nope.toml"), "status"])
        assert result.exit_code == 1
        assert "Error loading configuration" in result.output


# ── Status ─────────────────────────────────────────────────────────


class TestStatus:
    def test_fresh_status(self, plan):
        result = _invoke(plan, "status")
        assert result.exit_code == 0
        assert "Phase 0: Init" in result.output
        assert "p0-db" in result.output

    def test_json(self, plan):
        data = _status_json(plan)
        assert data["current_phase"] == 0
        assert data["phase_name"] == "Init"
        assert data["paused"] is False
        assert [m["id"] for m in data["milestones"]] == ["p0-db", "p0-health"]

    def test_corrupt_state_is_reported(self, plan, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        (state_dir / "state.json").write_text("{", encoding="utf-8")
        result = _invoke(plan, "status")
        assert result.exit_code == 0
        assert "State unavailable" in result.output


# ── Tick & Start ───────────────────────────────────────────────────


class TestTick:
    def test_single_tick(self, plan):
        result = _invoke(plan, "tick")
        assert result.exit_code == 0, result.output
        assert "1 completed" in result.output

        data = _status_json(plan)
        assert data["agents"]["models"] == "completed"
        assert data["phase_progress"] == 0.5

    def test_multiple_ticks(self, plan):
        result = _invoke(plan, "tick", "--count", "3")
        assert result.exit_code == 0, result.output
        assert "Tick skipped: no eligible tasks" in result.output

    def test_disabled_engine(self, plan):
        result = runner.invoke(app, [*plan, "tick"], env={"CONDUCTOR_ENABLED": "false"})
        assert result.exit_code == 1
        assert "EngineDisabledError" in result.output

    def test_start_with_max_ticks(self, plan):
        result = _invoke(plan, "start", "--max-ticks", "2")
        assert result.exit_code == 0, result.output
        assert "Conductor engine started" in result.output
        assert "Ran 2 tick(s)" in result.output
        assert _status_json(plan)["milestones"][1]["status"] == "completed"
        assert "models completed p0-db" in result.output
        assert "milestone p0-health completed" in result.output

    def test_start_without_trace(self, plan):
        result = _invoke(plan, "start", "--max-ticks", "1", "--no-trace")
        assert result.exit_code == 0, result.output
        assert "completed p0-db" not in result.output


# ── Phase transitions ──────────────────────────────────────────────


class TestTransitions:
    def test_advance_not_ready(self, plan):
        result = _invoke(plan, "advance")
        assert result.exit_code == 1
        assert "Phase 0 is not ready to advance." in result.output
        assert "p0-health" in result.output

    def test_advance_after_completion(self, plan):
        _invoke(plan, "tick", "-n", "2")
        result = _invoke(plan, "advance")
        assert result.exit_code == 0, result.output
        assert "Now in phase 1:" in result.output
        assert _status_json(plan)["current_phase"] == 1

    def test_rollback_at_phase_0(self, plan):
        result = _invoke(plan, "rollback", "--yes")
        assert result.exit_code == 1
        assert "RollbackError" in result.output

    def test_rollback_confirmation_declined(self, plan):
        result = runner.invoke(app, [*plan, "rollback"], input="n\n")
        assert result.exit_code == 0
        assert "Rolled back" not in result.output

    def test_rollback_after_advance(self, plan):
        _invoke(plan, "tick", "-n", "2")
        _invoke(plan, "advance")
        result = _invoke(plan, "rollback", "-y")
        assert result.exit_code == 0, result.output
        assert "Rolled back to phase 0" in result.output

    def test_restore_after_rollback(self, plan):
        _invoke(plan, "tick", "-n", "2")
        _invoke(plan, "advance")
        _invoke(plan, "rollback", "-y")
        version = _status_json(plan)["version"]

        result = _invoke(plan, "restore", "--yes")
        assert result.exit_code == 0, result.output
        assert f"Restored phase 1 as state version {version + 1}" in result.output
        assert _status_json(plan)["current_phase"] == 1

    def test_restore_without_backup(self, plan):
        result = _invoke(plan, "restore", "-y")
        assert result.exit_code == 1
        assert "BackupNotFoundError" in result.output

    def test_restore_confirmation_declined(self, plan):
        result = runner.invoke(app, [*plan, "restore"], input="n\n")
        assert result.exit_code == 0
        assert "Restored" not in result.output

    def test_validate_phase(self, plan):
        result = _invoke(plan, "test")
        assert result.exit_code == 0
        assert "not ready" in result.output
        assert "Schema created" in result.output


# ── Manual intervention ────────────────────────────────────────────


class TestDeploy:
    def test_deploy_queues_task(self, plan):
        result = _invoke(plan, "deploy", "models", "-d", "Rebuild schema")
        assert result.exit_code == 0, result.output
        assert "task-0000-models" in result.output
        assert "manual" in result.output
        assert _status_json(plan)["queued_tasks"] == 1

    def test_capability_mismatch(self, plan):
        result = _invoke(plan, "deploy", "test")
        assert result.exit_code == 1
        assert "CapabilityMismatchError" in result.output

    def test_dependency_needs_force(self, plan):
        refused = _invoke(plan, "deploy", "api")
        assert refused.exit_code == 1
        assert "DependencyNotSatisfiedError" in refused.output

        forced = _invoke(plan, "deploy", "api", "--force", "-p", "3")
        assert forced.exit_code == 0, forced.output
        assert "priority 3" in forced.output

    def test_unknown_agent(self, plan):
        result = _invoke(plan, "deploy", "ghost")
        assert result.exit_code == 1
        assert "UnknownAgentError" in result.output

    def test_resolve_unknown_conflict(self, plan):
        result = _invoke(plan, "resolve", "conflict-missing", "--note", "n/a")
        assert result.exit_code == 1
        assert "UnknownConflictError" in result.output


# ── Report ─────────────────────────────────────────────────────────


class TestReport:
    def test_report(self, plan):
        _invoke(plan, "tick")
        result = _invoke(plan, "report")
        assert result.exit_code == 0, result.output
        assert "Summary" in result.output

    def test_report_json(self, plan):
        _invoke(plan, "tick", "-n", "2")
        result = _invoke(plan, "report", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["completed_tasks"] == 2
        assert data["failed_tasks"] == 0
        assert data["exit_criteria"] == ["Schema created"]
        assert data["history"] == []
        assert data["total_executions"] == 0
        assert any("completed `p0-db`" in line for line in data["timeline"])
