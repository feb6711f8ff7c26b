"""Rich rendering for the Conductor CLI.

Every function takes a Console and one of the engine's read-only report
models or events; none of them touch the engine.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from conductor.events import EngineEvent, EventType
from conductor.schemas.reports import (
    EngineReport,
    MilestoneReport,
    PhaseValidation,
    StatusReport,
    TickResult,
)
from conductor.schemas.results import Conflict
from conductor.schemas.state import AgentTask

# ── Colors ────────────────────────────────────────────────────────

COLORS = {
    "ok": "#00ff88",
    "active": "#00ffbb",
    "warn": "#ffaa00",
    "bad": "#ff4444",
    "dim": "#6a8a6a",
    "gold": "#D4A843",
}

_STATUS_STYLE = {
    "completed": COLORS["ok"],
    "in_progress": COLORS["active"],
    "active": COLORS["active"],
    "waiting": COLORS["warn"],
    "pending": COLORS["dim"],
    "not_started": COLORS["dim"],
    "idle": COLORS["dim"],
    "failed": COLORS["bad"],
    "blocked": COLORS["bad"],
}

_SEVERITY_STYLE = {
    "low": COLORS["dim"],
    "medium": COLORS["warn"],
    "high": "bold " + COLORS["warn"],
    "critical": "bold " + COLORS["bad"],
}


def status_style(status: str) -> str:
    """Return a Rich style string for a phase, milestone or agent status."""
    return _STATUS_STYLE.get(str(status), "")


def _styled(value: str) -> Text:
    return Text(str(value), style=status_style(value))


def progress_bar(fraction: float, width: int = 20) -> str:
    filled = round(max(0.0, min(fraction, 1.0)) * width)
    return "█" * filled + "░" * (width - filled) + f" {fraction:.0%}"


# ── Tables ────────────────────────────────────────────────────────


def milestone_table(milestones: list[MilestoneReport]) -> Table:
    table = Table(show_header=True, header_style="bold", expand=False)
    table.add_column("Milestone", style="bold")
    table.add_column("Status")
    table.add_column("Agents")
    table.add_column("Detail", style=COLORS["dim"])
    for m in milestones:
        table.add_row(m.id, _styled(m.status), ", ".join(m.required_agents), m.detail)
    return table


def conflict_table(conflicts: list[Conflict]) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="bold")
    table.add_column("Severity")
    table.add_column("Source")
    table.add_column("Agent / Milestone")
    table.add_column("Description")
    table.add_column("Human?")
    table.add_column("Resolved")
    for c in conflicts:
        table.add_row(
            c.id,
            Text(c.severity.value, style=_SEVERITY_STYLE.get(c.severity.value, "")),
            c.source_id or c.category,
            f"{c.agent_type} / {c.milestone}",
            Text(c.description),
            "yes" if c.requires_human_input else "no",
            "yes" if c.resolved else "no",
        )
    return table


# ── Live trace ────────────────────────────────────────────────────

_TRACE_LINES: dict[EventType, tuple[str, Callable[[dict[str, Any]], str]]] = {
    EventType.TASK_DISPATCHED: (
        "dim", lambda d: f"{d['agent']} dispatched for {d['milestone']} ({d['task_id']})",
    ),
    EventType.TASK_COMPLETED: (
        "ok", lambda d: f"{d['agent']} completed {d['milestone']} in {d['duration']:.1f}s",
    ),
    EventType.TASK_FAILED: (
        "bad", lambda d: f"{d['agent']} failed {d['milestone']} ({d.get('error_kind') or 'error'})",
    ),
    EventType.TASK_SLOW: (
        "warn",
        lambda d: f"{d['task_id']} is slow: {d['elapsed']:.1f}s of {d['estimated']:.1f}s estimated",
    ),
    EventType.CONFLICT_DETECTED: (
        "bad",
        lambda d: f"conflict {d['conflict_id']} ({d['severity']}) from {d['agent']} on {d['milestone']}",
    ),
    EventType.WORKFLOW_PAUSED: ("bad", lambda d: "workflow paused awaiting conflict resolution"),
    EventType.WORKFLOW_RESUMED: ("ok", lambda d: f"workflow resumed ({d['reason']})"),
    EventType.MILESTONE_COMPLETED: ("ok", lambda d: f"milestone {d['milestone']} completed"),
    EventType.PHASE_ADVANCED: ("gold", lambda d: f"advanced to phase {d['to_phase']}"),
    EventType.WORKFLOW_COMPLETED: ("gold", lambda d: "workflow complete"),
    EventType.LESSON_RECURRING: (
        "warn", lambda d: f"recurring failure {d['signature']} seen {d['occurrences']} times",
    ),
}

TRACE_EVENTS = frozenset(_TRACE_LINES)


def render_event(console: Console, event: EngineEvent) -> None:
    """Print one line for a traced event; other events are ignored."""
    entry = _TRACE_LINES.get(event.type)
    if entry is None:
        return
    color, describe = entry
    console.print(
        Text.assemble(
            (event.at.strftime("%H:%M:%S "), COLORS["dim"]),
            (describe(event.data), COLORS[color]),
        )
    )


# ── Renderers ─────────────────────────────────────────────────────


def render_status(console: Console, report: StatusReport) -> None:
    """Print the full status view."""
    if report.state_error:
        console.print(Panel(Text(report.state_error), title="State unavailable", border_style=COLORS["bad"]))
        return

    header = Text()
    header.append(f"Phase {report.current_phase}: {report.phase_name}  ", style="bold")
    header.append(report.phase_status.value, style=status_style(report.phase_status))
    if report.workflow_complete:
        header.append("  workflow complete", style="bold " + COLORS["ok"])
    header.append(f"\nversion {report.version}", style=COLORS["dim"])
    header.append(f"   phase {progress_bar(report.phase_progress)}")
    header.append(f"   overall {progress_bar(report.overall_progress)}")
    header.append(
        f"\n{report.active_tasks} active, {report.queued_tasks} queued"
        f"{'   loop running' if report.running else ''}",
        style=COLORS["dim"],
    )
    console.print(Panel(header, title="Conductor", border_style=COLORS["active"]))

    if report.paused:
        console.print(Panel(Text(report.pause_reason), title="PAUSED", border_style=COLORS["bad"]))

    console.print(milestone_table(report.milestones))

    agents = Table(show_header=True, header_style="bold")
    agents.add_column("Agent", style="bold")
    agents.add_column("Status")
    for agent, status in report.agents.items():
        agents.add_row(agent, _styled(status))
    console.print(agents)

    if report.unresolved_conflicts:
        console.print("[bold]Unresolved conflicts[/bold]")
        console.print(conflict_table(report.unresolved_conflicts))


def render_validation(console: Console, validation: PhaseValidation) -> None:
    verdict = (
        f"[{COLORS['ok']}]ready to advance[/]"
        if validation.ready
        else f"[{COLORS['warn']}]not ready[/] ({len(validation.blocking)} blocking)"
    )
    console.print(f"[bold]Phase {validation.phase}: {validation.phase_name}[/bold]  {verdict}")
    console.print(milestone_table(validation.milestones))
    if validation.exit_criteria:
        console.print("[bold]Exit criteria[/bold]")
        for line in validation.exit_criteria:
            console.print(f"  • {line}")
    if validation.check_passed is not None:
        style = COLORS["ok"] if validation.check_passed else COLORS["bad"]
        label = "passed" if validation.check_passed else "failed"
        console.print(f"Check [bold]{validation.check_command}[/bold]: [{style}]{label}[/]")
        if validation.check_output and not validation.check_passed:
            console.print(Panel(validation.check_output.strip()[-2000:], border_style=style))


def render_tick(console: Console, result: TickResult) -> None:
    if result.skipped_reason and not result.dispatched:
        console.print(Text.assemble(("Tick skipped: ", COLORS["dim"]), result.skipped_reason))
        return
    console.print(
        f"Tick → version {result.version}: "
        f"[{COLORS['ok']}]{len(result.completed)} completed[/], "
        f"[{COLORS['bad']}]{len(result.failed)} failed[/], "
        f"{len(result.discarded)} discarded"
    )
    for cid in result.conflicts:
        console.print(f"  [{COLORS['bad']}]conflict[/] {cid}")
    if result.paused:
        console.print(f"[bold {COLORS['bad']}]Workflow paused[/], run [bold]conductor status[/bold]")
    if result.advanced:
        console.print(f"[{COLORS['ok']}]Phase advanced[/]")


def render_task(console: Console, task: AgentTask) -> None:
    console.print(
        f"Queued [bold]{task.id}[/bold]: {task.agent_type} → {task.milestone} "
        f"(priority {task.priority}{', manual' if task.manual else ''})"
    )


def render_report(console: Console, report: EngineReport) -> None:
    """Print the operator report."""
    render_status(console, report.status)

    summary = Table(show_header=False, box=None)
    summary.add_column(style="bold")
    summary.add_column()
    summary.add_row("Tasks completed", str(report.completed_tasks))
    summary.add_row("Tasks failed", str(report.failed_tasks))
    eta = report.estimated_completion.isoformat(timespec="minutes") if report.estimated_completion else "n/a"
    summary.add_row("Estimated completion", eta)
    if report.total_executions:
        summary.add_row("Executions recorded", str(report.total_executions))
    if report.slow_tasks:
        summary.add_row("Slow tasks", ", ".join(report.slow_tasks))
    console.print(Panel(summary, title="Summary", border_style=COLORS["gold"]))

    if report.exit_criteria:
        console.print("[bold]Exit criteria[/bold]")
        for line in report.exit_criteria:
            console.print(f"  • {line}")

    if report.metrics:
        metrics = Table(title="Agent metrics", show_header=True, header_style="bold")
        metrics.add_column("Agent", style="bold")
        metrics.add_column("Completed", justify="right")
        metrics.add_column("Failed", justify="right")
        metrics.add_column("Success", justify="right")
        metrics.add_column("Avg duration", justify="right")
        for m in report.metrics:
            metrics.add_row(
                m.agent_type,
                str(m.tasks_completed),
                str(m.tasks_failed),
                f"{m.success_rate:.0%}",
                f"{m.average_duration:.1f}s",
            )
        console.print(metrics)

    if report.recurring_lessons:
        lessons = Table(title="Recurring failures", show_header=True, header_style="bold")
        lessons.add_column("Pattern", style="bold")
        lessons.add_column("Seen", justify="right")
        lessons.add_column("Last seen")
        for rec in report.recurring_lessons:
            lessons.add_row(rec.signature, str(rec.occurrences), rec.last_seen.isoformat(timespec="seconds"))
        console.print(lessons)

    if report.recent_errors:
        errors = Table(title="Recent errors", show_header=True, header_style="bold")
        errors.add_column("When")
        errors.add_column("Phase", justify="right")
        errors.add_column("Agent")
        errors.add_column("Kind")
        errors.add_column("Message")
        for e in report.recent_errors:
            errors.add_row(
                e.timestamp.isoformat(timespec="seconds"),
                str(e.phase),
                e.agent or "",
                Text(e.kind, style=_SEVERITY_STYLE.get(e.severity.value, "")),
                Text(e.message),
            )
        console.print(errors)

    if report.history:
        hist = Table(title="Execution history", show_header=True, header_style="bold")
        hist.add_column("Agent", style="bold")
        hist.add_column("Runs", justify="right")
        hist.add_column("OK", justify="right")
        hist.add_column("Failed", justify="right")
        hist.add_column("Avg duration", justify="right")
        for h in report.history:
            hist.add_row(
                h.agent_type, str(h.executions), str(h.successes), str(h.failures),
                f"{h.average_duration:.1f}s",
            )
        console.print(hist)

    if report.recent_executions:
        runs = Table(title="Recent executions", show_header=True, header_style="bold")
        runs.add_column("Completed")
        runs.add_column("Task", style="bold")
        runs.add_column("Milestone")
        runs.add_column("Status")
        runs.add_column("Duration", justify="right")
        runs.add_column("Error")
        for r in report.recent_executions:
            runs.add_row(
                r.completed_at.isoformat(timespec="seconds"),
                r.task_id + (" (manual)" if r.manual else ""),
                r.milestone,
                _styled(r.status),
                f"{r.duration:.1f}s",
                Text(r.error_kind or ""),
            )
        console.print(runs)

    if report.timeline:
        timeline = Text("\n".join(report.timeline))
        console.print(Panel(timeline, title="Recent activity", border_style=COLORS["dim"]))
