"""Conductor CLI: Typer + Rich control surface.

Commands: start, tick, status, test, advance, rollback, restore, deploy,
resolve, report. Each command maps onto one engine operation and prints its result;
engine errors are printed and exit with status 1.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler

from conductor import __version__
from conductor.cli_display import (
    TRACE_EVENTS,
    render_event,
    render_report,
    render_status,
    render_task,
    render_tick,
    render_validation,
)
from conductor.engine import OrchestratorEngine
from conductor.errors import ConductorError, ConfigurationError, PhaseNotReadyError
from conductor.registry import load_engine_config

console = Console()

T = TypeVar("T")

app = typer.Typer(
    name="conductor",
    help="Autonomous phased orchestration of specialised agents.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@dataclass
class _Options:
    config: Path | None = None
    agents: Path | None = None
    phases: Path | None = None
    state_dir: Path | None = None


# ── Version callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"conductor {__version__}")
        raise typer.Exit()


# ── App Callback ────────────────────────────────────────────────


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(
        None, "--config", "-c", help="Engine defaults TOML (default: bundled defaults.toml)",
    ),
    agents: Path = typer.Option(None, "--agents", help="Agent roster TOML"),
    phases: Path = typer.Option(None, "--phases", help="Phase plan TOML"),
    state_dir: Path = typer.Option(
        None, "--state-dir", "-s", help="State directory (overrides CONDUCTOR_STATE_DIR)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Conductor: drive a phased build by dispatching work to agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    ctx.obj = _Options(config=config, agents=agents, phases=phases, state_dir=state_dir)


# ── Helpers ──────────────────────────────────────────────────────


def _build_engine(ctx: typer.Context) -> OrchestratorEngine:
    """Load configuration and build the engine, exit on error."""
    opts: _Options = ctx.obj or _Options()
    try:
        config = load_engine_config(opts.config)
        if opts.state_dir is not None:
            config = config.model_copy(update={"state_dir": str(opts.state_dir)})
        return OrchestratorEngine.from_config(
            config, agents_path=opts.agents, phases_path=opts.phases, root=Path.cwd(),
        )
    except (FileNotFoundError, ConfigurationError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(1) from None


def _run(ctx: typer.Context, op: Callable[[OrchestratorEngine], Awaitable[T]]) -> T:
    """Run one engine operation, closing the engine afterwards."""
    engine = _build_engine(ctx)

    async def _main() -> T:
        try:
            return await op(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except PhaseNotReadyError as e:
        console.print(f"[yellow]Phase {e.phase} is not ready to advance.[/yellow]")
        for mid in e.blocking:
            console.print(f"  • {mid}")
        raise typer.Exit(1) from None
    except ConductorError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {e}")
        raise typer.Exit(1) from None


# ── Commands ─────────────────────────────────────────────────────


@app.command()
def start(
    ctx: typer.Context,
    max_ticks: int = typer.Option(
        None, "--max-ticks", "-n", help="Stop after this many ticks",
    ),
    trace: bool = typer.Option(
        True, "--trace/--no-trace", help="Print task, conflict and phase events as they happen",
    ),
) -> None:
    """Run the engine loop in the foreground until the workflow completes."""

    async def op(engine: OrchestratorEngine) -> int:
        if trace:
            engine.emitter.subscribe(lambda event: render_event(console, event), TRACE_EVENTS)
        if max_ticks is not None:
            return await engine.run(max_ticks=max_ticks)
        await engine.start()
        try:
            await engine.wait()
        finally:
            await engine.stop()
        return 0

    console.print("[bold]Conductor engine started[/bold] (Ctrl+C to stop)")
    try:
        ticks = _run(ctx, op)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130) from None
    if ticks:
        console.print(f"Ran {ticks} tick(s)")
    _show_status(ctx)


@app.command()
def tick(
    ctx: typer.Context,
    count: int = typer.Option(1, "--count", "-n", min=1, help="Number of ticks to run"),
) -> None:
    """Run dispatch cycles on demand."""

    async def op(engine: OrchestratorEngine) -> list:
        return [await engine.tick() for _ in range(count)]

    for result in _run(ctx, op):
        render_tick(console, result)


def _show_status(ctx: typer.Context, as_json: bool = False) -> None:
    async def op(engine: OrchestratorEngine):
        return await engine.status()

    report = _run(ctx, op)
    if as_json:
        typer.echo(report.model_dump_json(indent=2))
    else:
        render_status(console, report)


@app.command()
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the status as JSON"),
) -> None:
    """Show the current phase, milestones, agents and conflicts."""
    _show_status(ctx, as_json)


@app.command("test")
def test_phase(
    ctx: typer.Context,
    run_checks: bool = typer.Option(
        False, "--run-checks", help="Also run the phase's configured check command",
    ),
) -> None:
    """Validate the current phase without dispatching new tasks."""

    async def op(engine: OrchestratorEngine):
        return await engine.validate_phase(run_checks=run_checks)

    validation = _run(ctx, op)
    render_validation(console, validation)
    if validation.check_passed is False:
        raise typer.Exit(1)


@app.command()
def advance(ctx: typer.Context) -> None:
    """Advance to the next phase once every milestone is completed."""

    async def op(engine: OrchestratorEngine):
        await engine.advance_phase()
        return await engine.status()

    report = _run(ctx, op)
    if report.workflow_complete:
        console.print("[bold green]Workflow complete[/bold green]")
    else:
        console.print(
            f"[green]Now in phase {report.current_phase}:[/green] {report.phase_name}"
        )


@app.command()
def rollback(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Move back to the previous phase. History is kept."""
    if not yes and not typer.confirm("Roll back to the previous phase?"):
        raise typer.Exit(0)

    async def op(engine: OrchestratorEngine):
        return await engine.rollback_phase()

    phase = _run(ctx, op)
    console.print(f"[yellow]Rolled back to phase {phase}[/yellow]")


@app.command()
def restore(
    ctx: typer.Context,
    backup: Path = typer.Argument(None, help="Backup file (default: the newest backup)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Replace the live state with a backup written by rollback."""
    if not yes and not typer.confirm("Replace the current state with the backup?"):
        raise typer.Exit(0)

    async def op(engine: OrchestratorEngine):
        return await engine.restore_backup(backup)

    state = _run(ctx, op)
    console.print(
        f"[yellow]Restored[/yellow] phase {state.current_phase} as state version {state.version}"
    )


@app.command()
def deploy(
    ctx: typer.Context,
    agent: str = typer.Argument(..., help="Agent id (e.g. api, security)"),
    milestone: str = typer.Option(
        None, "--milestone", "-m", help="Milestone to work on (default: next unfinished)",
    ),
    description: str = typer.Option(None, "--description", "-d", help="Task description"),
    priority: int = typer.Option(None, "--priority", "-p", help="Task priority"),
    force: bool = typer.Option(False, "--force", help="Skip the dependency check"),
) -> None:
    """Manually queue a task for an agent (also retries failed work)."""

    async def op(engine: OrchestratorEngine):
        return await engine.deploy_agent(
            agent, milestone=milestone, description=description, priority=priority, force=force,
        )

    render_task(console, _run(ctx, op))


@app.command()
def resolve(
    ctx: typer.Context,
    conflict_id: str = typer.Argument(..., help="Conflict id from `conductor status`"),
    note: str = typer.Option("", "--note", "-m", help="Resolution note"),
) -> None:
    """Mark a conflict resolved; the workflow resumes once none remain."""

    async def op(engine: OrchestratorEngine):
        conflict = await engine.resolve_conflict(conflict_id, note)
        return conflict, await engine.status()

    conflict, report = _run(ctx, op)
    console.print(f"[green]Resolved[/green] {conflict.id}")
    if report.paused:
        console.print(f"[yellow]Still paused:[/yellow] {len(report.unresolved_conflicts)} unresolved")
    else:
        console.print("[green]Workflow running[/green]")


@app.command()
def report(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Full report: metrics, recurring failures, errors and estimates."""

    async def op(engine: OrchestratorEngine):
        return await engine.report()

    result = _run(ctx, op)
    if as_json:
        typer.echo(result.model_dump_json(indent=2))
    else:
        render_report(console, result)
