"""CLI commands for autopipe using Typer and Rich.

Implements the run lifecycle commands:
- start: Start a new run for an owner
- status: Show run details and per-stage progress
- advance: Progress a run by at most one phase
- retry: Roll a failed run back to its re-entry phase
- cancel: Cancel an active run
- list: List an owner's runs in a table
- watch: Poll advance + status until the run is finished
- sweep: Advance runs no client is polling anymore
"""

import asyncio
import json
import logging
import uuid
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from autopipe import configure_logging
from autopipe.db import init_database, shutdown
from autopipe.orchestrator.driver import AdvanceResult, wait_for_background_tasks
from autopipe.orchestrator.errors import OrchestratorError
from autopipe.orchestrator.service import Orchestrator, close_orchestrator, get_orchestrator
from autopipe.orchestrator.state import is_terminal
from autopipe.orchestrator.status import RunStatus
from autopipe.workers.sweeper import sweep_stale_runs

app = typer.Typer(name="autopipe", help="Persisted orchestrator for multi-stage content generation")
console = Console()

T = TypeVar("T")


def _parse_run_id(run_id_str: str) -> uuid.UUID:
    try:
        return uuid.UUID(run_id_str)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid run UUID: {run_id_str}")
        raise typer.Exit(code=1)


async def _with_orchestrator(fn: Callable[[Orchestrator], Awaitable[T]]) -> T:
    """Run fn against the configured orchestrator, then let kickoffs finish."""
    await init_database()
    try:
        return await fn(get_orchestrator())
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        for key, value in e.details.items():
            console.print(f"  {key}: {value}")
        raise typer.Exit(code=1)
    finally:
        await wait_for_background_tasks()
        await close_orchestrator()
        await shutdown()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    configure_logging(logging.DEBUG if verbose else logging.WARNING)


@app.command()
def start(
    owner_ref: str = typer.Argument(..., help="Owning entity, e.g. a project id"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Run config as JSON"),
    scenes: Optional[int] = typer.Option(None, "--scenes", "-n", help="Target scene count (3-10)"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Output preset: yt_long or short_vertical"),
):
    """Start a new run. Fails if the owner already has an active run."""
    try:
        run_config = json.loads(config) if config else {}
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] --config is not valid JSON: {e}")
        raise typer.Exit(code=1)
    if scenes is not None:
        run_config["target_scene_count"] = scenes
    if preset is not None:
        run_config["output_preset"] = preset

    run = asyncio.run(_with_orchestrator(lambda orch: orch.start(owner_ref, run_config, "cli")))
    console.print(f"[green]Started run[/green] {run.id} for {run.owner_ref} ({run.phase})")


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run UUID"),
):
    """Show detailed run status and stage progress."""
    run_uuid = _parse_run_id(run_id)
    run_status = asyncio.run(_with_orchestrator(lambda orch: orch.get_status(run_uuid)))
    _print_status(run_status)


@app.command()
def advance(
    run_id: str = typer.Argument(..., help="Run UUID"),
):
    """Progress a run by at most one phase."""
    run_uuid = _parse_run_id(run_id)
    result = asyncio.run(_with_orchestrator(lambda orch: orch.advance(run_uuid)))
    _print_advance(result)


@app.command()
def retry(
    run_id: str = typer.Argument(..., help="Run UUID"),
):
    """Retry a failed run from its rollback phase."""
    run_uuid = _parse_run_id(run_id)
    result = asyncio.run(_with_orchestrator(lambda orch: orch.retry(run_uuid)))
    if result.action in ("retried", "already_retried"):
        console.print(
            f"[green]{result.action}[/green]: {result.previous_phase} -> {result.new_phase} "
            f"(retry_count={result.retry_count})"
        )
        return
    console.print(f"[red]{result.action}:[/red] {result.message}")
    raise typer.Exit(code=1)


@app.command()
def cancel(
    run_id: str = typer.Argument(..., help="Run UUID"),
):
    """Cancel an active run."""
    run_uuid = _parse_run_id(run_id)
    result = asyncio.run(_with_orchestrator(lambda orch: orch.cancel(run_uuid)))
    if result.action == "canceled":
        console.print(f"[yellow]Canceled[/yellow] run {result.run_id} (was {result.previous_phase})")
    else:
        console.print(f"Run {result.run_id} already finished ({result.new_phase})")


@app.command(name="list")
def list_runs(
    owner_ref: str = typer.Argument(..., help="Owning entity"),
    include_archived: bool = typer.Option(False, "--all", "-a", help="Include archived runs"),
):
    """List an owner's runs, newest first."""
    runs = asyncio.run(_with_orchestrator(lambda orch: orch.list_runs(owner_ref, include_archived)))

    if not runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Phase")
    table.add_column("Retries")
    table.add_column("Created")

    for run in runs:
        id_display = str(run.id)[:8] + "..."
        color = _get_phase_color(run.phase)
        phase_display = f"[{color}]{run.phase}[/{color}]"
        if run.is_archived:
            phase_display += " [dim](archived)[/dim]"
        table.add_row(id_display, phase_display, str(run.retry_count), run.created_at.strftime("%Y-%m-%d %H:%M"))

    console.print(table)


@app.command()
def watch(
    run_id: str = typer.Argument(..., help="Run UUID"),
    interval: float = typer.Option(5.0, "--interval", "-i", help="Seconds between polls"),
    max_polls: int = typer.Option(0, "--max-polls", help="Stop after this many polls (0 = until finished)"),
):
    """Drive a run by polling advance and status until it finishes."""
    run_uuid = _parse_run_id(run_id)
    final = asyncio.run(_with_orchestrator(lambda orch: _watch_async(orch, run_uuid, interval, max_polls)))
    _print_status(final)
    if final.phase != "ready":
        raise typer.Exit(code=1)


async def _watch_async(orch: Orchestrator, run_id: uuid.UUID, interval: float, max_polls: int) -> RunStatus:
    """Async implementation of watch command."""
    polls = 0
    while True:
        result = await orch.advance(run_id)
        if not result.idempotent:
            _print_advance(result)
        # Let a kickoff scheduled by this advance record its job
        await wait_for_background_tasks()
        polls += 1
        if is_terminal(result.new_phase) or (max_polls and polls >= max_polls):
            return await orch.get_status(run_id)
        await asyncio.sleep(interval)


@app.command()
def sweep(
    idle_seconds: Optional[int] = typer.Option(None, "--idle", help="Minimum idle time in seconds"),
):
    """Advance every run that has not been touched recently."""
    report = asyncio.run(_with_orchestrator(lambda orch: sweep_stale_runs(orch, idle_seconds)))
    if not report.acquired:
        console.print("[yellow]Another worker is sweeping; skipped[/yellow]")
        return
    console.print(f"Examined {report.examined} idle runs")
    for action, count in sorted(report.actions.items()):
        console.print(f"  {action}: {count}")
    if report.errors:
        console.print(f"  [red]errors: {report.errors}[/red]")


def _print_advance(result: AdvanceResult) -> None:
    color = _get_phase_color(result.new_phase)
    console.print(
        f"[bold]{result.action}[/bold]: {result.previous_phase} -> "
        f"[{color}]{result.new_phase}[/{color}]"
        + (f" ({result.message})" if result.message else "")
    )


def _print_status(run_status: RunStatus) -> None:
    color = _get_phase_color(run_status.phase)
    info_lines = [
        f"[bold]ID:[/bold] {run_status.run_id}",
        f"[bold]Owner:[/bold] {run_status.owner_ref}",
        f"[bold]Phase:[/bold] [{color}]{run_status.phase}[/{color}]",
        f"[bold]Retries:[/bold] {run_status.retry_count} "
        f"(manual {run_status.manual_retry_count}, stage {run_status.stage_retry_count})",
        f"[bold]Created:[/bold] {run_status.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"[bold]Updated:[/bold] {run_status.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if run_status.locked_until:
        info_lines.append(f"[bold]Locked until:[/bold] {run_status.locked_until.strftime('%H:%M:%S')}")
    if run_status.error:
        info_lines.append(
            f"[bold]Error:[/bold] [red]{run_status.error.code} in {run_status.error.phase}: "
            f"{run_status.error.message}[/red]"
        )

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Stage")
    table.add_column("State")
    table.add_column("Units")
    table.add_column("Detail")
    for stage in run_status.stages:
        units = f"{stage.success_count}/{stage.total_units}" if stage.total_units else "-"
        if stage.failed_count:
            units += f" ({stage.failed_count} failed)"
        detail = stage.artifact.url if stage.artifact else (stage.detail or "")
        table.add_row(stage.phase, _format_stage_state(stage.state), units, detail)

    console.print(Panel("\n".join(info_lines), title="[bold]Run Status[/bold]", border_style="blue"))
    console.print(table)


def _format_stage_state(state: str) -> str:
    color = {"done": "green", "failed": "red", "running": "yellow"}.get(state, "dim")
    return f"[{color}]{state}[/{color}]"


def _get_phase_color(phase: str) -> str:
    """Get Rich color for a run phase.

    Color coding:
    - ready: green
    - failed: red
    - canceled: magenta
    - stage phases: yellow
    - init: dim
    """
    if phase == "ready":
        return "green"
    elif phase == "failed":
        return "red"
    elif phase == "canceled":
        return "magenta"
    elif phase in ["segmenting", "generating_images", "generating_audio", "rendering"]:
        return "yellow"
    elif phase == "init":
        return "dim"
    else:
        return "white"
