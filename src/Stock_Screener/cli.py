"""CLI entry point for the stock screener.

Provides the ``screener`` command with subcommands for running a scan in
process, inspecting runs, matches and progress, checking dependency health,
and normalizing ticker symbols.

This is the ONLY module where console output is allowed. All other modules
use ``logging``. Async internals are bridged to typer's synchronous interface
via ``asyncio.run()``.
"""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer
import uvicorn
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from Stock_Screener.config import ScreenerSettings, get_settings
from Stock_Screener.logging_config import configure_logging
from Stock_Screener.models.enums import HealthState, RunStatus, ScannerId
from Stock_Screener.models.scan import ScanRun, StockMatch
from Stock_Screener.runtime import open_runtime
from Stock_Screener.services.symbols import normalize_symbol
from Stock_Screener.web.app import create_app

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(name="screener", help="Kuifje / Zonnebloem stock screener")

# Rich console for formatted output
console = Console()

_STATUS_STYLE: dict[str, str] = {
    RunStatus.QUEUED: "[dim]queued[/dim]",
    RunStatus.RUNNING: "[cyan]running[/cyan]",
    RunStatus.COMPLETED: "[green]completed[/green]",
    RunStatus.PARTIAL: "[yellow]partial[/yellow]",
    RunStatus.FAILED: "[red]failed[/red]",
}

_HEALTH_STYLE: dict[str, str] = {
    HealthState.HEALTHY: "[green]HEALTHY[/green]",
    HealthState.DEGRADED: "[yellow]DEGRADED[/yellow]",
    HealthState.RATE_LIMITED: "[yellow]RATE LIMITED[/yellow]",
    HealthState.DOWN: "[red]DOWN[/red]",
}

VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")]


def _settings() -> ScreenerSettings:
    return get_settings()


# ---------------------------------------------------------------------------
# scan command
# ---------------------------------------------------------------------------


@app.command()
def scan(
    scanner: Annotated[ScannerId, typer.Argument(help="Scanner to run")],
    market: Annotated[
        list[str] | None,
        typer.Option("--market", "-m", help="Market id to scan (repeatable)"),
    ] = None,
    verbose: VerboseOption = False,
) -> None:
    """Run one scan in process and show its matches."""
    configure_logging(verbose=verbose, quiet=not verbose)
    final = asyncio.run(_scan_async(scanner=scanner, markets=market or None))
    if final.status is RunStatus.FAILED:
        raise typer.Exit(code=1)


async def _scan_async(*, scanner: ScannerId, markets: list[str] | None) -> ScanRun:
    """Execute a run while rendering its counters on a rich spinner line."""
    async with open_runtime(_settings()) as runtime:
        if await runtime.registry.has_active_run(scanner):
            console.print(f"[red]A {scanner} scan is already in progress.[/red]")
            raise typer.Exit(code=1)

        run = await runtime.orchestrator.start_run(scanner, markets)
        console.print(f"[bold]Run {run.id}[/bold] {scanner} over {', '.join(run.markets)}")

        with Progress(
            SpinnerColumn(spinner_name="line"),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as display:
            task = display.add_task("Discovering candidates...", total=None)

            def on_progress(snapshot: ScanRun) -> None:
                display.update(task, description=_progress_line(snapshot))

            final = await runtime.orchestrator.execute(run, on_progress=on_progress)

        _render_run_summary(final)
        found = await runtime.registry.list_matches(scanner, run_id=final.id)
        _render_matches(found)
        return final


def _progress_line(run: ScanRun) -> str:
    if run.candidates_found == 0 and run.stocks_deep_scanned == 0:
        return f"Discovering candidates ({len(run.markets_scanned)}/{len(run.markets)} markets)"
    return (
        f"Scanned {run.stocks_deep_scanned}/{run.candidates_found}, "
        f"matched {run.stocks_matched} ({run.new_stocks_found} new), "
        f"{len(run.errors)} errors"
    )


def _render_run_summary(run: ScanRun) -> None:
    duration = f"{run.duration_seconds:.1f}s" if run.duration_seconds is not None else "-"
    console.print(
        f"\n{_STATUS_STYLE.get(run.status, run.status)} in {duration}: "
        f"{run.candidates_found} candidates, {run.stocks_deep_scanned} scanned, "
        f"{run.stocks_matched} matched ({run.new_stocks_found} new)"
    )
    calls = ", ".join(f"{provider}={count}" for provider, count in sorted(run.api_calls.items()))
    if calls:
        console.print(f"[dim]API calls: {calls}[/dim]")
    if run.errors:
        console.print(f"[yellow]{len(run.errors)} errors:[/yellow]")
        for error in run.errors[:10]:
            console.print(f"  [dim]-[/dim] {error}")
        if len(run.errors) > 10:  # noqa: PLR2004
            console.print(f"  [dim]... and {len(run.errors) - 10} more[/dim]")


def _render_matches(matches: list[StockMatch]) -> None:
    if not matches:
        console.print("[yellow]No matches.[/yellow]")
        return

    table = Table(title="Matches", show_lines=False)
    table.add_column("Symbol", style="bold", width=12)
    table.add_column("Name", width=28)
    table.add_column("Market", width=6)
    table.add_column("Score", justify="right", width=6)
    table.add_column("Key metrics", width=40)
    table.add_column("Review", width=8)

    for match in matches:
        metrics = ", ".join(
            f"{name}={value:.1f}"
            for name, value in list(match.metrics.items())[:3]
            if value is not None
        )
        review = "[yellow]yes[/yellow]" if match.needs_review else "[dim]no[/dim]"
        table.add_row(
            match.symbol,
            match.name or "---",
            match.market or "---",
            f"{match.score:.2f}",
            metrics or "---",
            review,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# progress / runs / matches commands
# ---------------------------------------------------------------------------


@app.command()
def progress(
    scanner: Annotated[ScannerId, typer.Argument(help="Scanner to inspect")],
    verbose: VerboseOption = False,
) -> None:
    """Show the latest run's progress (stale runs are reported as failed)."""
    configure_logging(verbose=verbose, quiet=not verbose)
    asyncio.run(_progress_async(scanner=scanner))


async def _progress_async(*, scanner: ScannerId) -> None:
    async with open_runtime(_settings()) as runtime:
        view = await runtime.registry.get_progress(scanner)

    if view.scan is None:
        console.print(f"[dim]No {scanner} runs yet.[/dim]")
        return

    counters = view.scan
    console.print(
        f"Run {counters.id}: {_STATUS_STYLE.get(counters.status, counters.status)} "
        f"(started {counters.started_at.isoformat(timespec='seconds')})"
    )
    console.print(
        f"  markets {', '.join(counters.markets_scanned) or '-'} | "
        f"candidates {counters.candidates_found} | scanned {counters.stocks_deep_scanned} | "
        f"matched {counters.stocks_matched} ({counters.new_stocks_found} new)"
    )
    for error in counters.errors[:5]:
        console.print(f"  [dim]-[/dim] {error}")


@app.command()
def runs(
    scanner: Annotated[ScannerId, typer.Argument(help="Scanner to list runs for")],
    limit: Annotated[int, typer.Option(help="Number of runs to show")] = 10,
    verbose: VerboseOption = False,
) -> None:
    """List recent runs of a scanner."""
    configure_logging(verbose=verbose, quiet=not verbose)
    asyncio.run(_runs_async(scanner=scanner, limit=limit))


async def _runs_async(*, scanner: ScannerId, limit: int) -> None:
    async with open_runtime(_settings()) as runtime:
        recent = await runtime.registry.list_runs(scanner, limit=limit)

    if not recent:
        console.print(f"[dim]No {scanner} runs yet.[/dim]")
        return

    table = Table(title=f"{scanner} runs")
    table.add_column("Run", style="dim", width=12)
    table.add_column("Started", width=20)
    table.add_column("Status", width=10)
    table.add_column("Candidates", justify="right", width=10)
    table.add_column("Scanned", justify="right", width=8)
    table.add_column("Matched", justify="right", width=8)
    table.add_column("Errors", justify="right", width=6)

    for run in recent:
        table.add_row(
            run.id[:12],
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            _STATUS_STYLE.get(run.status, run.status),
            str(run.candidates_found),
            str(run.stocks_deep_scanned),
            str(run.stocks_matched),
            str(len(run.errors)),
        )

    console.print(table)


@app.command()
def matches(
    scanner: Annotated[ScannerId, typer.Argument(help="Scanner to list matches for")],
    run_id: Annotated[str | None, typer.Option("--run", help="Only this run's matches")] = None,
    limit: Annotated[int, typer.Option(help="Number of matches to show")] = 50,
    verbose: VerboseOption = False,
) -> None:
    """List persisted matches of a scanner."""
    configure_logging(verbose=verbose, quiet=not verbose)
    asyncio.run(_matches_async(scanner=scanner, run_id=run_id, limit=limit))


async def _matches_async(*, scanner: ScannerId, run_id: str | None, limit: int) -> None:
    async with open_runtime(_settings()) as runtime:
        found = await runtime.registry.list_matches(scanner, run_id=run_id, limit=limit)
    _render_matches(found)


# ---------------------------------------------------------------------------
# health command
# ---------------------------------------------------------------------------


@app.command()
def health(
    verbose: VerboseOption = False,
) -> None:
    """Check the health of the providers, the database and recent scans."""
    configure_logging(verbose=verbose, quiet=not verbose)
    asyncio.run(_health_async())


async def _health_async() -> None:
    """Run all health checks and display results."""
    async with open_runtime(_settings()) as runtime:
        console.print("\n[bold]Running health checks...[/bold]\n")
        report = await runtime.health_service().check_all()

    table = Table(title="Health Status")
    table.add_column("Service", style="bold", width=16)
    table.add_column("Status", width=14)
    table.add_column("Details", width=50)
    for service in report.services:
        status = _HEALTH_STYLE.get(service.status, service.status)
        table.add_row(service.name, status, service.detail)
    console.print(table)

    budgets = Table(title="Call Budgets")
    budgets.add_column("Provider", style="bold", width=14)
    budgets.add_column("Minute", justify="right", width=10)
    budgets.add_column("Day", justify="right", width=12)
    for budget in report.budgets:
        budgets.add_row(
            budget.provider,
            f"{budget.remaining_minute}/{budget.per_minute}",
            f"{budget.remaining_day}/{budget.per_day}",
        )
    console.print(budgets)

    console.print(
        f"\nOverall: {_HEALTH_STYLE.get(report.overall, report.overall)} "
        f"[dim](checked {report.last_check.isoformat(timespec='seconds')})[/dim]"
    )


# ---------------------------------------------------------------------------
# serve command
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: Annotated[str, typer.Option(help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="Port to listen on")] = 8000,
    verbose: VerboseOption = False,
) -> None:
    """Serve the scan and health API with uvicorn."""
    application = create_app(_settings())
    configure_logging(verbose=verbose)
    uvicorn.run(application, host=host, port=port, log_config=None)


# ---------------------------------------------------------------------------
# normalize command
# ---------------------------------------------------------------------------


@app.command()
def normalize(
    symbols: Annotated[list[str], typer.Argument(help="Ticker symbols to normalize")],
) -> None:
    """Print the provider form of each symbol, one per line."""
    for symbol in symbols:
        console.print(f"{symbol} -> {normalize_symbol(symbol)}", highlight=False)
