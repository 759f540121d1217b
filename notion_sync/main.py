"""
Notion Sync - CLI Entry Point

Command-line interface for incremental Notion synchronization.

Usage:
    # Incremental sync of one database
    python -m notion_sync.main sync DATABASE_ID

    # Full sync, writing every page
    python -m notion_sync.main sync DATABASE_ID --mode full --force

    # Sync one page right away
    python -m notion_sync.main sync-page PAGE_ID --database DATABASE_ID

    # Show what a sync would do
    python -m notion_sync.main plan DATABASE_ID

    # Run one round of queued batches
    python -m notion_sync.main process-queue
"""

import asyncio
import json
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from notion_sync import __version__
from notion_sync.client.notion_client import NotionClient
from notion_sync.config import settings
from notion_sync.exceptions import NotionSyncError, SyncLockedError, TaskNotFoundError
from notion_sync.queue.manager import InMemoryWakeupScheduler
from notion_sync.sync.orchestrator import SyncOptions, SyncOrchestrator

app = typer.Typer(
    name="notion-sync",
    help="Incremental synchronization of Notion databases",
    add_completion=False,
)
console = Console()

SYNC_MODES = ("full", "incremental", "manual")


def print_banner() -> None:
    """Print the application banner."""
    console.print(Panel.fit(
        f"[bold blue]Notion Sync[/bold blue] [dim]v{__version__}[/dim]\n"
        "[dim]Incremental synchronization engine[/dim]",
        border_style="blue",
    ))
    console.print()


def print_metrics() -> None:
    """Print the in-process counters collected during this command."""
    from notion_sync.metrics import metrics

    data = metrics.get_simple_metrics()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("HTTP Requests", f"{data['http_requests_total']:,}")
    table.add_row("HTTP Errors", f"{data['http_errors_total']:,}")
    table.add_row("Avg Request Duration", f"{data['http_avg_duration_seconds']:.3f}s")
    table.add_row("Retries", f"{data['retries_total']:,}")
    table.add_row("Cache Hits", f"{data['cache_hits_total']:,}")
    table.add_row("Cache Misses", f"{data['cache_misses_total']:,}")
    table.add_row("Sync Runs", f"{data['sync_runs_total']:,}")
    table.add_row("Sync Errors", f"{data['sync_errors_total']:,}")

    console.print(table)

    for label, counts in (
        ("Pages planned", data["pages_planned"]),
        ("Fallbacks", data["fallbacks_by_strategy"]),
        ("Queue batches", data["queue_batches"]),
    ):
        if counts:
            console.print(f"[bold]{label}:[/bold]")
            for key, count in sorted(counts.items()):
                console.print(f"  {key}: {count:,}")


def _check_mode(mode: Optional[str]) -> Optional[str]:
    if mode is not None and mode not in SYNC_MODES:
        console.print(f"[red]Error:[/red] mode must be one of {', '.join(SYNC_MODES)}")
        raise typer.Exit(2)
    return mode


@app.command()
def sync(
    database_ids: Optional[list[str]] = typer.Argument(
        None, help="Database id(s). Defaults to SYNC_DATABASE_IDS."
    ),
    mode: Optional[str] = typer.Option(
        None, "--mode", "-m", help="full, incremental or manual (default from settings)"
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Write every candidate page, changed or not"
    ),
    include_blocks: Optional[bool] = typer.Option(
        None, "--blocks/--no-blocks", help="Fetch page content (block trees)"
    ),
    since: Optional[str] = typer.Option(
        None, "--since", help="Override the stored watermark (ISO timestamp)"
    ),
    stats: bool = typer.Option(False, "--stats", help="Print request and cache counters afterwards"),
) -> None:
    """
    Synchronize Notion databases.

    Examples:

        # Incremental sync (default mode)
        notion-sync sync 0f1e2d3c4b5a69788796a5b4c3d2e1f0

        # Full sync including page content
        notion-sync sync DATABASE_ID --mode full --blocks
    """
    print_banner()
    _check_mode(mode)

    ids = database_ids or list(settings.sync_database_ids)
    if not ids:
        console.print("[red]Error:[/red] Please pass a database id or set SYNC_DATABASE_IDS")
        raise typer.Exit(1)

    wakeup = InMemoryWakeupScheduler()

    async def run_sync() -> bool:
        aborted = False
        async with SyncOrchestrator(wakeup=wakeup) as orchestrator:
            for database_id in ids:
                options = SyncOptions(
                    mode=mode, force=force, include_blocks=include_blocks, since=since
                )
                summary = await orchestrator.run_sync(database_id, options=options)
                aborted = aborted or summary.aborted
                for error in summary.errors[:10]:
                    console.print(f"  [red]-[/red] {error}")
        return aborted

    try:
        aborted = asyncio.run(run_sync())
    except KeyboardInterrupt:
        console.print("\n[yellow]Sync interrupted by user[/yellow]")
        raise typer.Exit(130)
    except Exception as e:
        console.print(f"\n[red]Sync failed: {e}[/red]")
        raise typer.Exit(1)

    if stats:
        print_metrics()

    if wakeup.pending_at is not None:
        console.print(
            f"[dim]Queued work is waiting; run 'notion-sync process-queue' "
            f"(due {wakeup.pending_at:%H:%M:%S} UTC)[/dim]"
        )
    if aborted:
        raise typer.Exit(1)


@app.command("sync-page")
def sync_page(
    page_id: str = typer.Argument(..., help="Page id"),
    database_id: Optional[str] = typer.Option(
        None, "--database", "-d", help="Database the page belongs to (holds its sync lock)"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Write the page even if unchanged"),
    include_blocks: Optional[bool] = typer.Option(
        None, "--blocks/--no-blocks", help="Fetch page content (block trees)"
    ),
) -> None:
    """
    Synchronize a single page without listing its database.
    """
    print_banner()

    async def run() -> bool:
        async with SyncOrchestrator() as orchestrator:
            summary = await orchestrator.sync_page(
                page_id,
                database_id,
                SyncOptions(force=force, include_blocks=include_blocks),
            )
        if summary.created or summary.updated:
            console.print(f"[green]Page {page_id} written[/green]")
        elif summary.skipped:
            console.print(f"[dim]Page {page_id} is unchanged[/dim]")
        for error in summary.errors:
            console.print(f"  [red]-[/red] {error}")
        return summary.aborted or bool(summary.failed)

    try:
        failed = asyncio.run(run())
    except SyncLockedError:
        console.print(f"[yellow]A sync of {database_id} is running, try again later[/yellow]")
        raise typer.Exit(1)
    except NotionSyncError as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        raise typer.Exit(1)

    if failed:
        raise typer.Exit(1)


@app.command()
def plan(
    database_id: str = typer.Argument(..., help="Database id"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="full, incremental or manual"),
    include_blocks: Optional[bool] = typer.Option(
        None, "--blocks/--no-blocks", help="Fetch page content (block trees)"
    ),
) -> None:
    """
    Show which pages a sync would create, update or skip.

    Does not modify the local store.
    """
    print_banner()
    _check_mode(mode)

    async def run_plan() -> None:
        async with SyncOrchestrator(use_events=False) as orchestrator:
            sync_plan = await orchestrator.plan_sync(
                database_id, SyncOptions(mode=mode, include_blocks=include_blocks)
            )

        table = Table(show_header=True, header_style="bold")
        table.add_column("Action", style="cyan")
        table.add_column("Page")
        table.add_column("Title")
        table.add_column("Changed", style="yellow")

        for action, pages in (("create", sync_plan.to_create), ("update", sync_plan.to_update)):
            for page in pages:
                changes = sync_plan.changes.get(page.id)
                facets = ", ".join(changes.changed_facets) if changes else ""
                table.add_row(action, page.id, page.title or "-", facets)

        console.print(table)
        console.print(
            f"[bold]{len(sync_plan.to_create)}[/bold] to create, "
            f"[bold]{len(sync_plan.to_update)}[/bold] to update, "
            f"[bold]{len(sync_plan.to_skip)}[/bold] unchanged"
        )
        if sync_plan.fallback_strategy:
            console.print(f"[yellow]Fallback used: {sync_plan.fallback_strategy.value}[/yellow]")
        for error in sync_plan.errors:
            console.print(f"  [red]-[/red] {error}")

    try:
        asyncio.run(run_plan())
    except NotionSyncError as e:
        console.print(f"[red]Planning failed: {e}[/red]")
        raise typer.Exit(1)


@app.command("process-queue")
def process_queue(
    rounds: int = typer.Option(
        1, "--rounds", "-r", help="Queue runs to perform (stops early when idle)"
    ),
) -> None:
    """
    Run queued batches: one batch per ready task, per round.
    """
    print_banner()

    async def run_queue() -> None:
        async with SyncOrchestrator() as orchestrator:
            for round_number in range(1, rounds + 1):
                result = await orchestrator.process_queue()
                console.print(
                    f"Round {round_number}: {result.processed} processed, "
                    f"{result.completed} completed, {result.failed} failed, "
                    f"{result.retrying} retrying ({result.duration:.1f}s)"
                )
                if not result.processed or not result.work_remaining:
                    break

    try:
        asyncio.run(run_queue())
    except Exception as e:
        console.print(f"[red]Queue run failed: {e}[/red]")
        raise typer.Exit(1)


@app.command("queue-status")
def queue_status() -> None:
    """
    Show the number of tasks per status.
    """
    print_banner()

    async def run_status() -> None:
        async with SyncOrchestrator(use_events=False) as orchestrator:
            counts = await orchestrator.queue.get_queue_status()

        table = Table(show_header=True, header_style="bold")
        table.add_column("Status", style="cyan")
        table.add_column("Tasks", justify="right", style="green")
        for status, count in counts.items():
            if status != "total":
                table.add_row(status, f"{count:,}")

        console.print(table)
        console.print(f"[bold]Total tasks:[/bold] {counts['total']:,}")

    asyncio.run(run_status())


@app.command()
def task(
    task_id: str = typer.Argument(..., help="Task id"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw status as JSON"),
) -> None:
    """
    Show the status of one queue task.
    """

    async def run_task() -> dict:
        async with SyncOrchestrator(use_events=False) as orchestrator:
            return await orchestrator.queue.get_status(task_id)

    try:
        status = asyncio.run(run_task())
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(status))
        return

    print_banner()
    console.print(f"[bold]Task {status['id']}[/bold] ({status['operation']})")
    console.print(f"  Status: {status['status']}")
    console.print(
        f"  Progress: {status['progress']}% "
        f"(batch {status['current_batch']}/{status['total_batches']})"
    )
    console.print(f"  Retries: {status['retry_count']}")
    if status["next_attempt_at"]:
        console.print(f"  Next attempt: {status['next_attempt_at']}")
    for error in status["errors"][-5:]:
        console.print(f"  [red]-[/red] {error}")


@app.command()
def cancel(task_id: str = typer.Argument(..., help="Task id")) -> None:
    """
    Cancel a pending or retrying task.
    """

    async def run_cancel() -> bool:
        async with SyncOrchestrator(use_events=False) as orchestrator:
            return await orchestrator.queue.cancel(task_id)

    try:
        cancelled = asyncio.run(run_cancel())
    except TaskNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if cancelled:
        console.print(f"[green]Task {task_id} cancelled[/green]")
    else:
        console.print(f"[yellow]Task {task_id} is running or finished, not cancelled[/yellow]")
        raise typer.Exit(1)


@app.command()
def cleanup(
    days: int = typer.Option(
        settings.queue_retention_days, "--days", "-d", help="Keep finished tasks this many days"
    ),
) -> None:
    """
    Delete completed and failed tasks older than the retention window.
    """

    async def run_cleanup() -> int:
        async with SyncOrchestrator(use_events=False) as orchestrator:
            return await orchestrator.queue.cleanup(days)

    removed = asyncio.run(run_cleanup())
    console.print(f"[green]Removed {removed} finished task(s)[/green]")


@app.command()
def schedule(
    database_ids: Optional[list[str]] = typer.Argument(
        None, help="Database id(s). Defaults to SYNC_DATABASE_IDS."
    ),
    interval: Optional[int] = typer.Option(
        None, "--interval", "-i", help="Minutes between incremental syncs"
    ),
    metrics_port: int = typer.Option(
        settings.metrics_port, "--metrics-port", help="Port for Prometheus metrics server"
    ),
) -> None:
    """
    Start the scheduler daemon.

    Runs continuously, performing:
    - Incremental syncs at regular intervals
    - Queue runs every minute and whenever queued work is due
    - Daily cleanup of finished tasks and expired cache entries
    - Exposes Prometheus metrics on /metrics endpoint

    Use Ctrl+C to stop the daemon gracefully.
    """
    print_banner()

    from notion_sync.scheduler import run_scheduler

    try:
        asyncio.run(run_scheduler(
            database_ids=database_ids or None,
            sync_interval=interval,
            metrics_port=metrics_port,
        ))
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped by user[/yellow]")
        raise typer.Exit(130)


@app.command("init-db")
def init_db() -> None:
    """
    Initialize the database schema.

    Creates all required tables if they don't exist.
    """
    print_banner()
    console.print("[blue]Initializing database schema...[/blue]")

    async def run_init() -> None:
        async with SyncOrchestrator(use_events=False):
            console.print("[green]Database schema initialized successfully![/green]")

    try:
        asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        raise typer.Exit(1)


@app.command("test-connection")
def test_connection() -> None:
    """
    Check the API token by fetching the bot user.

    Does not modify the database.
    """
    print_banner()

    async def run_test() -> bool:
        async with NotionClient(mode="manual") as client:
            result = await client.get_me()
            circuit = client.circuit_status
        if not result.ok:
            console.print(f"[red]Connection failed: {result.error_message}[/red]")
            if circuit:
                console.print(f"  Circuit {circuit['host']}: {circuit['state']}")
            return False
        console.print("[green]Connection successful![/green]")
        console.print(f"  Bot: {result.data.get('name', 'Unknown')}")
        return True

    if not asyncio.run(run_test()):
        raise typer.Exit(1)


@app.callback()
def main(
    log_level: str = typer.Option(
        settings.log_level, "--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)"
    ),
) -> None:
    """
    Notion Sync - Incremental synchronization of Notion databases.

    Mirrors Notion database pages into a local store, re-fetching only what
    changed. Large change sets are processed by a persisted batch queue.

    Features:
    - Hash-based change detection
    - Retries, fallbacks and circuit breaking for API failures
    - Event emission via Redis for real-time updates
    - Prometheus metrics for monitoring

    Use 'notion-sync COMMAND --help' for more information on a command.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


if __name__ == "__main__":
    app()
