"""
Scheduler module - Automated sync and queue runs.

Provides recurring incremental syncs, queue processing and daily cleanup
using APScheduler. The scheduler also serves as the queue's wake-up
scheduler: follow-up queue runs are single date-triggered jobs.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from rich.console import Console
from rich.panel import Panel

from notion_sync.config import settings
from notion_sync.metrics import metrics
from notion_sync.queue.manager import WakeupScheduler
from notion_sync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)
console = Console()

QUEUE_WAKEUP_JOB = "queue_wakeup"

OrchestratorFactory = Callable[[WakeupScheduler], SyncOrchestrator]


def _default_orchestrator(wakeup: WakeupScheduler) -> SyncOrchestrator:
    return SyncOrchestrator(wakeup=wakeup)


class SyncScheduler:
    """
    Scheduler for automated Notion synchronization.

    Runs:
    - Incremental syncs of the configured databases every N minutes
    - Queue processing every N minutes, plus on-demand wake-ups
    - Cleanup of finished tasks and expired cache entries once per day
    """

    def __init__(
        self,
        database_ids: list[str] | None = None,
        sync_interval_minutes: int | None = None,
        queue_interval_minutes: int | None = None,
        cleanup_hour: int | None = None,
        orchestrator_factory: OrchestratorFactory | None = None,
        scheduler: AsyncIOScheduler | None = None,
        sync_enabled: bool | None = None,
    ) -> None:
        """
        Initialize the sync scheduler.

        Args:
            database_ids: Databases to sync. Defaults to settings.sync_database_ids.
            sync_interval_minutes: Minutes between incremental syncs.
            queue_interval_minutes: Minutes between regular queue runs.
            cleanup_hour: Hour of day for the cleanup job (24h format).
            orchestrator_factory: Builds the orchestrator used by each job.
            sync_enabled: Run scheduled syncs at all. Defaults to settings.sync_enabled.
                The queue and cleanup jobs run either way.
        """
        self.database_ids = (
            database_ids if database_ids is not None else list(settings.sync_database_ids)
        )
        self.sync_interval = sync_interval_minutes or settings.sync_interval_minutes
        self.queue_interval = queue_interval_minutes or settings.queue_interval_minutes
        self.cleanup_hour = cleanup_hour if cleanup_hour is not None else settings.cleanup_hour
        self.sync_enabled = settings.sync_enabled if sync_enabled is None else sync_enabled

        self.scheduler = scheduler or AsyncIOScheduler()
        self._orchestrator_factory = orchestrator_factory or _default_orchestrator
        self._running: set[str] = set()
        self._stats: dict[str, Any] = {}

    # ========== Wake-ups ==========

    def request_wakeup(self, delay_seconds: float = 0.0) -> bool:
        """Schedule a one-off queue run unless one is already pending."""
        if self.scheduler.get_job(QUEUE_WAKEUP_JOB) is not None:
            return False

        run_date = datetime.now(timezone.utc) + timedelta(seconds=max(delay_seconds, 0.0))
        self.scheduler.add_job(
            self._run_queue,
            trigger=DateTrigger(run_date=run_date),
            id=QUEUE_WAKEUP_JOB,
            name="Queue Wake-up",
            max_instances=1,
            misfire_grace_time=None,
        )
        logger.debug("Queue wake-up scheduled for %s", run_date.isoformat())
        return True

    def has_pending_wakeup(self) -> bool:
        return self.scheduler.get_job(QUEUE_WAKEUP_JOB) is not None

    # ========== Lifecycle ==========

    def register_jobs(self) -> None:
        """Add the recurring jobs."""
        if self.sync_enabled and self.database_ids:
            self.scheduler.add_job(
                self._run_incremental_sync,
                trigger=IntervalTrigger(minutes=self.sync_interval),
                id="incremental_sync",
                name="Notion Incremental Sync",
                replace_existing=True,
                max_instances=1,  # Prevent overlapping syncs
            )

        self.scheduler.add_job(
            self._run_queue,
            trigger=IntervalTrigger(minutes=self.queue_interval),
            id="queue_processor",
            name="Queue Processor",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self._run_cleanup,
            trigger=CronTrigger(hour=self.cleanup_hour, minute=0),
            id="cleanup",
            name="Queue & Cache Cleanup",
            replace_existing=True,
            max_instances=1,
        )

    async def start(self) -> None:
        """Start the scheduler and register jobs."""
        incremental = f"every {self.sync_interval} minutes" if self.sync_enabled else "disabled"
        console.print(Panel.fit(
            "[bold green]Starting Sync Scheduler[/bold green]\n"
            f"[dim]Databases: {len(self.database_ids)}[/dim]\n"
            f"[dim]Incremental: {incremental}[/dim]\n"
            f"[dim]Queue: every {self.queue_interval} minutes[/dim]\n"
            f"[dim]Cleanup: daily at {self.cleanup_hour:02d}:00[/dim]",
            border_style="green",
        ))

        self.register_jobs()
        self.scheduler.start()
        console.print("[green]Scheduler started successfully[/green]")

        if self.sync_enabled and self.database_ids:
            console.print("[dim]Running initial sync...[/dim]")
            await self._run_incremental_sync()

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self.scheduler.running:
            return
        console.print("[yellow]Stopping scheduler...[/yellow]")
        self.scheduler.shutdown(wait=True)
        console.print("[green]Scheduler stopped[/green]")

    # ========== Jobs ==========

    async def _exclusive(self, name: str, body: Callable[[], Awaitable[None]]) -> None:
        """Run a job body unless the previous run of the same job is still going."""
        if name in self._running:
            logger.warning("%s still running, skipping this run", name)
            return

        self._running.add(name)
        try:
            await body()
        except Exception as e:
            logger.exception("%s failed", name)
            console.print(f"[red]{name} failed: {e}[/red]")
        finally:
            self._running.discard(name)

    async def _run_incremental_sync(self) -> None:
        if not self.sync_enabled:
            logger.info("Scheduled syncs are disabled, skipping")
            return

        async def body() -> None:
            started = datetime.now(timezone.utc)
            console.print(f"\n[blue][{started:%H:%M:%S}] Incremental sync...[/blue]")
            async with self._orchestrator_factory(self) as orchestrator:
                summaries = await orchestrator.sync_all(self.database_ids, mode="incremental")

            self._stats["last_incremental"] = {
                "time": started.isoformat(),
                "duration": (datetime.now(timezone.utc) - started).total_seconds(),
                "created": sum(s.created for s in summaries),
                "updated": sum(s.updated for s in summaries),
                "queued": sum(s.queued_pages for s in summaries),
                "aborted": sum(1 for s in summaries if s.aborted),
            }

        await self._exclusive("incremental_sync", body)

    async def _run_queue(self) -> None:
        async def body() -> None:
            async with self._orchestrator_factory(self) as orchestrator:
                result = await orchestrator.process_queue()
            if result.processed:
                console.print(
                    f"[dim]Queue: {result.processed} processed, {result.completed} completed, "
                    f"{result.failed} failed in {result.duration:.1f}s[/dim]"
                )
            self._stats["last_queue_run"] = {
                "time": datetime.now(timezone.utc).isoformat(),
                "processed": result.processed,
                "work_remaining": result.work_remaining,
            }

        await self._exclusive("queue_processor", body)

    async def _run_cleanup(self) -> None:
        async def body() -> None:
            async with self._orchestrator_factory(self) as orchestrator:
                removed = await orchestrator.queue.cleanup()
                purged = await orchestrator.storage.purge_expired_cache(
                    datetime.now(timezone.utc).timestamp()
                )
            self._stats["last_cleanup"] = {"tasks_removed": removed, "cache_purged": purged}
            console.print(f"[dim]Cleanup: {removed} task(s), {purged} cache entr(ies) removed[/dim]")

        await self._exclusive("cleanup", body)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "running_jobs": sorted(self._running),
            "jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": str(getattr(job, "next_run_time", None) or "pending"),
                }
                for job in self.scheduler.get_jobs()
            ],
            "stats": self._stats,
        }


async def run_scheduler(
    database_ids: list[str] | None = None,
    sync_interval: int | None = None,
    metrics_port: int | None = None,
) -> None:
    """Run the scheduler (and the metrics server, if enabled) until cancelled."""
    scheduler = SyncScheduler(database_ids=database_ids, sync_interval_minutes=sync_interval)

    try:
        if settings.metrics_enabled:
            await metrics.start_server(port=metrics_port or settings.metrics_port)
        await scheduler.start()
        await asyncio.Event().wait()
    except (asyncio.CancelledError, KeyboardInterrupt):
        pass
    finally:
        await scheduler.stop()
        await metrics.stop_server()
