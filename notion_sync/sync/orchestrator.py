"""
Sync Orchestrator

Coordinates one synchronization run of a Notion database:
- Candidate listing (full, or incremental since the last watermark)
- Change detection against the stored sync records
- Direct writes for small change sets, queued batch tasks for large ones
- Per-page error isolation
- Redis event emission
- Prometheus metrics
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from notion_sync.client.notion_client import NotionClient
from notion_sync.config import settings
from notion_sync.events import EventEmitter
from notion_sync.exceptions import (
    ApiRequestError,
    DetectionError,
    SyncAbortedError,
    SyncLockedError,
)
from notion_sync.metrics import metrics
from notion_sync.models import (
    ChangeSet,
    ErrorKind,
    RemotePage,
    SyncPlan,
    SyncRecord,
    SyncSummary,
)
from notion_sync.queue.manager import QueueManager, QueueRunResult, WakeupScheduler
from notion_sync.queue.task import Task, TaskOptions
from notion_sync.storage.database import DatabaseStorage
from notion_sync.sync.context import SyncContext
from notion_sync.sync.detector import ChangeDetector
from notion_sync.sync.lock import QUEUE_LOCK, SyncLock, sync_lock_name
from notion_sync.sync.writer import DatabasePageWriter, PageWriter, write_and_record
from notion_sync.timestamps import parse_timestamp, to_iso

console = Console()
logger = logging.getLogger(__name__)

IMPORT_PAGES = "import_pages"
UPDATE_PAGES = "update_pages"

ClientFactory = Callable[[SyncContext], NotionClient]


def _abort_on_auth_error(error: ApiRequestError) -> None:
    """A rejected token ends the whole run, not just the current page."""
    if error.result is not None and error.result.error_kind == ErrorKind.AUTH_ERROR:
        raise SyncAbortedError(str(error)) from error


@dataclass
class SyncOptions:
    """Per-run options; unset values fall back to settings."""

    mode: str | None = None
    force: bool = False  # Write every candidate, changed or not
    include_blocks: bool | None = None
    additional_filters: list[dict[str, Any]] = field(default_factory=list)
    since: str | None = None  # Overrides the stored watermark
    queue_threshold: int | None = None
    task_options: TaskOptions | None = None


def default_client_factory(context: SyncContext) -> NotionClient:
    """A client bound to the run's mode and cache."""
    return NotionClient(mode=context.mode, cache=context.cache)


class SyncOrchestrator:
    """
    Orchestrates Notion database synchronization.

    Features:
    - Full sync: lists every page of the database
    - Incremental sync: lists pages edited since the last successful run
    - Hash-based skipping of unchanged pages
    - Large change sets are handed to the batch queue
    - Error recovery: one failing page never aborts the run

    Usage:
        async with SyncOrchestrator() as orchestrator:
            summary = await orchestrator.run_sync(database_id)
    """

    def __init__(
        self,
        storage: DatabaseStorage | None = None,
        database_url: str | None = None,
        client_factory: ClientFactory | None = None,
        writer: PageWriter | None = None,
        detector: ChangeDetector | None = None,
        queue: QueueManager | None = None,
        emitter: EventEmitter | None = None,
        queue_threshold: int | None = None,
        use_events: bool = True,
        wakeup: WakeupScheduler | None = None,
    ) -> None:
        self.storage = storage or DatabaseStorage(database_url)
        self.detector = detector or ChangeDetector()
        self.writer = writer or DatabasePageWriter(self.storage)
        self.queue = queue or QueueManager(self.storage, wakeup=wakeup)
        self.queue_threshold = (
            queue_threshold if queue_threshold is not None else settings.queue_threshold
        )
        self._client_factory = client_factory or default_client_factory
        self._event_emitter = emitter
        self._owns_emitter = emitter is None and use_events

        self.queue.register_operation(IMPORT_PAGES, self._import_pages)
        self.queue.register_operation(UPDATE_PAGES, self._update_pages)
        if self.queue.emitter is None:
            self.queue.emitter = emitter

    async def __aenter__(self) -> "SyncOrchestrator":
        """Async context manager entry."""
        await self.storage.initialize()
        if self._owns_emitter:
            self._event_emitter = EventEmitter()
            await self._event_emitter.__aenter__()
            if self.queue.emitter is None:
                self.queue.emitter = self._event_emitter
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._owns_emitter and self._event_emitter:
            await self._event_emitter.__aexit__(exc_type, exc_val, exc_tb)
        await self.storage.close()

    # ========== Planning ==========

    async def plan_sync(self, database_id: str, options: SyncOptions | None = None) -> SyncPlan:
        """
        Classify the database's candidate pages without writing anything.

        Raises:
            SyncAbortedError: If the token is rejected
            ApiRequestError: If the candidate listing fails
        """
        options = options or SyncOptions()
        async with SyncContext.create(options.mode, self.storage, database_id) as context:
            async with self._client_factory(context) as client:
                return await self._plan(client, context, database_id, options)

    async def _plan(
        self,
        client: NotionClient,
        context: SyncContext,
        database_id: str,
        options: SyncOptions,
    ) -> SyncPlan:
        since = await self._incremental_since(database_id, context.mode, options)
        result = await client.query_database_incremental(
            database_id,
            last_sync_time=since or "",
            additional_filters=options.additional_filters,
        )

        if not result.ok:
            message = f"Listing pages of {database_id} failed: {result.error_message}"
            if result.error_kind == ErrorKind.AUTH_ERROR:
                raise SyncAbortedError(message)
            raise ApiRequestError(message, result)

        plan = SyncPlan(database_id=database_id, fallback_strategy=result.fallback_strategy)
        plan.partial = bool(result.context.get("partial"))
        if result.used_fallback:
            console.print(
                f"[yellow]Listing used fallback {result.fallback_strategy.value}[/yellow]"
            )

        pages = [
            RemotePage.from_api(item)
            for item in result.results
            if isinstance(item, dict) and item.get("object", "page") == "page" and item.get("id")
        ]

        if self._include_blocks(options):
            pages = await self._attach_blocks(client, pages, plan)

        page_ids = [page.id for page in pages]
        mappings = await self.storage.get_local_mappings(page_ids)
        records = await self._load_records(page_ids)

        for page in pages:
            record = records.get(page.id)
            action = self._classify(page, record, page.id in mappings, options.force)
            if action == "skip":
                plan.to_skip.append(page)
                continue

            plan.changes[page.id] = self._changes_for(page, record)
            if action == "update":
                plan.to_update.append(page)
            else:
                plan.to_create.append(page)

        metrics.record_pages_planned("create", len(plan.to_create))
        metrics.record_pages_planned("update", len(plan.to_update))
        metrics.record_pages_planned("skip", len(plan.to_skip))

        console.print(
            f"[cyan]Plan for {database_id}: {len(plan.to_create)} new, "
            f"{len(plan.to_update)} changed, {len(plan.to_skip)} unchanged[/cyan]"
        )
        return plan

    async def _incremental_since(
        self, database_id: str, mode: str, options: SyncOptions
    ) -> str | None:
        """Watermark minus the safety buffer; None means list everything."""
        if mode == "full":
            return None

        since = options.since
        if since is None:
            state = await self.storage.get_database_state(database_id)
            since = state.last_sync_time if state else None
        if not since:
            return None

        try:
            buffered = parse_timestamp(since) - timedelta(
                minutes=settings.incremental_time_buffer_minutes
            )
        except ValueError:
            logger.warning("Unparsable watermark %r for %s, using it as is", since, database_id)
            return since
        return to_iso(buffered)

    async def _attach_blocks(
        self, client: NotionClient, pages: list[RemotePage], plan: SyncPlan
    ) -> list[RemotePage]:
        """Fetch block trees; pages whose content is unavailable are left out."""
        attached: list[RemotePage] = []
        for page in pages:
            try:
                blocks = await client.get_page_content(page.id)
            except ApiRequestError as e:
                _abort_on_auth_error(e)
                plan.errors.append(f"{page.id}: content unavailable: {e}")
                continue
            attached.append(page.with_blocks(blocks))
        return attached

    async def _load_records(self, page_ids: list[str]) -> dict[str, SyncRecord]:
        """Sync records for the candidates; if they cannot be read, every page syncs."""
        try:
            return await self.storage.get_sync_records(page_ids)
        except SQLAlchemyError as e:
            logger.warning("Sync records unavailable, treating all pages as changed: %s", e)
            return {}

    @staticmethod
    def _include_blocks(options: SyncOptions) -> bool:
        if options.include_blocks is not None:
            return options.include_blocks
        return settings.include_blocks

    def _classify(
        self, page: RemotePage, record: SyncRecord | None, mapped: bool, force: bool
    ) -> str:
        """create, update or skip. A page without a local copy is always created."""
        if not mapped:
            return "create"
        if not force and self.detector.should_skip(page, record):
            return "skip"
        return "update"

    def _changes_for(self, page: RemotePage, record: SyncRecord | None) -> ChangeSet:
        try:
            return self.detector.detect_changes(page, record)
        except DetectionError as e:
            logger.warning("Hashing failed for page %s: %s", page.id, e)
            return ChangeSet(last_edited_time={"new": page.last_edited_time})

    # ========== Sync Runs ==========

    async def run_sync(
        self,
        database_id: str,
        mode: str | None = None,
        options: SyncOptions | None = None,
    ) -> SyncSummary:
        """
        Synchronize one database.

        A rejected token aborts the run; any other failure of a single page
        is recorded in the summary and the run carries on. While another
        run holds the database's lock the call returns an aborted summary
        without touching the stored sync state.
        """
        options = options or SyncOptions()
        mode = mode or options.mode or settings.sync_mode
        options.mode = mode
        try:
            async with SyncLock(self.storage, sync_lock_name(database_id)):
                return await self._run_sync(database_id, mode, options)
        except SyncLockedError as e:
            console.print(f"[yellow]Sync of {database_id} skipped: already running[/yellow]")
            return SyncSummary(
                database_id=database_id,
                mode=mode,
                aborted=True,
                errors=[f"sync already running: {e}"],
            )

    async def _run_sync(self, database_id: str, mode: str, options: SyncOptions) -> SyncSummary:
        start_time = time.time()
        summary = SyncSummary(database_id=database_id, mode=mode)
        plan: SyncPlan | None = None

        console.print(f"\n[bold blue]Syncing database {database_id} ({mode})[/bold blue]")
        if self._event_emitter:
            await self._event_emitter.emit_sync_started(database_id=database_id, sync_mode=mode)

        async with SyncContext.create(mode, self.storage, database_id) as context:
            try:
                async with metrics.track_sync(database_id, mode):
                    async with self._client_factory(context) as client:
                        plan = await self._plan(client, context, database_id, options)
                    await self._apply_plan(plan, summary, options)
            except (SyncAbortedError, ApiRequestError) as e:
                summary.aborted = True
                summary.errors.append(str(e))
                console.print(f"[red]Sync of {database_id} aborted: {e}[/red]")
            except SQLAlchemyError as e:
                summary.aborted = True
                summary.errors.append(f"storage error: {e}")
                logger.exception("Storage failed while syncing %s", database_id)

        summary.duration = time.time() - start_time
        await self._finish(summary, plan, context)
        return summary

    async def _apply_plan(
        self, plan: SyncPlan, summary: SyncSummary, options: SyncOptions
    ) -> None:
        summary.skipped = len(plan.to_skip)
        summary.fallback_strategy = plan.fallback_strategy
        summary.errors.extend(plan.errors)

        threshold = (
            options.queue_threshold if options.queue_threshold is not None else self.queue_threshold
        )
        if plan.changed_count > threshold:
            await self._enqueue_plan(plan, summary, options)
            return

        for page in plan.to_create:
            if await self._write_page(page, plan.database_id, summary):
                summary.created += 1
        for page in plan.to_update:
            if await self._write_page(page, plan.database_id, summary):
                summary.updated += 1

    async def _enqueue_plan(
        self, plan: SyncPlan, summary: SyncSummary, options: SyncOptions
    ) -> None:
        include_blocks = self._include_blocks(options)

        def refs(pages: list[RemotePage]) -> list[dict[str, Any]]:
            return [
                {"page_id": page.id, "database_id": plan.database_id, "include_blocks": include_blocks}
                for page in pages
            ]

        for operation, pages in ((IMPORT_PAGES, plan.to_create), (UPDATE_PAGES, plan.to_update)):
            if not pages:
                continue
            task_id = await self.queue.enqueue(operation, refs(pages), options.task_options)
            summary.task_ids.append(task_id)
            summary.queued_pages += len(pages)

        console.print(
            f"[blue]{summary.queued_pages} changed pages handed to the queue "
            f"({len(summary.task_ids)} task(s))[/blue]"
        )

    async def _write_page(
        self, page: RemotePage, database_id: str | None, summary: SyncSummary
    ) -> bool:
        try:
            await write_and_record(self.writer, self.detector, self.storage, page, database_id)
        except Exception as e:
            logger.exception("Writing page %s failed", page.id)
            summary.failed += 1
            summary.errors.append(f"{page.id}: {e}")
            return False

        if self._event_emitter:
            await self._event_emitter.page_written(page.id, database_id)
        return True

    async def _finish(
        self, summary: SyncSummary, plan: SyncPlan | None, context: SyncContext
    ) -> None:
        """
        Record the run's outcome.

        The watermark only moves after a clean run. A queued run leaves it
        where it is until a later run finds nothing left to write.
        """
        clean = (
            plan is not None
            and not summary.aborted
            and not summary.queued
            and summary.failed == 0
            and not plan.partial
            and not plan.errors
        )

        if summary.aborted:
            status = "aborted"
        elif summary.queued:
            status = "queued"
        elif clean:
            status = "success"
        else:
            status = "partial"

        try:
            await self.storage.update_database_state(
                summary.database_id,
                status,
                page_count=plan.total if plan else 0,
                sync_time=context.started_at_iso if clean else None,
                full_sync=summary.mode == "full",
            )
        except SQLAlchemyError as e:
            logger.error("Could not record sync state of %s: %s", summary.database_id, e)
            summary.errors.append(f"state update failed: {e}")

        if self._event_emitter:
            await self._event_emitter.emit_sync_finished(summary, status)

        colour = "red" if summary.aborted else "yellow" if summary.errors else "green"
        console.print(
            f"[{colour}]{summary.database_id}: {summary.created} created, "
            f"{summary.updated} updated, {summary.skipped} skipped, "
            f"{summary.failed} failed, {summary.queued_pages} queued "
            f"in {summary.duration:.1f}s[/{colour}]"
        )

    async def sync_all(
        self, database_ids: list[str] | None = None, mode: str | None = None
    ) -> list[SyncSummary]:
        """Synchronize several databases one after another."""
        ids = database_ids if database_ids is not None else settings.sync_database_ids
        return [await self.run_sync(database_id, mode) for database_id in ids]

    async def sync_page(
        self,
        page_id: str,
        database_id: str | None = None,
        options: SyncOptions | None = None,
    ) -> SyncSummary:
        """
        Fetch and write a single page, outside any database listing.

        The page is created when it has no local copy, otherwise updated
        unless it matches its sync record (or `force` is set). The database
        watermark never moves. With a `database_id` the database's lock is
        held for the duration.

        Raises:
            SyncLockedError: If a sync of `database_id` is already running
        """
        options = options or SyncOptions()
        mode = options.mode or "manual"
        if database_id is None:
            return await self._sync_page(page_id, None, mode, options)
        async with SyncLock(self.storage, sync_lock_name(database_id)):
            return await self._sync_page(page_id, database_id, mode, options)

    async def _sync_page(
        self, page_id: str, database_id: str | None, mode: str, options: SyncOptions
    ) -> SyncSummary:
        start_time = time.time()
        summary = SyncSummary(database_id=database_id or "", mode=mode)

        async with SyncContext.create(mode, self.storage, database_id) as context:
            try:
                async with self._client_factory(context) as client:
                    page = await self._fetch_page(client, page_id, self._include_blocks(options))
                mapped = await self.storage.get_local_page(page.id) is not None
                record = await self.storage.get_sync_record(page.id)
                action = self._classify(page, record, mapped, options.force)
                if action == "skip":
                    summary.skipped = 1
                elif await self._write_page(page, database_id, summary):
                    if action == "create":
                        summary.created = 1
                    else:
                        summary.updated = 1
            except ApiRequestError as e:
                # An unreadable page fails; a rejected token aborts
                if e.result is not None and e.result.error_kind == ErrorKind.AUTH_ERROR:
                    summary.aborted = True
                else:
                    summary.failed = 1
                summary.errors.append(str(e))
                console.print(f"[red]Sync of page {page_id} failed: {e}[/red]")
            except SQLAlchemyError as e:
                summary.aborted = True
                summary.errors.append(f"storage error: {e}")
                logger.exception("Storage failed while syncing page %s", page_id)

        summary.duration = time.time() - start_time
        return summary

    # ========== Queue ==========

    async def enqueue_batch_operation(
        self,
        operation: str,
        data: list[Any],
        options: TaskOptions | dict[str, Any] | None = None,
    ) -> str:
        return await self.queue.enqueue(operation, data, options)

    async def process_queue(self) -> QueueRunResult:
        """Run due queue tasks; a no-op while another process is already running them."""
        try:
            async with SyncLock(self.storage, QUEUE_LOCK):
                return await self.queue.process_queue()
        except SyncLockedError:
            logger.info("Queue is already being processed elsewhere")
            return QueueRunResult()

    async def _import_pages(self, items: list[Any], task: Task) -> dict[str, Any]:
        """Queue handler: write every referenced page."""
        return await self._apply_queued_pages(items, check_changes=False)

    async def _update_pages(self, items: list[Any], task: Task) -> dict[str, Any]:
        """Queue handler: write referenced pages that still differ from their record."""
        return await self._apply_queued_pages(items, check_changes=True)

    async def _apply_queued_pages(self, items: list[Any], check_changes: bool) -> dict[str, Any]:
        """
        Write a batch of page references.

        A rejected token fails the whole batch so the queue retries it later;
        any other failure is reported per page.
        """
        written = skipped = 0
        errors: list[str] = []

        # Queued work always reads fresh page data
        async with SyncContext.create("incremental", self.storage) as context:
            async with self._client_factory(context) as client:
                for item in items:
                    ref = item if isinstance(item, dict) else {"page_id": str(item)}
                    page_id = ref.get("page_id", "")
                    database_id = ref.get("database_id")
                    try:
                        page = await self._fetch_page(
                            client, page_id, bool(ref.get("include_blocks", False))
                        )
                        if check_changes:
                            mapped = await self.storage.get_local_page(page.id) is not None
                            record = await self.storage.get_sync_record(page.id)
                            if self._classify(page, record, mapped, force=False) == "skip":
                                skipped += 1
                                continue
                        await write_and_record(
                            self.writer, self.detector, self.storage, page, database_id
                        )
                        written += 1
                    except ApiRequestError as e:
                        _abort_on_auth_error(e)
                        logger.warning("Queued page %s failed: %s", page_id, e)
                        errors.append(f"{page_id}: {e}")
                    except Exception as e:
                        logger.warning("Queued page %s failed: %s", page_id, e)
                        errors.append(f"{page_id}: {e}")

        return {
            "processed": len(items),
            "written": written,
            "skipped": skipped,
            "error_count": len(errors),
            "errors": errors,
        }

    async def _fetch_page(
        self, client: NotionClient, page_id: str, include_blocks: bool
    ) -> RemotePage:
        result = await client.get_page(page_id)
        if not result.ok:
            raise ApiRequestError(f"Could not fetch page {page_id}: {result.error_message}", result)
        page = RemotePage.from_api(result.data)
        if include_blocks:
            page = page.with_blocks(await client.get_page_content(page_id))
        return page
