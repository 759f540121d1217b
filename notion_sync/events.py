"""
Redis event publishing.

Sync runs and queue tasks announce themselves on Redis Pub/Sub so other
services can react to content changes without polling the local store.

Channels and event types:
- notion_sync:sync   sync:started, sync:finished (status success, partial
                     or queued), sync:aborted
- notion_sync:pages  page:batch, sent every `batch_size` written pages
- notion_sync:tasks  task:completed, task:failed

Publishing never fails a sync: when Redis is unreachable the emitter
switches itself off and logs the reason.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as redis
from rich.console import Console

from notion_sync.config import settings
from notion_sync.models import SyncSummary

console = Console()

PAGE_IDS_PER_EVENT = 100


class EventType(str, Enum):
    SYNC_STARTED = "sync:started"
    SYNC_FINISHED = "sync:finished"
    SYNC_ABORTED = "sync:aborted"
    PAGE_BATCH = "page:batch"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"


@dataclass
class SyncEvent:
    """Payload of one published event. Unset fields are left out of the JSON."""

    event_type: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    database_id: str | None = None
    sync_mode: str | None = None
    status: str | None = None

    page_count: int | None = None
    page_ids: list[str] | None = None

    task_id: str | None = None
    operation: str | None = None

    duration_seconds: float | None = None
    created: int | None = None
    updated: int | None = None
    skipped: int | None = None
    failed: int | None = None
    queued_pages: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_summary(cls, summary: SyncSummary, status: str) -> "SyncEvent":
        if summary.aborted:
            return cls(
                event_type=EventType.SYNC_ABORTED.value,
                database_id=summary.database_id,
                sync_mode=summary.mode,
                status=status,
                duration_seconds=summary.duration,
                metadata={"error": summary.errors[-1] if summary.errors else "aborted"},
            )

        metadata: dict[str, Any] = {}
        if summary.task_ids:
            metadata["task_ids"] = summary.task_ids
        if summary.errors:
            metadata["errors"] = summary.errors[:10]

        return cls(
            event_type=EventType.SYNC_FINISHED.value,
            database_id=summary.database_id,
            sync_mode=summary.mode,
            status=status,
            duration_seconds=summary.duration,
            created=summary.created,
            updated=summary.updated,
            skipped=summary.skipped,
            failed=summary.failed,
            queued_pages=summary.queued_pages,
            metadata=metadata,
        )

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None and v != {}}
        return json.dumps(data, default=str)


class EventEmitter:
    """
    Publishes SyncEvents to Redis.

    Usage:
        async with EventEmitter() as emitter:
            await emitter.emit_sync_started("db-id", "incremental")
            await emitter.page_written(page_id, "db-id")
            await emitter.emit_sync_finished(summary, "success")
    """

    CHANNEL_SYNC = "notion_sync:sync"
    CHANNEL_PAGES = "notion_sync:pages"
    CHANNEL_TASKS = "notion_sync:tasks"

    def __init__(
        self,
        redis_url: str | None = None,
        enabled: bool = True,
        client: Any = None,
        batch_size: int = 50,
    ) -> None:
        """
        Args:
            redis_url: Redis connection URL (default from settings)
            enabled: Whether to publish at all
            client: Ready-made Redis client, used instead of connecting
            batch_size: Written pages per page:batch event
        """
        self.redis_url = redis_url or settings.redis_url
        self.enabled = enabled and settings.events_enabled
        self.batch_size = batch_size
        self._client = client
        self._owns_client = client is None
        self._pending: dict[str | None, list[str]] = {}

    async def __aenter__(self) -> "EventEmitter":
        if not self.enabled or self._client is not None:
            return self
        try:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await self._client.ping()
            console.print("[dim]Event emitter connected to Redis[/dim]")
        except (redis.RedisError, OSError) as e:
            console.print(f"[yellow]Event emitter disabled: {e}[/yellow]")
            self.enabled = False
            self._client = None
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for database_id in list(self._pending):
            await self._flush_pages(database_id)

        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _publish(self, channel: str, event: SyncEvent) -> None:
        if not self.enabled or self._client is None:
            return
        try:
            await self._client.publish(channel, event.to_json())
        except (redis.RedisError, OSError) as e:
            console.print(f"[yellow]Failed to publish {event.event_type}: {e}[/yellow]")

    async def _flush_pages(self, database_id: str | None) -> None:
        page_ids = self._pending.pop(database_id, [])
        if not page_ids:
            return
        await self._publish(
            self.CHANNEL_PAGES,
            SyncEvent(
                event_type=EventType.PAGE_BATCH.value,
                database_id=database_id,
                page_count=len(page_ids),
                page_ids=page_ids[:PAGE_IDS_PER_EVENT],
            ),
        )

    async def page_written(self, page_id: str, database_id: str | None = None) -> None:
        """Buffer a written page id per database."""
        if not self.enabled:
            return
        pending = self._pending.setdefault(database_id, [])
        pending.append(page_id)
        if len(pending) >= self.batch_size:
            await self._flush_pages(database_id)

    # ========== Sync runs ==========

    async def emit_sync_started(self, database_id: str, sync_mode: str) -> None:
        await self._publish(
            self.CHANNEL_SYNC,
            SyncEvent(
                event_type=EventType.SYNC_STARTED.value,
                database_id=database_id,
                sync_mode=sync_mode,
            ),
        )

    async def emit_sync_finished(self, summary: SyncSummary, status: str) -> None:
        """Flush the run's pending pages, then publish its outcome."""
        await self._flush_pages(summary.database_id)
        await self._publish(self.CHANNEL_SYNC, SyncEvent.from_summary(summary, status))

    # ========== Queue tasks ==========

    async def emit_task_completed(self, task_id: str, operation: str) -> None:
        await self._publish(
            self.CHANNEL_TASKS,
            SyncEvent(
                event_type=EventType.TASK_COMPLETED.value,
                task_id=task_id,
                operation=operation,
            ),
        )

    async def emit_task_failed(self, task_id: str, operation: str, error: str) -> None:
        await self._publish(
            self.CHANNEL_TASKS,
            SyncEvent(
                event_type=EventType.TASK_FAILED.value,
                task_id=task_id,
                operation=operation,
                metadata={"error": error},
            ),
        )
