"""Per-invocation sync context."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from notion_sync.cache import CacheStore, TieredCache
from notion_sync.config import settings
from notion_sync.timestamps import to_iso, utc_now


@dataclass
class SyncContext:
    """
    State owned by a single sync invocation.

    The session cache tier lives here, so it can never leak into the next
    run; the persistent tier is shared through `store`. Use as an async
    context manager or call `close()` when done.
    """

    mode: str
    cache: TieredCache
    database_id: str | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=utc_now)
    errors: list[str] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        mode: str | None = None,
        store: CacheStore | None = None,
        database_id: str | None = None,
        cache_enabled: bool | None = None,
    ) -> "SyncContext":
        enabled = settings.cache_enabled if cache_enabled is None else cache_enabled
        return cls(
            mode=mode or settings.sync_mode,
            cache=TieredCache(store=store, enabled=enabled),
            database_id=database_id,
        )

    @property
    def started_at_iso(self) -> str:
        return to_iso(self.started_at)

    def close(self) -> None:
        self.stats["cache"] = self.cache.get_stats()
        self.cache.clear_session()

    async def __aenter__(self) -> "SyncContext":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
