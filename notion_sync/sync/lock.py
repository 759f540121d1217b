"""
Expiring run locks.

A lock is a row in the sync_locks table, so two processes syncing against
the same store never run the same database (or the queue) at once. A lock
left behind by a crashed run expires after `ttl` seconds and can then be
taken over.
"""

import logging
import time
import uuid
from typing import Any, Callable

from notion_sync.config import settings
from notion_sync.exceptions import SyncLockedError
from notion_sync.storage.database import DatabaseStorage

logger = logging.getLogger(__name__)

QUEUE_LOCK = "queue"


def sync_lock_name(database_id: str) -> str:
    return f"sync:{database_id}"


class SyncLock:
    """
    Async context manager around one named lock.

    Usage:
        async with SyncLock(storage, sync_lock_name(database_id)):
            ...

    Raises:
        SyncLockedError: On entry, if another owner holds an unexpired lock
    """

    def __init__(
        self,
        storage: DatabaseStorage,
        name: str,
        ttl: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.name = name
        self.ttl = ttl if ttl is not None else settings.sync_lock_timeout
        self.clock = clock
        self.owner = uuid.uuid4().hex

    async def __aenter__(self) -> "SyncLock":
        if not await self.storage.acquire_lock(self.name, self.owner, self.ttl, self.clock()):
            raise SyncLockedError(self.name)
        logger.debug("Acquired lock %s", self.name)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if not await self.storage.release_lock(self.name, self.owner):
            logger.warning("Lock %s expired before the run finished", self.name)
