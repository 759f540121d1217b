"""Storage module - Data persistence."""

from notion_sync.storage.database import DatabaseStorage, SyncRecordStore, TaskStore
from notion_sync.storage.models import (
    Base,
    CacheEntryRow,
    DatabaseSyncState,
    LocalPage,
    QueueTaskRow,
    SyncRecordRow,
)

__all__ = [
    "Base",
    "CacheEntryRow",
    "DatabaseStorage",
    "DatabaseSyncState",
    "LocalPage",
    "QueueTaskRow",
    "SyncRecordRow",
    "SyncRecordStore",
    "TaskStore",
]
