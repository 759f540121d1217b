"""Sync module - Change detection and orchestration."""

from notion_sync.sync.context import SyncContext
from notion_sync.sync.detector import ChangeDetector, canonical_json
from notion_sync.sync.lock import SyncLock, sync_lock_name
from notion_sync.sync.orchestrator import (
    IMPORT_PAGES,
    UPDATE_PAGES,
    SyncOptions,
    SyncOrchestrator,
    default_client_factory,
)
from notion_sync.sync.writer import DatabasePageWriter, PageWriter, write_and_record

__all__ = [
    "IMPORT_PAGES",
    "UPDATE_PAGES",
    "ChangeDetector",
    "DatabasePageWriter",
    "PageWriter",
    "SyncContext",
    "SyncLock",
    "SyncOptions",
    "SyncOrchestrator",
    "canonical_json",
    "default_client_factory",
    "sync_lock_name",
    "write_and_record",
]
