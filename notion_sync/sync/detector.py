"""
Change Detector

Decides whether a remote page needs to be re-synced by comparing content
hashes with the page's sync record. Hash comparison is primary; when a
record has no fine-grained hashes (or the page cannot be hashed) the
detector falls back to comparing `last_edited_time` with the last sync time.
"""

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from notion_sync.config import settings
from notion_sync.exceptions import DetectionError
from notion_sync.models import ChangeSet, RemotePage, SyncRecord
from notion_sync.storage.database import SyncRecordStore
from notion_sync.timestamps import later_of, parse_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

HASH_SEPARATOR = "|"


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, raw UTF-8."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _diff_properties(old: dict[str, Any], new: dict[str, Any]) -> dict[str, list[str]]:
    return {
        "added": sorted(key for key in new if key not in old),
        "changed": sorted(
            key for key in new if key in old and canonical_json(old[key]) != canonical_json(new[key])
        ),
        "removed": sorted(key for key in old if key not in new),
    }


class ChangeDetector:
    """Hash-based change detection for remote pages."""

    def __init__(self, tolerance_seconds: int | None = None) -> None:
        self.tolerance_seconds = (
            tolerance_seconds
            if tolerance_seconds is not None
            else settings.timestamp_tolerance_seconds
        )

    # ========== Hashing ==========

    def title_hash(self, page: RemotePage) -> str:
        return _sha256(page.title)

    def properties_hash(self, page: RemotePage) -> str:
        return _sha256(self._dump(page.properties))

    def blocks_hash(self, page: RemotePage) -> str:
        return _sha256(self._dump([block.to_hashable() for block in page.blocks]))

    def compute_hash(self, page: RemotePage) -> str:
        """
        Composite content hash of a page.

        Raises:
            DetectionError: If the page data cannot be serialized
        """
        parts = (
            page.title,
            self._dump(page.properties),
            page.last_edited_time,
            self._dump([block.to_hashable() for block in page.blocks]),
        )
        return _sha256(HASH_SEPARATOR.join(parts))

    @staticmethod
    def _dump(value: Any) -> str:
        try:
            return canonical_json(value)
        except (TypeError, ValueError) as e:
            raise DetectionError(f"Cannot serialize page data: {e}") from e

    # ========== Detection ==========

    def detect_changes(self, page: RemotePage, record: SyncRecord | None) -> ChangeSet:
        """
        Compare a page with its sync record, facet by facet.

        Raises:
            DetectionError: If the page cannot be hashed
        """
        if record is None or not record.content_hash:
            return ChangeSet(
                is_new=True,
                title={"old": None, "new": page.title},
                properties={"added": sorted(page.properties), "changed": [], "removed": []},
                blocks={"count": len(page.blocks)},
                last_edited_time={"old": None, "new": page.last_edited_time},
            )

        if self.compute_hash(page) == record.content_hash:
            return ChangeSet()

        changes = ChangeSet()

        if self.title_hash(page) != record.title_hash:
            changes.title = {"new": page.title}

        if self.properties_hash(page) != record.properties_hash:
            changes.properties = self._properties_diff(page, record)

        if self.blocks_hash(page) != record.blocks_hash:
            changes.blocks = {"count": len(page.blocks)}

        if page.last_edited_time != record.last_edited_time_seen or not changes.has_changes:
            changes.last_edited_time = {
                "old": record.last_edited_time_seen,
                "new": page.last_edited_time,
            }

        return changes

    def _properties_diff(self, page: RemotePage, record: SyncRecord) -> dict[str, list[str]]:
        old: dict[str, Any] | None = None
        if record.properties_json:
            try:
                loaded = json.loads(record.properties_json)
                old = loaded if isinstance(loaded, dict) else None
            except ValueError:
                old = None
        if old is None:
            return {"added": [], "changed": sorted(page.properties), "removed": []}
        return _diff_properties(old, page.properties)

    def should_sync_by_timestamp(
        self,
        remote_last_edited: str,
        local_last_sync: str | None,
        tolerance: int | None = None,
    ) -> bool:
        """
        True when the remote edit is newer than the local sync by more than
        the tolerance. Missing or unparsable timestamps mean "sync".
        """
        if not remote_last_edited or not local_last_sync:
            return True

        tolerance_seconds = self.tolerance_seconds if tolerance is None else tolerance
        try:
            remote = parse_timestamp(remote_last_edited)
            local = parse_timestamp(local_last_sync)
        except ValueError as e:
            logger.warning(
                "Cannot compare timestamps %r / %r: %s", remote_last_edited, local_last_sync, e
            )
            return True

        return remote > local + timedelta(seconds=tolerance_seconds)

    def should_skip(self, page: RemotePage, record: SyncRecord | None) -> bool:
        """Whether a page can be left alone this run. Never true for unsynced pages."""
        if record is None or (not record.content_hash and not record.last_sync_time):
            return False
        if not page.last_edited_time:
            return False

        if not record.content_hash or not record.has_fine_grained_hashes:
            return not self.should_sync_by_timestamp(page.last_edited_time, record.last_sync_time)

        try:
            return not self.detect_changes(page, record).has_changes
        except DetectionError as e:
            logger.warning("Hashing failed for page %s, using timestamps: %s", page.id, e)
            return not self.should_sync_by_timestamp(page.last_edited_time, record.last_sync_time)

    def batch_detect_changes(
        self,
        pages: Iterable[RemotePage],
        records: dict[str, SyncRecord],
    ) -> dict[str, ChangeSet]:
        """Change sets of the pages that changed; unchanged pages are left out."""
        changed: dict[str, ChangeSet] = {}
        for page in pages:
            try:
                changes = self.detect_changes(page, records.get(page.id))
            except DetectionError as e:
                logger.warning("Hashing failed for page %s: %s", page.id, e)
                changes = ChangeSet(last_edited_time={"new": page.last_edited_time})
            if changes.has_changes:
                changed[page.id] = changes
        return changed

    def filter_pages_for_incremental_sync(
        self,
        pages: Iterable[RemotePage],
        sync_times: dict[str, str],
    ) -> list[RemotePage]:
        """Pages edited after their recorded sync time (timestamps only)."""
        return [
            page
            for page in pages
            if self.should_sync_by_timestamp(page.last_edited_time, sync_times.get(page.id))
        ]

    # ========== Recording ==========

    def build_record(
        self,
        page: RemotePage,
        previous: SyncRecord | None = None,
        sync_time: str | None = None,
    ) -> SyncRecord:
        """Sync record describing a page that has just been written."""
        now = sync_time or utc_now_iso()
        return SyncRecord(
            remote_id=page.id,
            content_hash=self.compute_hash(page),
            title_hash=self.title_hash(page),
            properties_hash=self.properties_hash(page),
            blocks_hash=self.blocks_hash(page),
            properties_json=self._dump(page.properties),
            last_sync_time=later_of(previous.last_sync_time, now) if previous else now,
            last_edited_time_seen=page.last_edited_time or None,
        )

    async def commit_hashes(
        self,
        page: RemotePage,
        store: SyncRecordStore,
        session: AsyncSession | None = None,
        database_id: str | None = None,
    ) -> SyncRecord:
        """Upsert the page's sync record. Call only after the local write succeeded."""
        record = self.build_record(page)
        return await store.upsert_sync_record(record, session=session, database_id=database_id)
