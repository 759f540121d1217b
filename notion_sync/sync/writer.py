"""
Local page writers.

A writer persists one remote page locally and returns its local id. Hashes
are committed only after the write succeeded; with the database writer
both land in the same transaction.
"""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from notion_sync.models import RemotePage
from notion_sync.storage.database import DatabaseStorage, SyncRecordStore
from notion_sync.sync.detector import ChangeDetector


class PageWriter(Protocol):
    """Persists remote pages locally."""

    async def write(
        self,
        page: RemotePage,
        database_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> int: ...


class DatabasePageWriter:
    """Writes pages to the `local_pages` table."""

    def __init__(self, storage: DatabaseStorage) -> None:
        self.storage = storage

    async def write(
        self,
        page: RemotePage,
        database_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> int:
        return await self.storage.upsert_local_page(page, database_id, session=session)


async def write_and_record(
    writer: PageWriter,
    detector: ChangeDetector,
    store: SyncRecordStore,
    page: RemotePage,
    database_id: str | None = None,
) -> int:
    """
    Write a page, then commit its hashes.

    When the writer and the record store share a database, both happen in
    one transaction. Otherwise the write goes first, so a failed write never
    leaves a record claiming the page is current.
    """
    if isinstance(writer, DatabasePageWriter) and writer.storage is store:
        async with writer.storage.transaction() as session:
            local_id = await writer.write(page, database_id, session=session)
            await detector.commit_hashes(page, store, session=session, database_id=database_id)
        return local_id

    local_id = await writer.write(page, database_id)
    await detector.commit_hashes(page, store, database_id=database_id)
    return local_id
