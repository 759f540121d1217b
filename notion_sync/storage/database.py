"""
Storage for Sync State, Local Pages and the Task Queue

Async SQLAlchemy storage with idempotent upserts. Works on SQLite
(aiosqlite) and PostgreSQL (asyncpg); upserts use the dialect's
ON CONFLICT support.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Protocol

from rich.console import Console
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from notion_sync.cache import CacheEntry, CacheTier
from notion_sync.config import settings
from notion_sync.models import RemotePage, SyncRecord
from notion_sync.queue.task import Task, TaskOptions, TaskStatus, TaskStore
from notion_sync.storage.models import (
    Base,
    CacheEntryRow,
    DatabaseSyncState,
    LocalPage,
    QueueTaskRow,
    SyncLockRow,
    SyncRecordRow,
)
from notion_sync.timestamps import as_utc, later_of, utc_now

console = Console()


class SyncRecordStore(Protocol):
    """Persistence of per-page sync records."""

    async def get_sync_record(self, remote_id: str) -> SyncRecord | None: ...

    async def get_sync_records(self, remote_ids: list[str]) -> dict[str, SyncRecord]: ...

    async def upsert_sync_record(
        self,
        record: SyncRecord,
        session: AsyncSession | None = None,
        database_id: str | None = None,
    ) -> SyncRecord: ...


def _record_from_row(row: SyncRecordRow) -> SyncRecord:
    return SyncRecord(
        remote_id=row.remote_id,
        content_hash=row.content_hash,
        title_hash=row.title_hash,
        properties_hash=row.properties_hash,
        blocks_hash=row.blocks_hash,
        properties_json=row.properties_json,
        last_sync_time=row.last_sync_time,
        last_edited_time_seen=row.last_edited_time_seen,
    )


def _task_from_row(row: QueueTaskRow) -> Task:
    return Task(
        id=row.id,
        operation=row.operation,
        batches=list(row.batches or []),
        options=TaskOptions.from_dict(row.options),
        status=TaskStatus(row.status),
        current_batch=row.current_batch,
        total_batches=row.total_batches,
        retry_count=row.retry_count,
        progress=row.progress,
        results=list(row.results or []),
        errors=list(row.errors or []),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        next_attempt_at=as_utc(row.next_attempt_at) if row.next_attempt_at else None,
    )


class DatabaseStorage:
    """
    Async storage for the sync engine.

    Features:
    - Async SQLAlchemy with aiosqlite or asyncpg
    - Idempotent upserts keyed by remote id / task id
    - Batch lookups (one query per batch of ids)
    - Optional caller-owned session so a local write and its hash commit
      land in the same transaction
    """

    def __init__(self, database_url: str | None = None) -> None:
        """
        Initialize database storage.

        Args:
            database_url: Database connection URL. Defaults to settings.
        """
        self.database_url = database_url or settings.database_url
        engine_kwargs: dict[str, Any] = {"echo": False}
        if not self.database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True)

        self._engine = create_async_engine(self.database_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def _insert(self, model: type[Base]) -> Any:
        if self.dialect == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    async def initialize(self) -> None:
        """Create missing tables. The engine owns its schema."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        console.print(f"[dim]Storage ready ({self.dialect})[/dim]")

    async def close(self) -> None:
        """Close the database connection."""
        await self._engine.dispose()

    async def __aenter__(self) -> "DatabaseStorage":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def get_session(self) -> AsyncSession:
        """Get a new database session."""
        return self._session_factory()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session with an open transaction, committed on success."""
        async with self.get_session() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        """Use the caller's session, or open and commit a new one."""
        if session is not None:
            yield session
            return
        async with self.transaction() as own:
            yield own

    # ========== Sync Records ==========

    async def get_sync_record(self, remote_id: str) -> SyncRecord | None:
        """Get the sync record for a remote page."""
        async with self.get_session() as session:
            row = await session.get(SyncRecordRow, remote_id)
            return _record_from_row(row) if row else None

    async def get_sync_records(self, remote_ids: list[str]) -> dict[str, SyncRecord]:
        """Sync records for many pages in one query; missing ids are absent."""
        if not remote_ids:
            return {}
        async with self.get_session() as session:
            stmt = select(SyncRecordRow).where(SyncRecordRow.remote_id.in_(remote_ids))
            result = await session.execute(stmt)
            return {row.remote_id: _record_from_row(row) for row in result.scalars().all()}

    async def upsert_sync_record(
        self,
        record: SyncRecord,
        session: AsyncSession | None = None,
        database_id: str | None = None,
    ) -> SyncRecord:
        """
        Insert or update a sync record.

        `last_sync_time` never moves backwards: the stored value is the later
        of the existing and the new one.
        """
        async with self._scope(session) as s:
            existing = await s.get(SyncRecordRow, record.remote_id)
            last_sync_time = record.last_sync_time
            if existing is not None:
                last_sync_time = later_of(existing.last_sync_time, record.last_sync_time)

            values = {
                "remote_id": record.remote_id,
                "database_id": database_id,
                "content_hash": record.content_hash,
                "title_hash": record.title_hash,
                "properties_hash": record.properties_hash,
                "blocks_hash": record.blocks_hash,
                "properties_json": record.properties_json,
                "last_sync_time": last_sync_time,
                "last_edited_time_seen": record.last_edited_time_seen,
                "updated_at": utc_now(),
            }
            update_values = {k: v for k, v in values.items() if k != "remote_id"}
            if database_id is None:
                update_values.pop("database_id")

            stmt = self._insert(SyncRecordRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["remote_id"],
                set_=update_values,
            )
            await s.execute(stmt)

        record.last_sync_time = last_sync_time
        return record

    # ========== Local Pages ==========

    async def get_local_mappings(self, remote_ids: list[str]) -> dict[str, int]:
        """Map remote page ids to local page ids in one query; unknown ids are absent."""
        if not remote_ids:
            return {}
        async with self.get_session() as session:
            stmt = select(LocalPage.remote_id, LocalPage.id).where(
                LocalPage.remote_id.in_(remote_ids)
            )
            result = await session.execute(stmt)
            return {remote_id: local_id for remote_id, local_id in result.all()}

    async def get_local_page(self, remote_id: str) -> LocalPage | None:
        async with self.get_session() as session:
            stmt = select(LocalPage).where(LocalPage.remote_id == remote_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def upsert_local_page(
        self,
        page: RemotePage,
        database_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> int:
        """Insert or update the local copy of a page. Returns the local id."""
        async with self._scope(session) as s:
            now = utc_now()
            stmt = self._insert(LocalPage).values(
                remote_id=page.id,
                database_id=database_id,
                title=page.title,
                url=page.url,
                archived=page.archived,
                properties=page.properties,
                blocks=[block.to_hashable() for block in page.blocks],
                last_edited_time=page.last_edited_time or None,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["remote_id"],
                set_={
                    "title": stmt.excluded.title,
                    "url": stmt.excluded.url,
                    "archived": stmt.excluded.archived,
                    "properties": stmt.excluded.properties,
                    "blocks": stmt.excluded.blocks,
                    "last_edited_time": stmt.excluded.last_edited_time,
                    "updated_at": now,
                },
            ).returning(LocalPage.id)

            result = await s.execute(stmt)
            return result.scalar_one()

    # ========== Database Sync State ==========

    async def get_database_state(self, database_id: str) -> DatabaseSyncState | None:
        async with self.get_session() as session:
            return await session.get(DatabaseSyncState, database_id)

    async def update_database_state(
        self,
        database_id: str,
        status: str,
        page_count: int = 0,
        sync_time: str | None = None,
        full_sync: bool = False,
    ) -> None:
        """
        Record the outcome of a sync run.

        The watermark only moves when `sync_time` is given, and never
        backwards.
        """
        async with self.transaction() as session:
            state = await session.get(DatabaseSyncState, database_id)
            if state is None:
                state = DatabaseSyncState(database_id=database_id, last_page_count=0)
                session.add(state)

            state.last_status = status
            state.last_page_count = page_count
            if sync_time:
                state.last_sync_time = later_of(state.last_sync_time, sync_time)
                if full_sync:
                    state.last_full_sync_time = later_of(state.last_full_sync_time, sync_time)

    # ========== Queue Tasks ==========

    async def save_task(self, task: Task) -> None:
        """Insert or update a task."""
        values = {
            "id": task.id,
            "operation": task.operation,
            "status": task.status.value,
            "priority": task.options.priority,
            "batches": task.batches,
            "current_batch": task.current_batch,
            "total_batches": task.total_batches,
            "retry_count": task.retry_count,
            "progress": task.progress,
            "results": task.results,
            "errors": task.errors,
            "options": task.options.to_dict(),
            "created_at": task.created_at,
            "updated_at": task.updated_at,
            "next_attempt_at": task.next_attempt_at,
        }
        async with self.transaction() as session:
            stmt = self._insert(QueueTaskRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={k: v for k, v in values.items() if k not in ("id", "created_at")},
            )
            await session.execute(stmt)

    async def get_task(self, task_id: str) -> Task | None:
        async with self.get_session() as session:
            row = await session.get(QueueTaskRow, task_id)
            return _task_from_row(row) if row else None

    async def delete_task(self, task_id: str) -> bool:
        async with self.transaction() as session:
            result = await session.execute(
                delete(QueueTaskRow).where(QueueTaskRow.id == task_id)
            )
            return result.rowcount > 0

    async def get_eligible_tasks(self, now: datetime, limit: int) -> list[Task]:
        """
        Tasks ready to run a batch, by priority then age.

        PENDING tasks are always ready; RETRYING ones once their retry
        delay has passed.
        """
        async with self.get_session() as session:
            stmt = (
                select(QueueTaskRow)
                .where(
                    or_(
                        QueueTaskRow.status == TaskStatus.PENDING.value,
                        and_(
                            QueueTaskRow.status == TaskStatus.RETRYING.value,
                            or_(
                                QueueTaskRow.next_attempt_at.is_(None),
                                QueueTaskRow.next_attempt_at <= now,
                            ),
                        ),
                    )
                )
                .order_by(QueueTaskRow.priority, QueueTaskRow.created_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_task_from_row(row) for row in result.scalars().all()]

    async def count_tasks_by_status(self) -> dict[str, int]:
        async with self.get_session() as session:
            stmt = select(QueueTaskRow.status, func.count()).group_by(QueueTaskRow.status)
            result = await session.execute(stmt)
            return {status: count for status, count in result.all()}

    async def delete_finished_tasks(self, older_than: datetime) -> int:
        """Delete COMPLETED / FAILED tasks last updated before the cutoff."""
        async with self.transaction() as session:
            result = await session.execute(
                delete(QueueTaskRow).where(
                    QueueTaskRow.status.in_(
                        [TaskStatus.COMPLETED.value, TaskStatus.FAILED.value]
                    ),
                    QueueTaskRow.updated_at < older_than,
                )
            )
            return result.rowcount or 0

    async def next_retry_time(self) -> datetime | None:
        """Earliest scheduled retry among RETRYING tasks."""
        async with self.get_session() as session:
            stmt = select(func.min(QueueTaskRow.next_attempt_at)).where(
                QueueTaskRow.status == TaskStatus.RETRYING.value
            )
            result = await session.execute(stmt)
            value = result.scalar_one_or_none()
            return as_utc(value) if value else None

    # ========== Persistent Cache Tier ==========

    async def get_cache_entry(self, key: str) -> CacheEntry | None:
        async with self.get_session() as session:
            row = await session.get(CacheEntryRow, key)
            if row is None:
                return None
            return CacheEntry(
                key=row.key,
                value=row.value,
                tier=CacheTier(row.tier),
                ttl=row.ttl,
                created_at=row.created_at,
            )

    async def set_cache_entry(self, entry: CacheEntry) -> None:
        values = {
            "key": entry.key,
            "value": entry.value,
            "tier": entry.tier.value,
            "ttl": entry.ttl,
            "created_at": entry.created_at,
            "expires_at": entry.created_at + entry.ttl,
        }
        async with self.transaction() as session:
            stmt = self._insert(CacheEntryRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["key"],
                set_={k: v for k, v in values.items() if k != "key"},
            )
            await session.execute(stmt)

    async def delete_cache_entry(self, key: str) -> None:
        async with self.transaction() as session:
            await session.execute(delete(CacheEntryRow).where(CacheEntryRow.key == key))

    async def purge_expired_cache(self, now: float) -> int:
        async with self.transaction() as session:
            result = await session.execute(
                delete(CacheEntryRow).where(CacheEntryRow.expires_at <= now)
            )
            return result.rowcount or 0

    # ========== Locks ==========

    async def acquire_lock(self, name: str, owner: str, ttl: float, now: float) -> bool:
        """
        Take the lock `name` for `owner` unless someone else holds it.

        A held lock whose expiry has passed is taken over. Returns whether
        `owner` holds the lock afterwards.
        """
        values = {"name": name, "owner": owner, "acquired_at": now, "expires_at": now + ttl}
        async with self.transaction() as session:
            stmt = self._insert(SyncLockRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["name"],
                set_={k: v for k, v in values.items() if k != "name"},
                where=SyncLockRow.expires_at <= now,
            )
            await session.execute(stmt)
            holder = await session.scalar(select(SyncLockRow.owner).where(SyncLockRow.name == name))
        return holder == owner

    async def release_lock(self, name: str, owner: str) -> bool:
        async with self.transaction() as session:
            result = await session.execute(
                delete(SyncLockRow).where(SyncLockRow.name == name, SyncLockRow.owner == owner)
            )
            return bool(result.rowcount)

    # ========== Statistics ==========

    async def get_stats(self) -> dict[str, Any]:
        """Get storage statistics."""
        async with self.get_session() as session:
            stats: dict[str, Any] = {}

            tables = [
                ("sync_records", SyncRecordRow),
                ("local_pages", LocalPage),
                ("queue_tasks", QueueTaskRow),
                ("cache_entries", CacheEntryRow),
                ("databases", DatabaseSyncState),
            ]

            for name, model in tables:
                stmt = select(func.count()).select_from(model)
                result = await session.execute(stmt)
                stats[name] = result.scalar_one()

            return stats
