"""
Database Models for the Sync Engine

SQLAlchemy models for sync records, the local page store, queue tasks, the
persistent cache tier, per-database sync state and run locks. JSON columns use JSONB
on PostgreSQL and plain JSON elsewhere.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all sync engine models."""

    pass


class SyncRecordRow(Base):
    """Hashes and sync time of the last local write for one remote page."""

    __tablename__ = "sync_records"

    remote_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    database_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    properties_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    blocks_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    properties_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_time: Mapped[str | None] = mapped_column(String(40), nullable=True)
    last_edited_time_seen: Mapped[str | None] = mapped_column(String(40), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LocalPage(Base):
    """Local copy of a remote page (stand-in for a rendering pipeline)."""

    __tablename__ = "local_pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    remote_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    database_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str] = mapped_column(Text, default="")
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    archived: Mapped[bool] = mapped_column(default=False)
    properties: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    blocks: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    last_edited_time: Mapped[str | None] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class QueueTaskRow(Base):
    """A persisted queue task."""

    __tablename__ = "queue_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    operation: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), index=True)
    priority: Mapped[int] = mapped_column(Integer, default=10)
    batches: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    current_batch: Mapped[int] = mapped_column(Integer, default=0)
    total_batches: Mapped[int] = mapped_column(Integer, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    results: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    errors: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    options: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class CacheEntryRow(Base):
    """Persistent cache tier entry."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONType)
    tier: Mapped[str] = mapped_column(String(20), default="persistent")
    ttl: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[float] = mapped_column(Float, index=True)


class SyncLockRow(Base):
    """Expiring lock held by one sync or queue run."""

    __tablename__ = "sync_locks"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64))
    acquired_at: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[float] = mapped_column(Float)


class DatabaseSyncState(Base):
    """Watermark and outcome of the last sync of one remote database."""

    __tablename__ = "database_sync_state"

    database_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_sync_time: Mapped[str | None] = mapped_column(String(40), nullable=True)
    last_full_sync_time: Mapped[str | None] = mapped_column(String(40), nullable=True)
    last_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_page_count: Mapped[int] = mapped_column(Integer, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
