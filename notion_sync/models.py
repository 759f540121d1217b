"""
Sync Engine Data Model

Remote entities (pages, blocks) parsed from API JSON, the per-page sync
record, and the value objects passed between client, detector, queue and
orchestrator.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ERROR_CONTEXT_LIMIT = 1024
TRUNCATION_MARKER = "...[truncated]"


class ErrorKind(str, Enum):
    """Classified failure kinds."""

    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    FILTER_ERROR = "FILTER_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    DETECTION_ERROR = "DETECTION_ERROR"
    TASK_FAILURE = "TASK_FAILURE"


class FallbackStrategy(str, Enum):
    """Degraded ways to obtain query results after a request failed."""

    FULL_SYNC = "FULL_SYNC"
    SIMPLIFIED_FILTER = "SIMPLIFIED_FILTER"
    PAGINATED_SYNC = "PAGINATED_SYNC"
    THROTTLED_SYNC = "THROTTLED_SYNC"
    RETRY_WITH_BACKOFF = "RETRY_WITH_BACKOFF"
    CONSERVATIVE_SYNC = "CONSERVATIVE_SYNC"
    ABORT_SYNC = "ABORT_SYNC"


class Outcome(str, Enum):
    """Result tag of an API call."""

    SUCCESS = "SUCCESS"
    FALLBACK_SUCCESS = "FALLBACK_SUCCESS"
    FAILURE = "FAILURE"


# =============================================================================
# Remote entities
# =============================================================================


class Block(BaseModel):
    """A content block of a remote page."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    has_children: bool = False
    children: list["Block"] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any], children: list["Block"] | None = None) -> "Block":
        """Build a block from the API's JSON, keeping its type-specific object."""
        block_type = data.get("type") or "unsupported"
        payload = data.get(block_type)
        return cls(
            id=str(data.get("id", "")),
            type=block_type,
            payload=payload if isinstance(payload, dict) else {},
            has_children=bool(data.get("has_children", False)),
            children=children or [],
        )

    def to_hashable(self) -> dict[str, Any]:
        """Plain structure used for content hashing."""
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "children": [child.to_hashable() for child in self.children],
        }


class RemotePage(BaseModel):
    """A page as returned by the remote API. Never mutated locally."""

    model_config = ConfigDict(frozen=True)

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    blocks: list[Block] = Field(default_factory=list)
    last_edited_time: str = ""
    created_time: str = ""
    url: str | None = None
    archived: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any], blocks: list[Block] | None = None) -> "RemotePage":
        """Parse a page object from the API."""
        properties = data.get("properties")
        return cls(
            id=str(data.get("id", "")),
            properties=properties if isinstance(properties, dict) else {},
            blocks=blocks or [],
            last_edited_time=data.get("last_edited_time") or "",
            created_time=data.get("created_time") or "",
            url=data.get("url"),
            archived=bool(data.get("archived", False)),
        )

    def with_blocks(self, blocks: list[Block]) -> "RemotePage":
        """Return a copy of this page carrying the given block tree."""
        return self.model_copy(update={"blocks": blocks})

    @property
    def title(self) -> str:
        """Concatenated plain text of the title-typed property."""
        for prop in self.properties.values():
            if isinstance(prop, dict) and prop.get("type") == "title":
                parts = prop.get("title") or []
                return "".join(
                    part.get("plain_text", "") for part in parts if isinstance(part, dict)
                )
        return ""


# =============================================================================
# Sync state
# =============================================================================


@dataclass
class SyncRecord:
    """What the engine last wrote for one remote page."""

    remote_id: str
    content_hash: str | None = None
    title_hash: str | None = None
    properties_hash: str | None = None
    blocks_hash: str | None = None
    properties_json: str | None = None
    last_sync_time: str | None = None
    last_edited_time_seen: str | None = None

    @property
    def has_fine_grained_hashes(self) -> bool:
        return bool(self.title_hash and self.properties_hash and self.blocks_hash)


@dataclass
class ChangeSet:
    """Facets of a page that differ from its sync record."""

    is_new: bool = False
    title: dict[str, Any] | None = None
    properties: dict[str, Any] | None = None
    blocks: dict[str, Any] | None = None
    last_edited_time: dict[str, Any] | None = None

    @property
    def has_changes(self) -> bool:
        return self.is_new or any(
            facet is not None
            for facet in (self.title, self.properties, self.blocks, self.last_edited_time)
        )

    @property
    def changed_facets(self) -> list[str]:
        names = ("title", "properties", "blocks", "last_edited_time")
        return [name for name in names if getattr(self, name) is not None]


@dataclass
class SyncPlan:
    """Classification of candidate pages for one database."""

    database_id: str
    to_create: list[RemotePage] = field(default_factory=list)
    to_update: list[RemotePage] = field(default_factory=list)
    to_skip: list[RemotePage] = field(default_factory=list)
    changes: dict[str, ChangeSet] = field(default_factory=dict)
    fallback_strategy: FallbackStrategy | None = None
    partial: bool = False  # The candidate listing stopped early
    errors: list[str] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return len(self.to_create) + len(self.to_update)

    @property
    def total(self) -> int:
        return self.changed_count + len(self.to_skip)


@dataclass
class SyncSummary:
    """Result of a sync run."""

    database_id: str
    mode: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    queued_pages: int = 0
    aborted: bool = False
    fallback_strategy: FallbackStrategy | None = None
    duration: float = 0.0

    @property
    def queued(self) -> bool:
        return bool(self.task_ids)


# =============================================================================
# API results
# =============================================================================


def sanitize_error_context(
    context: dict[str, Any] | None, limit: int = ERROR_CONTEXT_LIMIT
) -> dict[str, Any]:
    """Truncate every value of an error context to at most `limit` characters."""
    if not context:
        return {}

    sanitized: dict[str, Any] = {}
    for key, value in context.items():
        if isinstance(value, (int, float, bool)) or value is None:
            sanitized[key] = value
            continue
        if isinstance(value, dict):
            sanitized[key] = sanitize_error_context(value, limit)
            continue
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        if len(text) > limit:
            sanitized[key] = text[:limit] + TRUNCATION_MARKER
        else:
            sanitized[key] = value
    return sanitized


@dataclass
class ApiResult:
    """Tagged outcome of an API call. Never persisted."""

    outcome: Outcome
    data: Any = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    fallback_strategy: FallbackStrategy | None = None
    retry_count: int = 0
    duration: float = 0.0
    status_code: int | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(
        cls, data: Any, retry_count: int = 0, duration: float = 0.0
    ) -> "ApiResult":
        return cls(
            outcome=Outcome.SUCCESS, data=data, retry_count=retry_count, duration=duration
        )

    @classmethod
    def fallback_success(
        cls,
        data: Any,
        strategy: FallbackStrategy,
        error_kind: ErrorKind | None = None,
        retry_count: int = 0,
        duration: float = 0.0,
    ) -> "ApiResult":
        return cls(
            outcome=Outcome.FALLBACK_SUCCESS,
            data=data,
            error_kind=error_kind,
            fallback_strategy=strategy,
            retry_count=retry_count,
            duration=duration,
        )

    @classmethod
    def failure(
        cls,
        error_kind: ErrorKind,
        message: str,
        status_code: int | None = None,
        retry_count: int = 0,
        duration: float = 0.0,
        fallback_strategy: FallbackStrategy | None = None,
        context: dict[str, Any] | None = None,
    ) -> "ApiResult":
        return cls(
            outcome=Outcome.FAILURE,
            error_kind=error_kind,
            error_message=message,
            status_code=status_code,
            retry_count=retry_count,
            duration=duration,
            fallback_strategy=fallback_strategy,
            context=sanitize_error_context(context),
        )

    @property
    def ok(self) -> bool:
        return self.outcome != Outcome.FAILURE

    @property
    def used_fallback(self) -> bool:
        return self.outcome == Outcome.FALLBACK_SUCCESS

    @property
    def results(self) -> list[dict[str, Any]]:
        """The `results` list of a list/query response, or the data itself if it is a list."""
        if isinstance(self.data, list):
            return self.data
        if isinstance(self.data, dict):
            return self.data.get("results") or []
        return []
