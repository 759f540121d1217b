"""
Two-tier response cache.

- session tier: in-memory, lives as long as one SyncContext
- persistent tier: stored in the database, survives invocations

Static endpoints (the bot user, database schemas) go to the persistent tier,
dynamic ones (queries, pages, blocks) to the session tier. Entries expire by
TTL only.
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError

from notion_sync.config import settings
from notion_sync.metrics import metrics

logger = logging.getLogger(__name__)

MANUAL_MODE_MAX_TTL = 60


class CacheKind(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class CacheTier(str, Enum):
    SESSION = "session"
    PERSISTENT = "persistent"


@dataclass(frozen=True)
class CachePolicy:
    """Cacheability of one endpoint."""

    kind: CacheKind
    ttl: int

    @property
    def tier(self) -> CacheTier:
        return CacheTier.PERSISTENT if self.kind == CacheKind.STATIC else CacheTier.SESSION

    @classmethod
    def for_endpoint(cls, endpoint: str) -> "CachePolicy | None":
        """Policy for an API path, or None when it must not be cached."""
        path = endpoint.strip("/")
        for pattern, policy in ENDPOINT_POLICIES:
            if pattern.search(path):
                return policy
        return None

    def effective_ttl(self, mode: str) -> int | None:
        """
        TTL after applying the sync mode, or None if the mode forbids caching.

        incremental syncs never reuse dynamic data, manual syncs reuse it for
        at most a minute, full syncs use the endpoint TTL.
        """
        if self.kind == CacheKind.STATIC:
            return self.ttl
        if mode == "incremental":
            return None
        if mode == "manual":
            return min(self.ttl, MANUAL_MODE_MAX_TTL)
        return self.ttl


# Order matters: query endpoints live under databases/
ENDPOINT_POLICIES: list[tuple[re.Pattern[str], CachePolicy]] = [
    (re.compile(r"^databases/[^/]+/query"), CachePolicy(CacheKind.DYNAMIC, 60)),
    (re.compile(r"^users/me$"), CachePolicy(CacheKind.STATIC, 3600)),
    (re.compile(r"^databases/[^/]+$"), CachePolicy(CacheKind.STATIC, 1800)),
    (re.compile(r"^pages/"), CachePolicy(CacheKind.DYNAMIC, 300)),
    (re.compile(r"^blocks/"), CachePolicy(CacheKind.DYNAMIC, 180)),
]


@dataclass
class CacheEntry:
    key: str
    value: Any
    tier: CacheTier
    ttl: int
    created_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.created_at + self.ttl


class CacheStore(Protocol):
    """Backend of the persistent tier."""

    async def get_cache_entry(self, key: str) -> CacheEntry | None: ...

    async def set_cache_entry(self, entry: CacheEntry) -> None: ...

    async def delete_cache_entry(self, key: str) -> None: ...

    async def purge_expired_cache(self, now: float) -> int: ...


def make_cache_key(mode: str, kind: CacheKind, endpoint: str, params: Any = None) -> str:
    """Key made of the sync mode, the cache kind and a digest of the request."""
    raw = endpoint.strip("/") + "|" + json.dumps(params or {}, sort_keys=True, default=str)
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{mode}:{kind.value}:{digest}"


class TieredCache:
    """Session + persistent cache with mode-aware admission."""

    def __init__(
        self,
        store: CacheStore | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        tier_ttls: dict[CacheTier, int] | None = None,
    ) -> None:
        self.store = store
        self.enabled = enabled
        self.clock = clock
        self.tier_ttls = tier_ttls or {
            CacheTier.SESSION: settings.cache_ttl_session,
            CacheTier.PERSISTENT: settings.cache_ttl_persistent,
        }
        self._session: dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    @property
    def session_size(self) -> int:
        return len(self._session)

    def _tier_for(self, policy: CachePolicy) -> CacheTier:
        if policy.tier == CacheTier.PERSISTENT and self.store is not None:
            return CacheTier.PERSISTENT
        return CacheTier.SESSION

    def ttl_for(self, policy: CachePolicy, mode: str) -> int | None:
        """Endpoint TTL after the sync mode, capped by its tier's TTL."""
        ttl = policy.effective_ttl(mode)
        if ttl is None:
            return None
        return min(ttl, self.tier_ttls.get(self._tier_for(policy), ttl))

    async def _read(self, tier: CacheTier, key: str) -> CacheEntry | None:
        if tier == CacheTier.SESSION or self.store is None:
            return self._session.get(key)
        try:
            return await self.store.get_cache_entry(key)
        except SQLAlchemyError as e:
            logger.warning("Persistent cache unavailable, treating as a miss: %s", e)
            return None

    async def _drop(self, tier: CacheTier, key: str) -> None:
        if tier == CacheTier.SESSION or self.store is None:
            self._session.pop(key, None)
            return
        try:
            await self.store.delete_cache_entry(key)
        except SQLAlchemyError as e:
            logger.warning("Could not drop expired cache entry: %s", e)

    async def _write(self, entry: CacheEntry) -> bool:
        if entry.tier == CacheTier.SESSION or self.store is None:
            self._session[entry.key] = entry
            return True
        try:
            await self.store.set_cache_entry(entry)
        except SQLAlchemyError as e:
            logger.warning("Persistent cache unavailable, response not cached: %s", e)
            return False
        return True

    async def get(
        self,
        endpoint: str,
        params: Any,
        policy: CachePolicy | None,
        mode: str,
    ) -> Any | None:
        """Cached value for the request, or None on a miss."""
        if not self.enabled or policy is None or policy.effective_ttl(mode) is None:
            return None

        key = make_cache_key(mode, policy.kind, endpoint, params)
        tier = self._tier_for(policy)
        entry = await self._read(tier, key)

        if entry is not None and entry.is_expired(self.clock()):
            await self._drop(tier, key)
            entry = None

        metrics.record_cache_lookup(tier.value, entry is not None)
        if entry is None:
            self.misses += 1
            return None

        self.hits += 1
        logger.debug("Cache hit for %s (%s)", endpoint, tier.value)
        return entry.value

    async def set(
        self,
        endpoint: str,
        params: Any,
        policy: CachePolicy | None,
        mode: str,
        value: Any,
    ) -> bool:
        """Store a response if the policy and mode allow it. Returns whether it was stored."""
        if not self.enabled or policy is None:
            return False
        ttl = self.ttl_for(policy, mode)
        if ttl is None or ttl <= 0:
            return False

        return await self._write(
            CacheEntry(
                key=make_cache_key(mode, policy.kind, endpoint, params),
                value=value,
                tier=self._tier_for(policy),
                ttl=ttl,
                created_at=self.clock(),
            )
        )

    def clear_session(self) -> None:
        self._session.clear()

    async def purge_expired(self) -> int:
        """Drop expired entries from both tiers; returns how many were removed."""
        now = self.clock()
        expired = [key for key, entry in self._session.items() if entry.is_expired(now)]
        for key in expired:
            del self._session[key]
        removed = len(expired)
        if self.store is not None:
            removed += await self.store.purge_expired_cache(now)
        return removed

    def get_stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "session_entries": len(self._session),
        }
