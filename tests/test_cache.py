"""
Tests for the tiered cache.
"""

import pytest
from sqlalchemy.exc import OperationalError

from notion_sync.cache import (
    CacheEntry,
    CacheKind,
    CachePolicy,
    CacheTier,
    TieredCache,
    make_cache_key,
)
from notion_sync.storage.database import DatabaseStorage


class BrokenStore:
    """Persistent tier whose database is unreachable."""

    def _fail(self) -> None:
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    async def get_cache_entry(self, key: str) -> None:
        self._fail()

    async def set_cache_entry(self, entry: CacheEntry) -> None:
        self._fail()

    async def delete_cache_entry(self, key: str) -> None:
        self._fail()

    async def purge_expired_cache(self, now: float) -> int:
        return 0


class FakeClock:
    """Settable clock."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCachePolicy:
    """Tests for endpoint policies and mode gating."""

    def test_static_endpoints(self) -> None:
        """users/me and database metadata are static."""
        me = CachePolicy.for_endpoint("users/me")
        database = CachePolicy.for_endpoint("databases/abc")

        assert me == CachePolicy(CacheKind.STATIC, 3600)
        assert database == CachePolicy(CacheKind.STATIC, 1800)
        assert database.tier == CacheTier.PERSISTENT

    def test_dynamic_endpoints(self) -> None:
        """Queries, pages and blocks are dynamic session entries."""
        assert CachePolicy.for_endpoint("databases/abc/query") == CachePolicy(CacheKind.DYNAMIC, 60)
        assert CachePolicy.for_endpoint("/pages/p1") == CachePolicy(CacheKind.DYNAMIC, 300)
        assert CachePolicy.for_endpoint("blocks/b1/children").ttl == 180
        assert CachePolicy.for_endpoint("pages/p1").tier == CacheTier.SESSION

    def test_unknown_endpoint(self) -> None:
        """Unlisted endpoints are never cached."""
        assert CachePolicy.for_endpoint("search") is None

    def test_mode_gating(self) -> None:
        """Incremental mode disables dynamic caching, manual caps it at 60 seconds."""
        pages = CachePolicy(CacheKind.DYNAMIC, 300)
        static = CachePolicy(CacheKind.STATIC, 3600)

        assert pages.effective_ttl("incremental") is None
        assert pages.effective_ttl("manual") == 60
        assert pages.effective_ttl("full") == 300
        assert static.effective_ttl("incremental") == 3600

    def test_key_depends_on_mode_and_params(self) -> None:
        """Keys differ per mode and per request parameters."""
        key = make_cache_key("full", CacheKind.DYNAMIC, "pages/p1", {"a": 1})

        assert key.startswith("full:dynamic:")
        assert key != make_cache_key("manual", CacheKind.DYNAMIC, "pages/p1", {"a": 1})
        assert key != make_cache_key("full", CacheKind.DYNAMIC, "pages/p1", {"a": 2})


class TestTieredCache:
    """Tests for TieredCache."""

    @pytest.mark.asyncio
    async def test_session_roundtrip(self) -> None:
        """A stored dynamic response is served from the session tier."""
        cache = TieredCache()
        policy = CachePolicy.for_endpoint("pages/p1")

        stored = await cache.set("pages/p1", None, policy, "full", {"id": "p1"})

        assert stored
        assert await cache.get("pages/p1", None, policy, "full") == {"id": "p1"}
        assert cache.hits == 1

    @pytest.mark.asyncio
    async def test_incremental_mode_not_cached(self) -> None:
        """Dynamic data is neither stored nor served in incremental mode."""
        cache = TieredCache()
        policy = CachePolicy.for_endpoint("pages/p1")

        assert not await cache.set("pages/p1", None, policy, "incremental", {"id": "p1"})
        assert await cache.get("pages/p1", None, policy, "incremental") is None

    @pytest.mark.asyncio
    async def test_expiry(self) -> None:
        """Entries expire after their TTL."""
        clock = FakeClock()
        cache = TieredCache(clock=clock)
        policy = CachePolicy.for_endpoint("blocks/b1/children")

        await cache.set("blocks/b1/children", None, policy, "full", [1])
        clock.now += 179
        assert await cache.get("blocks/b1/children", None, policy, "full") == [1]

        clock.now += 1
        assert await cache.get("blocks/b1/children", None, policy, "full") is None
        assert cache.session_size == 0

    @pytest.mark.asyncio
    async def test_clear_session(self) -> None:
        """Clearing the session tier drops everything in it."""
        cache = TieredCache()
        policy = CachePolicy.for_endpoint("pages/p1")
        await cache.set("pages/p1", None, policy, "full", {"id": "p1"})

        cache.clear_session()

        assert await cache.get("pages/p1", None, policy, "full") is None

    @pytest.mark.asyncio
    async def test_disabled(self) -> None:
        """A disabled cache never stores anything."""
        cache = TieredCache(enabled=False)
        policy = CachePolicy.for_endpoint("users/me")

        assert not await cache.set("users/me", None, policy, "full", {"id": "bot"})
        assert await cache.get("users/me", None, policy, "full") is None

    @pytest.mark.asyncio
    async def test_persistent_tier_survives_instances(self, storage: DatabaseStorage) -> None:
        """Static entries go to the store and are visible to a new cache."""
        policy = CachePolicy.for_endpoint("users/me")
        first = TieredCache(store=storage)
        await first.set("users/me", None, policy, "incremental", {"id": "bot"})

        second = TieredCache(store=storage)

        assert second.session_size == 0
        assert await second.get("users/me", None, policy, "incremental") == {"id": "bot"}

    @pytest.mark.asyncio
    async def test_purge_expired(self, storage: DatabaseStorage) -> None:
        """Expired entries are purged from both tiers."""
        clock = FakeClock()
        cache = TieredCache(store=storage, clock=clock)
        await cache.set("users/me", None, CachePolicy.for_endpoint("users/me"), "full", {})
        await cache.set("pages/p1", None, CachePolicy.for_endpoint("pages/p1"), "full", {})

        clock.now += 4000

        assert await cache.purge_expired() == 2

    @pytest.mark.asyncio
    async def test_ttl_capped_by_tier(self) -> None:
        """An endpoint TTL longer than its tier's TTL is cut to the tier's."""
        clock = FakeClock()
        cache = TieredCache(clock=clock, tier_ttls={CacheTier.SESSION: 100})
        policy = CachePolicy.for_endpoint("pages/p1")

        assert cache.ttl_for(policy, "full") == 100
        assert cache.ttl_for(CachePolicy.for_endpoint("databases/abc/query"), "full") == 60

        await cache.set("pages/p1", None, policy, "full", {"id": "p1"})
        clock.now += 100
        assert await cache.get("pages/p1", None, policy, "full") is None

    @pytest.mark.asyncio
    async def test_persistent_ttl_from_settings(self, storage: DatabaseStorage) -> None:
        """Without explicit tier TTLs the persistent cap comes from settings."""
        from notion_sync.config import settings

        cache = TieredCache(store=storage)

        assert cache.tier_ttls[CacheTier.PERSISTENT] == settings.cache_ttl_persistent
        assert cache.tier_ttls[CacheTier.SESSION] == settings.cache_ttl_session

    @pytest.mark.asyncio
    async def test_store_errors_degrade_to_miss(self) -> None:
        """A failing persistent tier behaves like an empty one."""
        cache = TieredCache(store=BrokenStore())
        policy = CachePolicy.for_endpoint("users/me")

        assert not await cache.set("users/me", None, policy, "full", {"id": "bot"})
        assert await cache.get("users/me", None, policy, "full") is None
        assert cache.misses == 1

        # dynamic responses never touch the store
        pages = CachePolicy.for_endpoint("pages/p1")
        assert await cache.set("pages/p1", None, pages, "full", {"id": "p1"})
        assert await cache.get("pages/p1", None, pages, "full") == {"id": "p1"}
