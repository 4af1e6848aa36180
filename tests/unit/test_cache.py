"""
Unit tests for AccessCache.

Tests cover:
- Read-your-write after set
- Positive and negative caching with distinct TTLs
- No sliding expiry on hits
- Write-through failure handling
- Delete ordering
"""

import pytest

from netaccess.knockrd_server.errors import TransientIOError
from netaccess.knockrd_server.store.cache import AccessCache
from netaccess.knockrd_server.store.memory import InMemoryAccessStore
from tests.fakes import FakeClock


class FlakyStore(InMemoryAccessStore):
    """Store whose next calls can be made to fail."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_set = False
        self.fail_get = False

    async def set(self, key):
        if self.fail_set:
            raise TransientIOError("DynamoDB PutItem timed out", operation="PutItem")
        await super().set(key)

    async def get(self, key):
        if self.fail_get:
            raise TransientIOError("DynamoDB GetItem timed out", operation="GetItem")
        return await super().get(key)


class TestAccessCache:
    """Tests for AccessCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return FlakyStore(ttl=3600, clock=clock)

    @pytest.fixture
    def cache(self, store, clock):
        return AccessCache(store, cache_ttl=10, negative_ttl=3, timer=clock)

    def _store_gets(self, store):
        return [c for c in store.calls if c[0] == "get"]

    @pytest.mark.asyncio
    async def test_set_then_get_is_served_from_cache(self, cache, store):
        """Set populates the cache, the following get does not hit the store."""
        await cache.set("198.51.100.1")

        assert await cache.get("198.51.100.1") is True
        assert self._store_gets(store) == []

    @pytest.mark.asyncio
    async def test_miss_populates_positive_entry(self, cache, store):
        """A store hit is cached positively."""
        await store.set("198.51.100.1")

        assert await cache.get("198.51.100.1") is True
        assert await cache.get("198.51.100.1") is True
        assert len(self._store_gets(store)) == 1
        assert cache.stats["hits"] == 1
        assert cache.stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_never_set_is_false(self, cache):
        assert await cache.get("198.51.100.9") is False

    @pytest.mark.asyncio
    async def test_negative_entry_hides_store_until_negative_ttl(self, cache, store, clock):
        """A denied key stays denied from cache for the negative TTL only."""
        assert await cache.get("198.51.100.1") is False

        # Allowed behind the cache's back
        await store.set("198.51.100.1")
        clock.advance(2.5)
        assert await cache.get("198.51.100.1") is False

        clock.advance(0.5)
        assert await cache.get("198.51.100.1") is True
        assert len(self._store_gets(store)) == 2

    @pytest.mark.asyncio
    async def test_negative_hits_do_not_extend_lifetime(self, cache, store, clock):
        """Repeated gets during the negative lifetime do not slide its expiry."""
        assert await cache.get("198.51.100.1") is False
        await store.set("198.51.100.1")

        for _ in range(5):
            clock.advance(0.5)
            assert await cache.get("198.51.100.1") is False
        assert cache.stats["negative_hits"] == 5

        clock.advance(0.5)
        assert await cache.get("198.51.100.1") is True

    @pytest.mark.asyncio
    async def test_positive_hits_do_not_extend_lifetime(self, cache, store, clock):
        """A positive entry expires cache_ttl after it was stored."""
        await cache.set("198.51.100.1")
        for _ in range(9):
            clock.advance(1)
            await cache.get("198.51.100.1")

        clock.advance(1)
        gets_before = len(self._store_gets(store))
        assert await cache.get("198.51.100.1") is True
        assert len(self._store_gets(store)) == gets_before + 1

    @pytest.mark.asyncio
    async def test_failed_set_purges_and_propagates(self, cache, store):
        """A failed write never leaves a cached entry behind."""
        assert await cache.get("198.51.100.1") is False
        assert "198.51.100.1" in cache

        store.fail_set = True
        with pytest.raises(TransientIOError):
            await cache.set("198.51.100.1")

        assert "198.51.100.1" not in cache
        store.fail_set = False
        assert await cache.get("198.51.100.1") is False

    @pytest.mark.asyncio
    async def test_get_error_propagates_and_is_not_cached(self, cache, store):
        store.fail_get = True
        with pytest.raises(TransientIOError):
            await cache.get("198.51.100.1")
        assert "198.51.100.1" not in cache

    @pytest.mark.asyncio
    async def test_delete_purges_cache_before_store(self, store, clock):
        """The cache entry is gone by the time the store delete runs."""
        seen = []

        class RecordingStore(InMemoryAccessStore):
            async def delete(self, key):
                seen.append(key in cache)
                await super().delete(key)

        backing = RecordingStore(ttl=3600, clock=clock)
        cache = AccessCache(backing, cache_ttl=10, negative_ttl=3, timer=clock)
        await cache.set("198.51.100.1")

        await cache.delete("198.51.100.1")

        assert seen == [False]
        assert await cache.get("198.51.100.1") is False

    @pytest.mark.asyncio
    async def test_zero_negative_ttl_disables_negative_caching(self, store, clock):
        cache = AccessCache(store, cache_ttl=10, negative_ttl=0, timer=clock)
        assert await cache.get("198.51.100.1") is False
        assert "198.51.100.1" not in cache

    @pytest.mark.asyncio
    async def test_ttl_is_store_ttl(self, cache):
        assert cache.ttl == 3600
