"""
Unit tests for the bounded TTL cache.

Tests cover:
- get/set/delete/reset
- Expiry measured from last access
- Deferred pruning of least recently accessed entries
- Prefix purge
"""

import asyncio

import pytest

from sdk.docodm.cache import DEFAULT_CACHE_SIZE, DEFAULT_TTL_MS, Cache


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCache:
    """Tests for Cache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return Cache(cache_size=3, ttl=100, clock=clock)

    def test_defaults(self):
        """Unset sizes fall back to defaults."""
        cache = Cache(cache_size=0, ttl=0)
        assert cache.size == DEFAULT_CACHE_SIZE
        assert cache.ttl == DEFAULT_TTL_MS

    def test_set_get(self, cache):
        """Stored values are returned."""
        cache.set("_id:1", {"name": "Bob"})
        assert cache.get("_id:1") == {"name": "Bob"}
        assert cache.has("_id:1")
        assert len(cache) == 1

    def test_get_miss_returns_none(self, cache):
        """Unknown keys read as None."""
        assert cache.get("missing") is None
        assert not cache.has("missing")

    def test_overwrite_does_not_grow(self, cache):
        """Setting an existing key keeps the count."""
        cache.set("a", 1)
        cache.set("a", 2)
        assert cache.get("a") == 2
        assert len(cache) == 1

    def test_delete(self, cache):
        """Deleted keys are gone and counted down."""
        cache.set("a", 1)
        cache.delete("a")
        cache.delete("a")
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_reset(self, cache):
        """Reset drops everything."""
        cache.set("a", 1)
        cache.set("b", 2)
        cache.reset()
        assert len(cache) == 0
        assert cache.get("a") is None

    def test_entry_expires_after_ttl(self, cache, clock):
        """An entry older than ttl is absent and evicted by the read."""
        cache.set("a", 1)
        clock.now = 101
        assert cache.get("a") is None
        assert not cache.has("a")
        assert len(cache) == 0

    def test_entry_alive_at_ttl_boundary(self, cache, clock):
        """Expiry needs strictly more than ttl."""
        cache.set("a", 1)
        clock.now = 100
        assert cache.get("a") == 1

    def test_read_refreshes_access_time(self, cache, clock):
        """Expiry is measured from the last access."""
        cache.set("a", 1)
        clock.now = 80
        assert cache.get("a") == 1
        clock.now = 170
        assert cache.get("a") == 1
        clock.now = 271
        assert cache.get("a") is None

    def test_prune_inline_without_loop(self, clock):
        """Without a running loop, pruning happens in set()."""
        cache = Cache(cache_size=2, ttl=1000, clock=clock)
        cache.set("a", 1)
        clock.now = 1
        cache.set("b", 2)
        clock.now = 2
        cache.set("c", 3)

        assert len(cache) == 2
        assert not cache.has("a")
        assert cache.has("b")
        assert cache.has("c")

    @pytest.mark.asyncio
    async def test_prune_deferred_to_next_tick(self, clock):
        """Capacity overflow is pruned on the next loop tick, oldest access first."""
        cache = Cache(cache_size=2, ttl=1000, clock=clock)
        cache.set("a", 1)
        clock.now = 1
        cache.set("b", 2)
        clock.now = 2
        cache.get("a")
        clock.now = 3
        cache.set("c", 3)

        # still over capacity until the loop runs the prune
        assert len(cache) == 3

        await asyncio.sleep(0)

        assert len(cache) == 2
        assert cache.has("a")
        assert not cache.has("b")
        assert cache.has("c")

    @pytest.mark.asyncio
    async def test_single_prune_scheduled(self, clock):
        """Several overflowing sets schedule one prune."""
        cache = Cache(cache_size=1, ttl=1000, clock=clock)
        for i in range(5):
            clock.now = i
            cache.set(f"k{i}", i)

        await asyncio.sleep(0)

        assert len(cache) == 1
        assert cache.has("k4")

    def test_purge_prefix(self, cache):
        """Only keys with the prefix are removed."""
        cache.set("email:a@example.com", 1)
        cache.set("email:b@example.com", 2)
        cache.set("_id:1", 3)

        assert cache.purge_prefix("email:") == 2
        assert len(cache) == 1
        assert cache.has("_id:1")
