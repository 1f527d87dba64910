"""
Bounded TTL cache for model lookups.

This module provides the per-model query cache:
- get/set/delete/reset keyed by string
- Per-entry expiry measured from the last access
- Approximate LRU eviction when the entry count exceeds capacity

Invariants:
    - An entry older than ``ttl`` ms is absent on read and is evicted by that read
    - Pruning never runs inline in ``set`` while an event loop is running;
      it is scheduled for the next loop tick
    - Pruning removes the least recently accessed entries first
    - ``get`` returns ``None`` for a miss, so callers store misses with
      their own marker object rather than ``None``

How to change safely:
    - Keep reads O(1); the sort only belongs in the deferred prune
    - Entries hold whatever the caller stores; copying is the caller's job
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 4096
DEFAULT_TTL_MS = 30000


def _now_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class CacheEntry:
    """One cached value with its last access time (ms)."""

    value: Any
    atime: float


class Cache:
    """Bounded, TTL-aware, approximately LRU cache.

    Attributes:
        size: Maximum number of entries kept after a prune
        ttl: Entry time to live in milliseconds
        keys: Live entry counter

    Example:
        >>> cache = Cache(cache_size=2, ttl=1000)
        >>> cache.set("_id:4f6897c612f89af300000001", {"name": "Bob"})
        >>> cache.get("_id:4f6897c612f89af300000001")
        {'name': 'Bob'}
    """

    def __init__(
        self,
        cache_size: int = DEFAULT_CACHE_SIZE,
        ttl: float = DEFAULT_TTL_MS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Initialize an empty cache.

        Args:
            cache_size: Capacity enforced by pruning
            ttl: Time to live in milliseconds
            clock: Millisecond clock, injectable for tests
        """
        self._store: Dict[str, CacheEntry] = {}
        self.size = cache_size or DEFAULT_CACHE_SIZE
        self.ttl = ttl or DEFAULT_TTL_MS
        self.keys = 0
        self._clock = clock or _now_ms
        self._prune_scheduled = False

    def __len__(self) -> int:
        return self.keys

    def has(self, key: str) -> bool:
        """Whether ``key`` is stored (expired entries included)."""
        return bool(key) and key in self._store

    def get(self, key: str) -> Any:
        """Return the cached value or ``None`` on miss/expiry."""
        entry = self._store.get(key)
        if entry is None:
            return None

        now = self._clock()
        if entry.atime + self.ttl < now:
            self.delete(key)
            return None

        entry.atime = now
        return entry.value

    def set(self, key: str, value: Any) -> CacheEntry:
        """Store ``value`` under ``key`` and touch its access time."""
        is_new = not self.has(key)
        entry = CacheEntry(value=value, atime=self._clock())
        self._store[key] = entry

        if is_new:
            self.keys += 1
            self._schedule_prune()
        return entry

    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        if self.has(key):
            del self._store[key]
            self.keys -= 1

    def purge_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``.

        Returns:
            Number of entries removed
        """
        doomed = [key for key in self._store if key.startswith(prefix)]
        for key in doomed:
            self.delete(key)
        return len(doomed)

    def reset(self) -> None:
        """Drop every entry."""
        self._store.clear()
        self.keys = 0

    def _schedule_prune(self) -> None:
        if self.keys <= self.size or self._prune_scheduled:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.prune()
            return

        self._prune_scheduled = True
        loop.call_soon(self.prune)

    def prune(self) -> None:
        """Evict least recently accessed entries down to capacity."""
        self._prune_scheduled = False
        pruned = self.keys - self.size
        if pruned <= 0:
            return

        # sorted() is stable, so equal access times keep insertion order
        oldest = sorted(self._store, key=lambda key: self._store[key].atime)
        for key in oldest[:pruned]:
            del self._store[key]
        self.keys -= pruned
        logger.debug("Cache pruned", extra={"pruned": pruned, "size": self.size})
