"""
In-process cache in front of an AccessStore.

Positive results are cached for cache_ttl, confirmed absences for the
(shorter) negative_ttl. Entries never slide: a hit does not extend the
remaining lifetime, so staleness is bounded by the TTL of each entry.

Invariants:
    - set() writes the store first; a failed write purges the key and is
      re-raised, so an unconfirmed positive is never cached
    - delete() purges the cache before deleting from the store
    - Cache bookkeeping is guarded by a lock that is never held across I/O

How to change safely:
    - Keep the write-through ordering of set() and delete()
    - Per-key last-write-wins is accepted; do not add cross-key locking
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

from cachetools import TLRUCache

from .base import AccessStore, Clock

logger = logging.getLogger(__name__)

_MISS = object()


class AccessCache:
    """Caching decorator implementing the AccessStore protocol.

    Attributes:
        store: The authoritative store being wrapped
        cache_ttl: Lifetime of positive entries in seconds
        negative_ttl: Lifetime of negative entries in seconds

    Example:
        >>> cache = AccessCache(store, cache_ttl=10, negative_ttl=3)
        >>> await cache.set("198.51.100.1")
        >>> await cache.get("198.51.100.1")  # served from cache
        True
    """

    def __init__(
        self,
        store: AccessStore,
        cache_ttl: float,
        negative_ttl: float,
        maxsize: int = 10000,
        timer: Optional[Clock] = None,
    ) -> None:
        """Initialize the cache.

        Args:
            store: Store to wrap
            cache_ttl: Lifetime of positive entries in seconds
            negative_ttl: Lifetime of negative entries in seconds
            maxsize: Maximum number of cached keys
            timer: Monotonic time source used for cache expiry
        """
        self.store = store
        self.cache_ttl = cache_ttl
        self.negative_ttl = negative_ttl
        self._cache: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=self._expires_at,
            timer=timer or time.monotonic,
        )
        self._lock = threading.Lock()
        self._hits = 0
        self._negative_hits = 0
        self._misses = 0
        logger.debug(f"new cached backend TTL:{cache_ttl}s negative TTL:{negative_ttl}s")

    def _expires_at(self, key: str, allowed: bool, now: float) -> float:
        return now + (self.cache_ttl if allowed else self.negative_ttl)

    @property
    def ttl(self) -> float:
        return self.store.ttl

    def _lookup(self, key: str) -> Any:
        with self._lock:
            return self._cache.get(key, _MISS)

    def _remember(self, key: str, allowed: bool) -> None:
        with self._lock:
            self._cache[key] = allowed

    def _forget(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    async def get(self, key: str) -> bool:
        cached = self._lookup(key)
        if cached is not _MISS:
            logger.debug(f"hit {key} in cache (negative={not cached})")
            if cached:
                self._hits += 1
            else:
                self._negative_hits += 1
            return bool(cached)

        self._misses += 1
        logger.debug(f"miss {key} in cache")
        allowed = await self.store.get(key)
        if allowed:
            logger.debug(f"set {key} to cache")
        else:
            logger.debug(f"set {key} to negative cache")
        self._remember(key, allowed)
        return allowed

    async def set(self, key: str) -> None:
        logger.debug(f"set {key} to backend")
        try:
            await self.store.set(key)
        except BaseException:
            self._forget(key)
            raise
        logger.debug(f"set {key} to cache")
        self._remember(key, True)

    async def delete(self, key: str) -> None:
        logger.debug(f"delete {key} from cache")
        self._forget(key)
        await self.store.delete(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    @property
    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            size = len(self._cache)
        return {
            "size": size,
            "hits": self._hits,
            "negative_hits": self._negative_hits,
            "misses": self._misses,
        }
