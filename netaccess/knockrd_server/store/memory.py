"""
In-memory access store implementation for testing.

This module provides a simple in-memory AccessStore for:
- Unit tests
- Local development without DynamoDB

Invariants:
    - All data is lost on process exit
    - Expired entries may stay in memory until reclaimed, like DynamoDB TTL
    - Freshness is always recomputed from the stored expiry

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the AccessStore protocol
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional

from .base import AccessEntry, Clock

logger = logging.getLogger(__name__)


class InMemoryAccessStore:
    """In-memory implementation of AccessStore.

    Attributes:
        ttl: Lifetime of a newly set entry in seconds

    Example:
        >>> store = InMemoryAccessStore(ttl=60)
        >>> await store.set("198.51.100.1")
        >>> await store.get("198.51.100.1")
        True
    """

    def __init__(self, ttl: float = 3600.0, clock: Optional[Clock] = None) -> None:
        """Initialize in-memory store.

        Args:
            ttl: Lifetime of a newly set entry in seconds
            clock: Time source returning Unix epoch seconds
        """
        self._ttl = ttl
        self._clock = clock or time.time
        self._entries: Dict[str, AccessEntry] = {}
        self.calls: List[tuple[str, str]] = []

    @property
    def ttl(self) -> float:
        return self._ttl

    async def set(self, key: str) -> None:
        self.calls.append(("set", key))
        self._entries[key] = AccessEntry(key=key, expires_at=self._clock() + self._ttl)
        logger.debug(f"set {key} to memory store")

    async def get(self, key: str) -> bool:
        self.calls.append(("get", key))
        entry = self._entries.get(key)
        if entry is None:
            return False
        return entry.is_fresh(self._clock())

    async def delete(self, key: str) -> None:
        self.calls.append(("delete", key))
        self._entries.pop(key, None)

    # Testing helpers

    def entry(self, key: str) -> AccessEntry | None:
        """Return the raw entry, expired or not."""
        return self._entries.get(key)

    def reclaim(self) -> List[str]:
        """Physically drop expired entries, like a TTL sweeper.

        Returns:
            Keys that were reclaimed
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        return expired
