"""
Base protocol and types for the access store.

This module defines the AccessStore protocol that every backend and the
cache decorator implement, along with the stored entry type.

Invariants:
    - get(key) is True iff an entry exists and now < expires_at
    - set(key) always writes expires_at = now + ttl (refresh on repeat)
    - delete(key) of a missing key is not an error
    - "not found" is a False result, never an exception

How to change safely:
    - Protocol changes require updating all implementations
    - Keep freshness computed from expires_at, not from reclamation
"""

from __future__ import annotations

import time
from abc import abstractmethod
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

Clock = Callable[[], float]


@dataclass(frozen=True)
class AccessEntry:
    """An allow-list entry.

    Attributes:
        key: Entry key (typically an IP address)
        expires_at: Expiry as Unix epoch seconds
    """

    key: str
    expires_at: float

    def is_fresh(self, now: float | None = None) -> bool:
        """Whether the entry is still valid at ``now``."""
        if now is None:
            now = time.time()
        return now < self.expires_at

    def remaining(self, now: float | None = None) -> float:
        if now is None:
            now = time.time()
        return self.expires_at - now


@runtime_checkable
class AccessStore(Protocol):
    """Protocol for access state stores.

    Example:
        >>> store = DynamoDBAccessStore(config.store, config.aws)
        >>> await store.connect()
        >>> await store.set("198.51.100.1")
        >>> assert await store.get("198.51.100.1")
    """

    @abstractmethod
    async def set(self, key: str) -> None:
        """Write or overwrite an entry expiring ``ttl`` from now.

        Raises:
            TransientIOError: If the call times out or the endpoint is unreachable
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> bool:
        """Whether an unexpired entry exists for ``key``.

        Raises:
            TransientIOError: If the call times out or the endpoint is unreachable
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the entry for ``key`` if present."""
        ...

    @property
    @abstractmethod
    def ttl(self) -> float:
        """Lifetime of a newly set entry in seconds."""
        ...
