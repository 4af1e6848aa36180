"""
Access store for knockrd - time-bounded allow-list state.

This module provides:
- AccessStore protocol and AccessEntry type
- DynamoDB store (production) with table provisioning
- In-memory store (tests, local development)
- AccessCache, a positive/negative caching decorator

Invariants:
    - The store is authoritative; the cache only shortens the read path
    - get() is True iff an entry exists and has not expired
    - Cache hits never extend the remaining cache lifetime
"""

from .base import AccessEntry, AccessStore
from .cache import AccessCache
from .dynamodb import DynamoDBAccessStore
from .memory import InMemoryAccessStore

__all__ = [
    "AccessEntry",
    "AccessStore",
    "AccessCache",
    "DynamoDBAccessStore",
    "InMemoryAccessStore",
]
