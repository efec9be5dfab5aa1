"""Keyed document store: abstract contract, in-memory and SQLAlchemy implementations."""

from explore_cache.db.store import KeyedStore, MemoryKeyedStore

__all__ = [
    "KeyedStore",
    "MemoryKeyedStore",
]
