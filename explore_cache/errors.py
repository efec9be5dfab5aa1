"""Exception types raised across the explore-cache package."""

from __future__ import annotations


class ExploreCacheError(Exception):
    """Base class for explore-cache errors."""
    pass


class StoreError(ExploreCacheError):
    """Raised when the keyed store cannot complete an operation."""
    pass


class DocumentNotFoundError(StoreError):
    """Raised when an update targets a document that does not exist."""

    def __init__(self, collection: str, key: str):
        super().__init__(f"Document not found: {collection}/{key}")
        self.collection = collection
        self.key = key


class ConcurrencyConflictError(StoreError):
    """Raised when an optimistic write keeps losing to concurrent writers."""
    pass


class GenerationError(ExploreCacheError):
    """Raised when the generation service produced no usable questions."""
    pass
