"""
Keyed document store used by the knowledge cache and the backfill worker.

Documents are JSON objects addressed by (collection, key). The store offers
point reads and point writes plus two atomic primitives:

- ``increment``: add to a numeric field without losing concurrent updates
- ``compare_and_set``: write only if the current fields still match

Every write goes through ``_mutate``, which implementations must run
atomically for a single document (a lock for the in-memory store, a
version-checked conditional UPDATE for the SQL store).
"""
from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional

from explore_cache.errors import DocumentNotFoundError

Document = dict[str, Any]

# Receives the current document (None when absent) and returns
# (document to write or None to skip the write, value to return).
Mutator = Callable[[Optional[Document]], tuple[Optional[Document], Any]]


class KeyedStore(ABC):
    """Abstract keyed document store."""

    @abstractmethod
    async def get(self, collection: str, key: str) -> Document | None:
        """Read one document, or None when absent."""

    @abstractmethod
    async def scan(self, collection: str) -> list[tuple[str, Document]]:
        """All (key, document) pairs of a collection. Operator tooling only."""

    @abstractmethod
    async def _mutate(self, collection: str, key: str, mutator: Mutator) -> Any:
        """Apply ``mutator`` to one document atomically and return its result."""

    async def set(self, collection: str, key: str, data: Mapping[str, Any], merge: bool = False) -> None:
        """Write a document; with ``merge`` only the given top-level fields change."""

        def apply(current: Document | None) -> tuple[Document, None]:
            if merge and current is not None:
                return {**current, **data}, None
            return dict(data), None

        await self._mutate(collection, key, apply)

    async def update(self, collection: str, key: str, fields: Mapping[str, Any]) -> None:
        """Merge fields into an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """

        def apply(current: Document | None) -> tuple[Document, None]:
            if current is None:
                raise DocumentNotFoundError(collection, key)
            return {**current, **fields}, None

        await self._mutate(collection, key, apply)

    async def increment(
        self,
        collection: str,
        key: str,
        field: str,
        amount: int = 1,
        extra: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Atomically add ``amount`` to a numeric field of an existing document.

        Args:
            collection: Collection name
            key: Document key
            field: Numeric field (missing counts as 0)
            amount: Value to add
            extra: Fields written in the same atomic step

        Returns:
            The new field value

        Raises:
            DocumentNotFoundError: If the document does not exist
        """

        def apply(current: Document | None) -> tuple[Document, int]:
            if current is None:
                raise DocumentNotFoundError(collection, key)
            value = int(current.get(field) or 0) + amount
            return {**current, **(extra or {}), field: value}, value

        return await self._mutate(collection, key, apply)

    async def upsert_increment(
        self,
        collection: str,
        key: str,
        field: str,
        amount: int = 1,
        extra: Mapping[str, Any] | None = None,
        defaults: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Atomically add ``amount`` to a counter, creating the document if missing.

        A missing document is created from ``defaults`` with the counter set to
        ``amount``. ``extra`` is written in both cases.

        Returns:
            The new field value
        """

        def apply(current: Document | None) -> tuple[Document, int]:
            if current is None:
                return {**(defaults or {}), **(extra or {}), field: amount}, amount
            value = int(current.get(field) or 0) + amount
            return {**current, **(extra or {}), field: value}, value

        return await self._mutate(collection, key, apply)

    async def compare_and_set(
        self,
        collection: str,
        key: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> bool:
        """
        Write ``updates`` only if the document exists and every ``expected``
        field still has the given value.

        Returns:
            True when this call performed the write
        """

        def apply(current: Document | None) -> tuple[Document | None, bool]:
            if current is None:
                return None, False
            if any(current.get(name) != value for name, value in expected.items()):
                return None, False
            return {**current, **updates}, True

        return await self._mutate(collection, key, apply)


class MemoryKeyedStore(KeyedStore):
    """In-process store. One lock serialises all mutations."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, key: str) -> Document | None:
        document = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(document) if document is not None else None

    async def scan(self, collection: str) -> list[tuple[str, Document]]:
        return [
            (key, copy.deepcopy(document))
            for key, document in self._collections.get(collection, {}).items()
        ]

    async def _mutate(self, collection: str, key: str, mutator: Mutator) -> Any:
        async with self._lock:
            documents = self._collections.setdefault(collection, {})
            current = documents.get(key)
            new_document, result = mutator(copy.deepcopy(current) if current is not None else None)
            if new_document is not None:
                documents[key] = copy.deepcopy(new_document)
            return result
