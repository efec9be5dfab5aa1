"""
SQLAlchemy-backed keyed store.

Each write reads the document and its version, applies the mutation in
Python, then issues ``UPDATE ... WHERE version = :seen``. A rowcount of 0
means another writer got there first; the mutation is re-applied to the
fresh document. This makes ``increment`` lossless and ``compare_and_set``
atomic without table locks.
"""
from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from explore_cache.db.database import async_session_scope
from explore_cache.db.models import StoreDocument
from explore_cache.db.store import Document, KeyedStore, Mutator
from explore_cache.errors import ConcurrencyConflictError, StoreError


class _VersionConflict(Exception):
    pass


class SqlKeyedStore(KeyedStore):
    """Keyed store on a single SQL table (PostgreSQL JSONB or SQLite JSON)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 10,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    async def get(self, collection: str, key: str) -> Document | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(StoreDocument.data).where(
                        StoreDocument.collection == collection,
                        StoreDocument.key == key,
                    )
                )
                data = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"Read failed for {collection}/{key}: {e}") from e
        return dict(data) if data is not None else None

    async def scan(self, collection: str) -> list[tuple[str, Document]]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(StoreDocument.key, StoreDocument.data)
                    .where(StoreDocument.collection == collection)
                    .order_by(StoreDocument.key)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            raise StoreError(f"Scan failed for {collection}: {e}") from e
        return [(row.key, dict(row.data or {})) for row in rows]

    async def _mutate(self, collection: str, key: str, mutator: Mutator) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with async_session_scope(self.session_factory) as session:
                    return await self._mutate_once(session, collection, key, mutator)
            except (_VersionConflict, IntegrityError):
                logger.debug(
                    "Write conflict on {}/{} (attempt {}/{}), retrying",
                    collection,
                    key,
                    attempt,
                    self.max_attempts,
                )
            except SQLAlchemyError as e:
                raise StoreError(f"Write failed for {collection}/{key}: {e}") from e

        raise ConcurrencyConflictError(
            f"Gave up writing {collection}/{key} after {self.max_attempts} conflicting attempts"
        )

    async def _mutate_once(
        self,
        session: AsyncSession,
        collection: str,
        key: str,
        mutator: Mutator,
    ) -> Any:
        result = await session.execute(
            select(StoreDocument.data, StoreDocument.version).where(
                StoreDocument.collection == collection,
                StoreDocument.key == key,
            )
        )
        row = result.first()

        if row is None:
            new_data, outcome = mutator(None)
            if new_data is not None:
                # A concurrent insert of the same key raises IntegrityError
                await session.execute(
                    insert(StoreDocument).values(
                        collection=collection,
                        key=key,
                        data=new_data,
                        version=1,
                    )
                )
            return outcome

        new_data, outcome = mutator(dict(row.data or {}))
        if new_data is None:
            return outcome

        result = await session.execute(
            update(StoreDocument)
            .where(
                StoreDocument.collection == collection,
                StoreDocument.key == key,
                StoreDocument.version == row.version,
            )
            .values(data=new_data, version=row.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _VersionConflict()
        return outcome
