"""MongoDB collection wrapper with index management and query helpers.

IndexedCollection wraps an AsyncCollection, creating the indexes a store
relies on before its first operation.
"""

import asyncio
from collections.abc import AsyncIterator
from enum import IntEnum
from typing import Any

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.asynchronous.collection import AsyncCollection


class IndexDirection(IntEnum):
    """Sort direction for MongoDB index fields."""

    ASC = ASCENDING
    DESC = DESCENDING


class IndexSpec(BaseModel):
    """Specification for a MongoDB index.

    Example:
        >>> IndexSpec(
        ...     keys=[
        ...         ("stream_id", IndexDirection.ASC),
        ...         ("expected_version", IndexDirection.ASC),
        ...     ],
        ...     unique=True,
        ... )
    """

    model_config = {"arbitrary_types_allowed": True}

    keys: list[tuple[str, IndexDirection]]
    """(field_name, direction) tuples."""

    unique: bool = False
    """If True, enforce uniqueness."""

    name: str | None = None
    """Explicit index name; MongoDB derives one from the keys otherwise."""

    async def apply(self, collection: AsyncCollection[dict[str, Any]]) -> None:
        kwargs: dict[str, Any] = {}
        if self.unique:
            kwargs["unique"] = True
        if self.name is not None:
            kwargs["name"] = self.name
        await collection.create_index([(key, int(direction)) for key, direction in self.keys], **kwargs)


class IndexedCollection:
    """A MongoDB collection wrapper with automatic index management.

    IndexedCollection handles:
    - Lazy index creation (indexes created on first use)
    - Common query patterns (find one, find many, find latest)
    - Insert/replace/delete operations

    Stores use it to separate concerns: the store maps its records to
    documents, IndexedCollection talks to MongoDB.
    """

    def __init__(
        self,
        collection: AsyncCollection[dict[str, Any]],
        indexes: list[IndexSpec] | None = None,
    ) -> None:
        self._collection = collection
        self._indexes = indexes or []
        self._indexes_created = False
        self._index_lock = asyncio.Lock()

    @property
    def collection(self) -> AsyncCollection[dict[str, Any]]:
        return self._collection

    async def ensure_indexes(self) -> None:
        """Create indexes if not already created.

        Called automatically by other methods, but can be called
        explicitly for eager initialization.
        """
        if self._indexes_created:
            return
        async with self._index_lock:
            if self._indexes_created:
                return
            for index in self._indexes:
                await index.apply(self._collection)
            self._indexes_created = True

    async def find_one(self, filter: dict[str, Any]) -> dict[str, Any] | None:
        await self.ensure_indexes()
        result: dict[str, Any] | None = await self._collection.find_one(filter)
        return result

    async def find(
        self,
        filter: dict[str, Any],
        sort: list[tuple[str, int]] | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Find documents matching the filter.

        Yields:
            Matching documents, in ``sort`` order when given.
        """
        await self.ensure_indexes()

        cursor = self._collection.find(filter)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)

        try:
            async for doc in cursor:
                yield doc
        finally:
            await cursor.close()

    async def find_latest(self, filter: dict[str, Any], sort_field: str) -> dict[str, Any] | None:
        """Find the document with the highest value of ``sort_field``."""
        await self.ensure_indexes()
        result: dict[str, Any] | None = await self._collection.find_one(filter, sort=[(sort_field, DESCENDING)])
        return result

    async def insert_one(self, document: dict[str, Any]) -> None:
        await self.ensure_indexes()
        await self._collection.insert_one(document)

    async def replace_one(
        self,
        filter: dict[str, Any],
        replacement: dict[str, Any],
        upsert: bool = False,
    ) -> None:
        await self.ensure_indexes()
        await self._collection.replace_one(filter, replacement, upsert=upsert)

    async def delete_one(self, filter: dict[str, Any]) -> None:
        await self.ensure_indexes()
        await self._collection.delete_one(filter)
