"""MongoDB implementation of SnapshotStore."""

from typing import Any

from ...aggregates import Snapshot, SnapshotStore
from .collection import IndexDirection, IndexedCollection, IndexSpec
from .config import MongoConfiguration


class MongoSnapshotStore(SnapshotStore):
    """MongoDB-backed snapshot storage, one document per stream.

    Saving replaces the stream's document, so the last write wins.

    Document schema:
        {
            "_id": ObjectId,
            "stream_id": "order-1",
            "stream_type": "Order",
            "version": int,
            "state": { ... serialized aggregate ... },
            "occurred_at": datetime,
            "taken_at": datetime
        }
    """

    def __init__(self, config: MongoConfiguration) -> None:
        self._collection = IndexedCollection(
            config.snapshots,
            indexes=[
                IndexSpec(keys=[("stream_id", IndexDirection.ASC)], unique=True),
                IndexSpec(keys=[("stream_type", IndexDirection.ASC)]),
            ],
        )

    async def save(self, snapshot: Snapshot) -> None:
        await self._collection.replace_one(
            {"stream_id": snapshot.stream_id},
            snapshot.model_dump(),
            upsert=True,
        )

    async def load(self, stream_id: str) -> Snapshot | None:
        doc: dict[str, Any] | None = await self._collection.find_one({"stream_id": stream_id})
        if doc is None:
            return None
        doc.pop("_id", None)
        return Snapshot.model_validate(doc)

    async def delete(self, stream_id: str) -> None:
        await self._collection.delete_one({"stream_id": stream_id})
