"""MongoDB implementations of the projection state and quarantine stores."""

from typing import Any

from ...projections import (
    ProjectionState,
    ProjectionStateStore,
    QuarantinedEvent,
    QuarantineStore,
)
from .collection import IndexDirection, IndexedCollection, IndexSpec
from .config import MongoConfiguration
from .event_store import event_to_document, event_from_document


class MongoProjectionStateStore(ProjectionStateStore):
    """One document per projection, replaced on every save."""

    def __init__(self, config: MongoConfiguration) -> None:
        self._collection = IndexedCollection(
            config.projection_states,
            indexes=[IndexSpec(keys=[("projection_name", IndexDirection.ASC)], unique=True)],
        )

    async def load(self, projection_name: str) -> ProjectionState | None:
        doc = await self._collection.find_one({"projection_name": projection_name})
        if doc is None:
            return None
        doc.pop("_id", None)
        return ProjectionState.model_validate(doc)

    async def save(self, state: ProjectionState) -> None:
        await self._collection.replace_one(
            {"projection_name": state.projection_name},
            state.model_dump(mode="json", exclude={"updated_at"}) | {"updated_at": state.updated_at},
            upsert=True,
        )

    async def delete(self, projection_name: str) -> None:
        await self._collection.delete_one({"projection_name": projection_name})


class MongoQuarantineStore(QuarantineStore):
    """One document per stalled projection, holding the offending event."""

    def __init__(self, config: MongoConfiguration) -> None:
        self._collection = IndexedCollection(
            config.quarantine,
            indexes=[
                IndexSpec(keys=[("projection_name", IndexDirection.ASC)], unique=True),
                IndexSpec(keys=[("quarantined_at", IndexDirection.ASC)]),
            ],
        )

    @staticmethod
    def _to_document(entry: QuarantinedEvent) -> dict[str, Any]:
        event = entry.event
        return {
            "projection_name": entry.projection_name,
            "stream_id": event.stream_id,
            "stream_type": event.stream_type,
            "event": event_to_document(event),
            "error": entry.error,
            "attempts": entry.attempts,
            "quarantined_at": entry.quarantined_at,
        }

    @staticmethod
    def _from_document(doc: dict[str, Any]) -> QuarantinedEvent:
        return QuarantinedEvent(
            projection_name=doc["projection_name"],
            event=event_from_document(doc, doc["event"]),
            error=doc["error"],
            attempts=doc["attempts"],
            quarantined_at=doc["quarantined_at"],
        )

    async def put(self, entry: QuarantinedEvent) -> None:
        await self._collection.replace_one(
            {"projection_name": entry.projection_name},
            self._to_document(entry),
            upsert=True,
        )

    async def get(self, projection_name: str) -> QuarantinedEvent | None:
        doc = await self._collection.find_one({"projection_name": projection_name})
        return self._from_document(doc) if doc is not None else None

    async def list(self) -> list[QuarantinedEvent]:
        return [
            self._from_document(doc)
            async for doc in self._collection.find({}, sort=[("quarantined_at", IndexDirection.ASC)])
        ]

    async def remove(self, projection_name: str) -> None:
        await self._collection.delete_one({"projection_name": projection_name})
