"""MongoDB implementation of EventStore.

Each append is stored as one *commit* document holding the whole batch:

    {
        "_id": ObjectId,
        "stream_id": "order-1",
        "stream_type": "Order",
        "expected_version": 4,       # head before the append
        "head_version": 6,           # head after the append
        "position": 31,              # position of the first event
        "last_position": 32,         # position of the last event
        "max_occurred_at": datetime,
        "events": [ {event fields...}, ... ]
    }

A single-document insert is atomic, so a batch is all-or-nothing without a
replica set or transactions. Two unique indexes carry the guarantees:

- ``(stream_id, expected_version)``: two writers racing from the same head
  cannot both commit; the loser gets a ConcurrencyConflict
- ``position``: commits are numbered from the visible tail, so a commit
  with a higher position is only ever inserted after every lower one is
  visible, and readers paging by position never skip one
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from pymongo.errors import DuplicateKeyError

from ...domain import DomainEvent, PendingEvent
from ...domain.exceptions import ConcurrencyConflict, StreamTypeMismatch
from ...events import EventStore
from .collection import IndexDirection, IndexedCollection, IndexSpec
from .config import MongoConfiguration

LOGGER = logging.getLogger(__name__)

STREAM_INDEX = "stream_expected_version"
POSITION_INDEX = "position"


def _truncate_to_millis(value: datetime) -> datetime:
    # BSON dates have millisecond precision
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _uuid_or_none(value: str | None) -> UUID | None:
    return UUID(value) if value is not None else None


def event_to_document(event: DomainEvent) -> dict[str, Any]:
    return {
        "event_id": str(event.event_id),
        "event_type": event.event_type,
        "schema_version": event.schema_version,
        "stream_version": event.stream_version,
        "position": event.position,
        "occurred_at": event.occurred_at,
        "actor": event.actor,
        "payload": event.payload,
        "correlation_id": str(event.correlation_id) if event.correlation_id else None,
        "causation_id": str(event.causation_id) if event.causation_id else None,
    }


def event_from_document(commit: dict[str, Any], doc: dict[str, Any]) -> DomainEvent:
    return DomainEvent(
        event_id=UUID(doc["event_id"]),
        stream_id=commit["stream_id"],
        stream_type=commit["stream_type"],
        event_type=doc["event_type"],
        schema_version=doc["schema_version"],
        stream_version=doc["stream_version"],
        position=doc["position"],
        occurred_at=doc["occurred_at"],
        actor=doc.get("actor"),
        payload=doc.get("payload") or {},
        correlation_id=_uuid_or_none(doc.get("correlation_id")),
        causation_id=_uuid_or_none(doc.get("causation_id")),
    )


class MongoEventStore(EventStore):
    """MongoDB-backed event store using one commit document per append.

    Example:
        >>> config = MongoConfiguration(database="bank")
        >>> store = MongoEventStore(config)
        >>> head = await store.append("account-1", "Account", NO_STREAM, events)
        >>> async for event in store.read("account-1"):
        ...     print(event.stream_version, event.event_type)
    """

    def __init__(
        self,
        config: MongoConfiguration,
        poll_interval: float = 1.0,
        poll_step: float = 0.05,
        max_position_retries: int = 100,
    ) -> None:
        """Initialize the MongoDB event store.

        Args:
            config: MongoDB configuration providing the commits collection.
            poll_interval: Longest a tailing reader waits between checks.
            poll_step: Delay between tail checks while waiting for events.
            max_position_retries: Attempts at claiming the next position
                under contention from appends to other streams.
        """
        self.poll_interval = poll_interval
        self.poll_step = poll_step
        self.max_position_retries = max_position_retries
        self._commits = IndexedCollection(
            config.commits,
            indexes=[
                IndexSpec(
                    keys=[
                        ("stream_id", IndexDirection.ASC),
                        ("expected_version", IndexDirection.ASC),
                    ],
                    unique=True,
                    name=STREAM_INDEX,
                ),
                IndexSpec(
                    keys=[("position", IndexDirection.ASC)],
                    unique=True,
                    name=POSITION_INDEX,
                ),
                IndexSpec(keys=[("last_position", IndexDirection.ASC)]),
                IndexSpec(keys=[("stream_id", IndexDirection.ASC), ("head_version", IndexDirection.ASC)]),
                IndexSpec(keys=[("max_occurred_at", IndexDirection.ASC)]),
            ],
        )

    async def on_startup(self) -> None:
        """Create the indexes eagerly."""
        await self._commits.ensure_indexes()

    async def on_shutdown(self) -> None:
        pass

    async def append_events(
        self,
        stream_id: str,
        stream_type: str,
        expected_version: int,
        events: Sequence[PendingEvent],
    ) -> list[DomainEvent]:
        head = await self._commits.find_latest({"stream_id": stream_id}, sort_field="head_version")
        current_version = head["head_version"] if head else 0

        if current_version != expected_version:
            raise ConcurrencyConflict(stream_id, expected_version, current_version)
        if head is not None and head["stream_type"] != stream_type:
            raise StreamTypeMismatch(stream_id, stream_type, head["stream_type"])
        if not events:
            return []

        for _ in range(self.max_position_retries):
            first_position = await self.tail_position() + 1
            recorded = [
                pending.model_copy(
                    update={"occurred_at": _truncate_to_millis(pending.occurred_at)}
                ).record(
                    stream_id=stream_id,
                    stream_type=stream_type,
                    stream_version=expected_version + offset + 1,
                    position=first_position + offset,
                )
                for offset, pending in enumerate(events)
            ]
            commit = {
                "stream_id": stream_id,
                "stream_type": stream_type,
                "expected_version": expected_version,
                "head_version": recorded[-1].stream_version,
                "position": first_position,
                "last_position": recorded[-1].position,
                "max_occurred_at": max(event.occurred_at for event in recorded),
                "events": [event_to_document(event) for event in recorded],
            }
            try:
                await self._commits.insert_one(commit)
            except DuplicateKeyError as err:
                if self._violated_index(err) == POSITION_INDEX:
                    # Another stream claimed these positions first
                    continue
                actual = await self.head_version(stream_id)
                raise ConcurrencyConflict(stream_id, expected_version, actual) from err

            LOGGER.debug(
                "Appended events",
                extra={
                    "stream_id": stream_id,
                    "count": len(recorded),
                    "head_version": recorded[-1].stream_version,
                    "position": first_position,
                },
            )
            return recorded

        raise RuntimeError(
            f"Could not claim a position for stream {stream_id!r} "
            f"after {self.max_position_retries} attempts"
        )

    @staticmethod
    def _violated_index(err: DuplicateKeyError) -> str:
        details = err.details or {}
        key_pattern = details.get("keyPattern") or {}
        if "expected_version" in key_pattern:
            return STREAM_INDEX
        if "position" in key_pattern:
            return POSITION_INDEX
        # Older servers only report the index name in the message
        return POSITION_INDEX if f"index: {POSITION_INDEX} " in str(err) else STREAM_INDEX

    async def read(self, stream_id: str, from_version: int = 0) -> AsyncIterator[DomainEvent]:
        async for commit in self._commits.find(
            {"stream_id": stream_id, "head_version": {"$gt": from_version}},
            sort=[("expected_version", IndexDirection.ASC)],
        ):
            for doc in commit["events"]:
                if doc["stream_version"] > from_version:
                    yield event_from_document(commit, doc)

    async def read_page(self, after_position: int, limit: int) -> list[DomainEvent]:
        page: list[DomainEvent] = []
        # Every commit holds at least one event
        async for commit in self._commits.find(
            {"last_position": {"$gt": after_position}},
            sort=[("position", IndexDirection.ASC)],
            limit=limit,
        ):
            for doc in commit["events"]:
                if doc["position"] > after_position:
                    page.append(event_from_document(commit, doc))
                    if len(page) == limit:
                        return page
        return page

    async def read_from_timestamp(self, timestamp: datetime) -> AsyncIterator[DomainEvent]:
        async for commit in self._commits.find(
            {"max_occurred_at": {"$gte": timestamp}},
            sort=[("position", IndexDirection.ASC)],
        ):
            for doc in commit["events"]:
                if doc["occurred_at"] >= timestamp:
                    yield event_from_document(commit, doc)

    async def head_version(self, stream_id: str) -> int:
        head = await self._commits.find_latest({"stream_id": stream_id}, sort_field="head_version")
        return head["head_version"] if head else 0

    async def tail_position(self) -> int:
        tail = await self._commits.find_latest({}, sort_field="last_position")
        return tail["last_position"] if tail else 0

    async def wait_for_events(self, after_position: int, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.tail_position() > after_position:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_step, remaining))
