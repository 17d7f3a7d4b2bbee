"""Event store interface and in-memory implementation.

The event store is the single source of truth: an append-only log of
DomainEvents, ordered per stream by ``stream_version`` and globally by
``position``. Everything else (snapshots, projections) is derived from it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from datetime import datetime

from ..domain import DomainEvent, PendingEvent
from ..domain.exceptions import ConcurrencyConflict, StreamTypeMismatch

LOGGER = logging.getLogger(__name__)

# Expected version meaning "the stream must not exist yet". An empty stream
# has head version 0, so the reserved value and the empty head coincide.
NO_STREAM = 0


class EventStore(ABC):
    """Abstract interface for durable event persistence.

    Key responsibilities:
    - **Durability**: Accepted events survive failures
    - **Ordering**: Gapless ``stream_version`` per stream, strictly
      increasing ``position`` across streams (append order)
    - **Concurrency Control**: Optimistic locking via expected_version
    - **Atomicity**: A multi-event append is all-or-nothing; no reader
      ever observes part of a batch

    Appends to different streams are independent; appends to the same
    stream are serialized by the expected-version check.
    """

    poll_interval: float = 1.0

    async def append(
        self,
        stream_id: str,
        stream_type: str,
        expected_version: int,
        events: Sequence[PendingEvent],
    ) -> int:
        """Append events to a stream and return the new head version.

        Args:
            stream_id: Stream to append to. Created by its first append.
            stream_type: Kind of aggregate owning the stream.
            expected_version: The caller's belief of the current head
                version, or NO_STREAM if the stream must not exist yet.
            events: Events to append, in order.

        Returns:
            The stream's head version after the append.

        Raises:
            ConcurrencyConflict: If the head is not expected_version. The
                error carries the actual head version.
            StreamTypeMismatch: If the stream exists under another type.
        """
        recorded = await self.append_events(stream_id, stream_type, expected_version, events)
        return recorded[-1].stream_version if recorded else expected_version

    @abstractmethod
    async def append_events(
        self,
        stream_id: str,
        stream_type: str,
        expected_version: int,
        events: Sequence[PendingEvent],
    ) -> list[DomainEvent]:
        """Append events and return them as recorded by the store.

        Same contract as append(); the recorded events carry their assigned
        ``stream_version`` and ``position``. An empty ``events`` list still
        performs the concurrency check and returns an empty list.
        """
        ...

    @abstractmethod
    def read(self, stream_id: str, from_version: int = 0) -> AsyncIterator[DomainEvent]:
        """Read a stream's events with ``stream_version > from_version``.

        Produces a lazy, finite, ordered sequence. Reading a stream that does
        not exist yields nothing; deciding whether that is an error is up to
        the caller.
        """
        ...

    @abstractmethod
    async def read_page(self, after_position: int, limit: int) -> list[DomainEvent]:
        """Return up to ``limit`` events with ``position > after_position``, in order."""
        ...

    @abstractmethod
    def read_from_timestamp(self, timestamp: datetime) -> AsyncIterator[DomainEvent]:
        """Read all events with ``occurred_at >= timestamp`` in position order."""
        ...

    @abstractmethod
    async def head_version(self, stream_id: str) -> int:
        """Current head version of a stream, 0 if it does not exist."""
        ...

    @abstractmethod
    async def tail_position(self) -> int:
        """Position of the last appended event, 0 if the store is empty."""
        ...

    async def wait_for_events(self, after_position: int, timeout: float) -> bool:
        """Wait until an event with ``position > after_position`` exists.

        The default implementation polls once after sleeping. Stores that
        can be notified of appends should override it.

        Returns:
            True if new events are available, False on timeout.
        """
        await asyncio.sleep(timeout)
        return await self.tail_position() > after_position

    async def read_all(
        self,
        from_position: int = 0,
        *,
        follow: bool = False,
        page_size: int = 500,
    ) -> AsyncIterator[DomainEvent]:
        """Read events across all streams with ``position > from_position``.

        Events come in append order; per-stream order is therefore preserved.

        Args:
            from_position: Last position already consumed (0 for everything).
            follow: When False, stop at the tail as it was reached. When True,
                keep tailing the store forever; cancel the consuming task to
                stop.
            page_size: Number of events fetched per round trip.

        Yields:
            DomainEvents in position order.
        """
        position = from_position
        while True:
            page = await self.read_page(position, page_size)
            for event in page:
                yield event
                position = event.position
            if len(page) < page_size:
                if not follow:
                    return
                await self.wait_for_events(position, self.poll_interval)


class InMemoryEventStore(EventStore):
    """Dictionary-based in-memory event store.

    Keeps one global list in append order plus a per-stream index. The
    concurrency check and the append happen under a per-stream lock, and a
    batch becomes visible in a single synchronous step, so concurrent
    readers never observe a partial batch.

    Suitable for unit tests, development and examples. **NOT durable.**
    """

    def __init__(self, poll_interval: float = 1.0) -> None:
        self.poll_interval = poll_interval
        self._log: list[DomainEvent] = []
        self._streams: dict[str, list[DomainEvent]] = {}
        self._stream_types: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._appended = asyncio.Condition()

    async def append_events(
        self,
        stream_id: str,
        stream_type: str,
        expected_version: int,
        events: Sequence[PendingEvent],
    ) -> list[DomainEvent]:
        async with self._locks[stream_id]:
            stream = self._streams.get(stream_id, [])
            current_version = len(stream)

            if current_version != expected_version:
                raise ConcurrencyConflict(stream_id, expected_version, current_version)

            existing_type = self._stream_types.get(stream_id)
            if existing_type is not None and existing_type != stream_type:
                raise StreamTypeMismatch(stream_id, stream_type, existing_type)

            if not events:
                return []

            # No await between numbering and publishing the batch
            first_position = len(self._log) + 1
            recorded = [
                pending.record(
                    stream_id=stream_id,
                    stream_type=stream_type,
                    stream_version=expected_version + offset + 1,
                    position=first_position + offset,
                )
                for offset, pending in enumerate(events)
            ]
            self._streams[stream_id] = stream + recorded
            self._stream_types[stream_id] = stream_type
            self._log.extend(recorded)

        LOGGER.debug(
            "Appended events",
            extra={
                "stream_id": stream_id,
                "count": len(recorded),
                "head_version": recorded[-1].stream_version,
            },
        )
        async with self._appended:
            self._appended.notify_all()
        return recorded

    async def read(self, stream_id: str, from_version: int = 0) -> AsyncIterator[DomainEvent]:
        # stream_version is index + 1, so slicing skips versions <= from_version
        for event in self._streams.get(stream_id, [])[max(from_version, 0):]:
            yield event

    async def read_page(self, after_position: int, limit: int) -> list[DomainEvent]:
        start = max(after_position, 0)
        return self._log[start : start + limit]

    async def read_from_timestamp(self, timestamp: datetime) -> AsyncIterator[DomainEvent]:
        for event in list(self._log):
            if event.occurred_at >= timestamp:
                yield event

    async def head_version(self, stream_id: str) -> int:
        return len(self._streams.get(stream_id, []))

    async def tail_position(self) -> int:
        return len(self._log)

    async def wait_for_events(self, after_position: int, timeout: float) -> bool:
        async with self._appended:
            try:
                await asyncio.wait_for(
                    self._appended.wait_for(lambda: len(self._log) > after_position),
                    timeout,
                )
            except TimeoutError:
                return False
        return True

    def stream_ids(self) -> list[str]:
        return list(self._streams)
