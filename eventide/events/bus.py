import logging
from collections.abc import AsyncIterator, Sequence
from datetime import datetime

from ..domain import DomainEvent, PendingEvent
from .store import EventStore
from .transport import EventTransport
from .upcasting import UpcasterChain

LOGGER = logging.getLogger(__name__)


class EventBus:
    """Coordinates event persistence, upcasting, and publication.

    EventBus is the entry point every other component uses to reach the
    event log. It orchestrates:

    1. **Persistence**: Durably appends events (via EventStore)
    2. **Publication**: Hands accepted events to an optional EventTransport,
       strictly after the append succeeded
    3. **Upcasting**: Runs every event read from the store through the
       UpcasterChain, so callers only ever see current schemas

    Events are stored exactly as they were emitted; upcasting happens on
    read only.
    """

    def __init__(
        self,
        store: EventStore,
        upcasters: UpcasterChain | None = None,
        transport: EventTransport | None = None,
    ):
        self.store = store
        self.upcasters = upcasters or UpcasterChain()
        self.transport = transport

    async def append(
        self,
        stream_id: str,
        stream_type: str,
        expected_version: int,
        events: Sequence[PendingEvent],
    ) -> list[DomainEvent]:
        """Append events and publish them once they are durable.

        Returns:
            The events as recorded by the store.

        Raises:
            ConcurrencyConflict: If another writer got there first.
        """
        recorded = await self.store.append_events(stream_id, stream_type, expected_version, events)
        if recorded and self.transport is not None:
            try:
                await self.transport.publish_events(recorded)
            except Exception:
                # The append is durable; consumers can recover from the store
                LOGGER.exception(
                    "Failed to publish appended events",
                    extra={"stream_id": stream_id, "count": len(recorded)},
                )
        return recorded

    async def read(self, stream_id: str, from_version: int = 0) -> AsyncIterator[DomainEvent]:
        async for event in self.store.read(stream_id, from_version):
            yield self.upcasters.upcast(event)

    async def read_all(
        self,
        from_position: int = 0,
        *,
        follow: bool = False,
        page_size: int = 500,
    ) -> AsyncIterator[DomainEvent]:
        async for event in self.store.read_all(from_position, follow=follow, page_size=page_size):
            yield self.upcasters.upcast(event)

    async def read_page(self, after_position: int, limit: int) -> list[DomainEvent]:
        page = await self.store.read_page(after_position, limit)
        return [self.upcasters.upcast(event) for event in page]

    async def read_from_timestamp(self, timestamp: datetime) -> AsyncIterator[DomainEvent]:
        async for event in self.store.read_from_timestamp(timestamp):
            yield self.upcasters.upcast(event)

    async def head_version(self, stream_id: str) -> int:
        return await self.store.head_version(stream_id)

    async def tail_position(self) -> int:
        return await self.store.tail_position()

    async def wait_for_events(self, after_position: int, timeout: float) -> bool:
        return await self.store.wait_for_events(after_position, timeout)
