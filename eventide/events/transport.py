"""Event transport and subscription interfaces and implementations.

This module provides:
- EventSubscription: Abstract interface for consuming published events
- EventTransport: Abstract interface for publishing events to subscribers
- InMemoryEventTransport: Queue-based in-memory implementation
"""

import asyncio
from abc import ABC, abstractmethod

from ..domain import DomainEvent

ALL_STREAMS = "*"


class EventSubscription(ABC):
    """Abstract interface for consuming events published after subscribing.

    Subscriptions are a live notification channel for consumers outside the
    core (integration, push notifications). Projections do not use them:
    they tail the event store, which is the only source of truth.
    """

    @abstractmethod
    async def depth(self) -> int:
        """Get the number of unread events available in the subscription.

        Note:
            This is a snapshot value; it may change as new events are
            published.
        """
        ...

    @abstractmethod
    async def next(self) -> DomainEvent:
        """Retrieve the next event, waiting until one is published.

        Raises:
            StopAsyncIteration: When the subscription has been closed.
        """
        ...

    @abstractmethod
    async def close(self) -> None: ...

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> DomainEvent:
        return await self.next()


class EventTransport(ABC):
    """Abstract interface for event messaging and delivery.

    EventTransport handles real-time delivery of events to subscribers. It is
    separate from EventStore: the store provides durable persistence, the
    transport provides best-effort notification of what was just appended.

    Implementations might use:
    - In-memory queues (for testing or single-process apps)
    - Message brokers (RabbitMQ, Kafka, AWS SQS/SNS)
    - Pub/sub systems (Redis, Google Pub/Sub)
    """

    @abstractmethod
    async def subscribe(self, identifier: str = ALL_STREAMS) -> EventSubscription:
        """Create a subscription.

        Args:
            identifier: A stream type to receive only that type's events,
                or ALL_STREAMS for everything.

        Note:
            Only events published after the subscription is created are
            received. Historical events should be read from the EventStore.
        """
        ...

    @abstractmethod
    async def publish_events(self, events: list[DomainEvent]) -> None:
        """Publish already-appended events to subscribers."""
        ...


class InMemoryEventTransport(EventTransport):
    """In-memory transport with one unbounded queue per subscription.

    Suitable for tests and single-process applications.
    """

    def __init__(self) -> None:
        self.subscriptions: list[InMemoryEventSubscription] = []

    async def subscribe(self, identifier: str = ALL_STREAMS) -> EventSubscription:
        subscription = InMemoryEventSubscription(self, identifier)
        self.subscriptions.append(subscription)
        return subscription

    async def publish_events(self, events: list[DomainEvent]) -> None:
        for subscription in list(self.subscriptions):
            for event in events:
                if subscription.identifier in (ALL_STREAMS, event.stream_type):
                    subscription.queue.put_nowait(event)


class InMemoryEventSubscription(EventSubscription):
    def __init__(self, transport: InMemoryEventTransport, identifier: str) -> None:
        self.transport = transport
        self.identifier = identifier
        self.queue: asyncio.Queue[DomainEvent | None] = asyncio.Queue()
        self.closed = False

    async def depth(self) -> int:
        return self.queue.qsize()

    async def next(self) -> DomainEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self in self.transport.subscriptions:
            self.transport.subscriptions.remove(self)
        # Wake up a pending next()
        self.queue.put_nowait(None)
