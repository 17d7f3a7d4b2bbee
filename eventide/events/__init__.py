from .bus import EventBus
from .store import NO_STREAM, EventStore, InMemoryEventStore
from .transport import (
    ALL_STREAMS,
    EventSubscription,
    EventTransport,
    InMemoryEventTransport,
)
from .upcasting import EventUpcaster, FunctionUpcaster, UpcasterChain

__all__ = [
    "ALL_STREAMS",
    "EventBus",
    "EventStore",
    "EventSubscription",
    "EventTransport",
    "EventUpcaster",
    "FunctionUpcaster",
    "InMemoryEventStore",
    "InMemoryEventTransport",
    "NO_STREAM",
    "UpcasterChain",
]
