"""Domain primitives for event sourcing.

This module contains the core building blocks that users extend to create
their domain models:

- DomainEvent / PendingEvent: Recorded and not-yet-appended events
- EventPayload: Base class for typed, versioned event schemas
- Aggregate: Base class for state rebuilt by folding a stream
- Command: Base class for operation arguments (write side)
- The error taxonomy shared by every component
"""

from .event import DomainEvent, EventPayload, PendingEvent, utc_now
from .exceptions import (
    ConcurrencyConflict,
    DomainRuleViolation,
    EventSourcingError,
    ProjectionHandlerFailure,
    RetriesExhausted,
    StreamNotFound,
    StreamTypeMismatch,
    UnknownProjection,
    UpcastFailure,
)
from .command import Command
from .aggregate import Aggregate

__all__ = [
    "Aggregate",
    "Command",
    "DomainEvent",
    "EventPayload",
    "PendingEvent",
    "utc_now",
    "ConcurrencyConflict",
    "DomainRuleViolation",
    "EventSourcingError",
    "ProjectionHandlerFailure",
    "RetriesExhausted",
    "StreamNotFound",
    "StreamTypeMismatch",
    "UnknownProjection",
    "UpcastFailure",
]
