from datetime import datetime, timezone
from typing import Any, ClassVar
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Get the current UTC timestamp.

    Returns:
        Current datetime with UTC timezone information

    Note:
        Used as default_factory for event timestamps so that all events
        are recorded in UTC regardless of system timezone.
    """
    return datetime.now(tz=timezone.utc)


class EventPayload(BaseModel):
    """Base class for typed event payload schemas.

    A payload class describes the data of one event type at one schema
    version. The pair ``(event_type, schema_version)`` is the routing key
    used by aggregates and projections to find the function that handles
    an event; it is resolved when the handling class is defined, never by
    inspecting the runtime type of a stored event.

    ``event_type`` defaults to the class name, ``schema_version`` to 1.
    When a schema evolves, keep the same ``event_type``, bump
    ``schema_version`` and register an upcaster for the old version.

    Examples:
        >>> class OrderPlaced(EventPayload):
        ...     sku: str
        ...     quantity: int
        >>>
        >>> class OrderPlacedV2(EventPayload):
        ...     event_type: ClassVar[str] = "OrderPlaced"
        ...     schema_version: ClassVar[int] = 2
        ...     sku: str
        ...     quantity: int
        ...     unit_price_cents: int
    """

    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[str] = ""
    schema_version: ClassVar[int] = 1

    @classmethod
    def type_name(cls) -> str:
        return cls.event_type or cls.__name__

    @classmethod
    def type_key(cls) -> tuple[str, int]:
        """The ``(event_type, schema_version)`` routing key of this schema."""
        return (cls.type_name(), cls.schema_version)


class PendingEvent(BaseModel):
    """An event produced by a business operation but not yet appended.

    The store assigns ``stream_version`` and ``position`` when the event is
    accepted; until then the event only carries what the operation knows.
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    event_type: str
    schema_version: int = Field(default=1, ge=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)
    actor: str | None = None
    correlation_id: UUID | None = None
    causation_id: UUID | None = None

    @classmethod
    def from_payload(cls, payload: EventPayload, **metadata: Any) -> "PendingEvent":
        event_type, schema_version = payload.type_key()
        return cls(
            event_type=event_type,
            schema_version=schema_version,
            payload=payload.model_dump(mode="json"),
            **metadata,
        )

    @property
    def type_key(self) -> tuple[str, int]:
        return (self.event_type, self.schema_version)

    def record(
        self,
        stream_id: str,
        stream_type: str,
        stream_version: int,
        position: int,
    ) -> "DomainEvent":
        """Turn this pending event into a recorded DomainEvent."""
        return DomainEvent(
            event_id=self.event_id,
            stream_id=stream_id,
            stream_type=stream_type,
            event_type=self.event_type,
            schema_version=self.schema_version,
            stream_version=stream_version,
            position=position,
            occurred_at=self.occurred_at,
            actor=self.actor,
            payload=self.payload,
            correlation_id=self.correlation_id,
            causation_id=self.causation_id,
        )


class DomainEvent(BaseModel):
    """Immutable record of a fact accepted by the event store.

    DomainEvent is the core data structure of the event log. Each event is:

    - **Immutable**: never changed or deleted after a successful append
    - **Ordered**: ``stream_version`` orders it within its stream (1-based,
      gapless) and ``position`` orders it across all streams
    - **Tagged**: ``event_type`` plus ``schema_version`` identify the
      payload schema; the payload itself is plain JSON-compatible data
    - **Traceable**: ``actor``, ``correlation_id`` and ``causation_id``
      record who caused it and as part of which operation

    Attributes:
        event_id: Globally unique identifier of the event
        stream_id: Identity of the aggregate stream
        stream_type: Kind of aggregate that owns the stream
        event_type: Name of the event type
        schema_version: Payload schema version for this event type
        stream_version: Sequence number within the stream (1-based)
        position: Global append-order position (strictly increasing)
        occurred_at: When the event occurred (UTC)
        actor: Who or what caused the event
        payload: Type-specific event data
        correlation_id: Correlation ID of the logical operation
        causation_id: ID of what directly caused this event

    Note:
        Events are created by the store from PendingEvent instances;
        application code does not construct them directly except in tests.
        Upcasting produces a copy with a new payload, event_type and
        schema_version; it never touches event_id, stream_version or
        position.
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    stream_id: str
    stream_type: str
    event_type: str
    schema_version: int = Field(default=1, ge=1)
    stream_version: int = Field(ge=1)
    position: int = Field(ge=1)
    occurred_at: datetime = Field(default_factory=utc_now)
    actor: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: UUID | None = None
    causation_id: UUID | None = None

    @property
    def type_key(self) -> tuple[str, int]:
        return (self.event_type, self.schema_version)
