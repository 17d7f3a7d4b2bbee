from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, Field

from ..context import get_context
from ..routing import setup_command_routing, setup_event_applying
from .event import DomainEvent, EventPayload, PendingEvent
from .exceptions import EventSourcingError

if TYPE_CHECKING:
    from ..routing import EventRouter, MessageRouter


class Aggregate(BaseModel):
    """Base class for all event-sourced aggregates.

    An aggregate is an in-memory reconstruction of one stream's current
    state, built by folding the stream's events in ``stream_version`` order.
    It is constructed transiently per operation (load, mutate, append the
    new events, discard) and is never persisted directly, except as a
    snapshot.

    Command handling and event application are routed based on method
    decorators. Use @handles_command to mark command handler methods and
    @applies_event to mark event applier methods. Appliers are looked up by
    the ``(event_type, schema_version)`` of their payload annotation; they
    must be deterministic and change nothing but the aggregate's own fields.

    Examples:
        >>> class OrderPlaced(EventPayload):
        ...     sku: str
        ...     quantity: int
        >>>
        >>> class Order(Aggregate):
        ...     sku: str = ""
        ...     quantity: int = 0
        ...
        ...     @handles_command
        ...     def place(self, cmd: PlaceOrder) -> None:
        ...         if self.sku:
        ...             raise DomainRuleViolation("Order already placed")
        ...         self.emit(OrderPlaced(sku=cmd.sku, quantity=cmd.quantity))
        ...
        ...     @applies_event
        ...     def apply_placed(self, evt: OrderPlaced) -> None:
        ...         self.sku = evt.sku
        ...         self.quantity = evt.quantity

    Attributes:
        stream_id: Identity of the stream this aggregate is built from.
        version: Stream version of the last folded event (0 when new).
        last_event_time: occurred_at of the last folded event.
        uncommitted_events: Events emitted but not yet appended. Excluded
            from serialization, so never part of a snapshot.
        last_snapshot_time: occurred_at of the event at which the state was
            last snapshotted, if known.
    """

    stream_id: str
    version: int = 0
    last_event_time: datetime | None = None
    uncommitted_events: list[PendingEvent] = Field(default_factory=list, exclude=True)
    last_snapshot_time: datetime | None = Field(default=None, exclude=True)

    # Defaults to the class name; override to decouple stored data from code.
    stream_type: ClassVar[str] = ""

    _command_router: ClassVar["MessageRouter"]
    _event_router: ClassVar["EventRouter"]

    def __init_subclass__(cls, **kwargs: Any) -> None:
        """Set up command and event routing when a subclass is defined."""
        super().__init_subclass__(**kwargs)
        if not cls.__dict__.get("stream_type"):
            cls.stream_type = cls.__name__
        cls._command_router = setup_command_routing(cls)
        cls._event_router = setup_event_applying(cls)

    @property
    def current_version(self) -> int:
        return self.version

    def handle(self, command: BaseModel) -> object:
        """Route a command to its registered handler method.

        Raises:
            NotImplementedError: If no handler is registered for this command type.
        """
        return self._command_router.route(self, command)

    def emit(self, payload: EventPayload) -> None:
        """Record a new event and fold it into the aggregate state.

        Business logic calls this when the aggregate's state must change.
        The event is stamped with the actor, correlation and causation from
        the current execution context, added to the uncommitted events and
        applied through the same applier table used during replay, so that
        emitting and replaying produce the same state.

        Args:
            payload: The event data.
        """
        ctx = get_context()
        pending = PendingEvent.from_payload(
            payload,
            actor=ctx.actor,
            correlation_id=ctx.correlation_id,
            causation_id=ctx.command_id,
        )
        self._event_router.route(self, pending)
        self.version += 1
        self.last_event_time = pending.occurred_at
        self.uncommitted_events.append(pending)

    def apply_event(self, event: DomainEvent) -> None:
        """Fold one recorded event into the aggregate.

        Raises:
            EventSourcingError: If the event belongs to another stream or
                does not directly follow the current version.
            UpcastFailure: If no applier matches the event's type and version.
        """
        if event.stream_id != self.stream_id:
            raise EventSourcingError(
                f"Event {event.event_id} belongs to stream {event.stream_id!r}, "
                f"not {self.stream_id!r}"
            )
        if event.stream_version != self.version + 1:
            raise EventSourcingError(
                f"Event {event.event_id} has stream_version {event.stream_version} "
                f"but {self.stream_id!r} is at version {self.version}"
            )
        self._event_router.route(self, event)
        self.version = event.stream_version
        self.last_event_time = event.occurred_at

    def replay(self, events: Iterable[DomainEvent]) -> None:
        """Fold a sequence of recorded events in order."""
        for event in events:
            self.apply_event(event)

    def changed_since(self, version: int) -> bool:
        return self.version > version

    def get_uncommitted_events(self) -> list[PendingEvent]:
        return list(self.uncommitted_events)

    def clear_uncommitted_events(self) -> None:
        self.uncommitted_events.clear()

    def mark_snapshot(self) -> None:
        self.last_snapshot_time = self.last_event_time

    def snapshot_state(self) -> dict[str, Any]:
        """Serialize the aggregate state for the snapshot store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot_state(cls, state: dict[str, Any]) -> "Aggregate":
        return cls.model_validate(state)

    @classmethod
    def handled_event_types(cls) -> list[tuple[str, int]]:
        return cls._event_router.keys()
