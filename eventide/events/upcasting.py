"""Read-time schema evolution for stored events.

Stored events are never rewritten. When a payload schema changes, an
upcaster is registered for the old ``(event_type, schema_version)`` and the
UpcasterChain transforms every event read from the store, step by step,
until it reaches the latest version known to the code.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any, ClassVar

from ..domain import DomainEvent
from ..domain.exceptions import UpcastFailure

LOGGER = logging.getLogger(__name__)

Payload = dict[str, Any]


class EventUpcaster(ABC):
    """Base class for transforming one event schema version into the next.

    Each upcaster declares which ``(event_type, from_version)`` it accepts
    and produces ``(to_event_type or event_type, from_version + 1)``.
    ``upcast_payload`` must be a pure function of the payload: it is run on
    every read, so the same input must always give the same output.

    Example:
        >>> class OrderPlacedV1ToV2(EventUpcaster):
        ...     event_type = "OrderPlaced"
        ...     from_version = 1
        ...
        ...     def upcast_payload(self, payload):
        ...         return {**payload, "unit_price_cents": int(payload.pop("price") * 100)}
    """

    event_type: ClassVar[str]
    from_version: ClassVar[int]
    to_event_type: ClassVar[str | None] = None

    @property
    def source_key(self) -> tuple[str, int]:
        return (self.event_type, self.from_version)

    @property
    def target_key(self) -> tuple[str, int]:
        return (self.to_event_type or self.event_type, self.from_version + 1)

    @abstractmethod
    def upcast_payload(self, payload: Payload) -> Payload:
        """Transform a payload from ``from_version`` to the next version."""
        ...

    def upcast_event(self, event: DomainEvent) -> DomainEvent:
        """Transform an entire event, preserving its identity and ordering."""
        event_type, schema_version = self.target_key
        return event.model_copy(
            update={
                "event_type": event_type,
                "schema_version": schema_version,
                "payload": self.upcast_payload(dict(event.payload)),
            }
        )


class FunctionUpcaster(EventUpcaster):
    """An upcaster built from a plain function.

    Example:
        >>> chain.register(FunctionUpcaster(
        ...     "OrderPlaced", 1, lambda p: {**p, "currency": "EUR"}
        ... ))
    """

    def __init__(
        self,
        event_type: str,
        from_version: int,
        function: Callable[[Payload], Payload],
        to_event_type: str | None = None,
    ):
        if from_version < 1:
            raise ValueError("from_version must be at least 1")
        # Instance attributes shadow the class-level declarations
        self.event_type = event_type  # type: ignore[misc]
        self.from_version = from_version  # type: ignore[misc]
        self.to_event_type = to_event_type  # type: ignore[misc]
        self.function = function

    def upcast_payload(self, payload: Payload) -> Payload:
        return self.function(payload)

    def __repr__(self) -> str:
        return f"FunctionUpcaster({self.event_type!r}, {self.from_version})"


class UpcasterChain:
    """Closed mapping from ``(event_type, schema_version)`` to its upcaster.

    The mapping is resolved at registration time: registering a second
    upcaster for the same source key is an error, so there is never a choice
    to make when reading. Upcasting is transitive: an event at v1 with
    upcasters for v1→v2 and v2→v3 comes out at v3, and the result is the
    same as upcasting to v2 first and then to v3. Every step raises the
    schema version by one, so the chain always terminates.
    """

    def __init__(self, upcasters: Iterable[EventUpcaster] = ()):
        self._upcasters: dict[tuple[str, int], EventUpcaster] = {}
        for upcaster in upcasters:
            self.register(upcaster)

    def register(self, upcaster: EventUpcaster) -> None:
        key = upcaster.source_key
        if key in self._upcasters:
            raise ValueError(
                f"An upcaster for {key[0]!r} v{key[1]} is already registered: "
                f"{self._upcasters[key]!r}"
            )
        self._upcasters[key] = upcaster

    def upcaster_for(self, event_type: str, schema_version: int) -> EventUpcaster | None:
        return self._upcasters.get((event_type, schema_version))

    def latest_version(self, event_type: str, schema_version: int = 1) -> tuple[str, int]:
        """Key an event at ``(event_type, schema_version)`` ends up at."""
        key = (event_type, schema_version)
        while key in self._upcasters:
            key = self._upcasters[key].target_key
        return key

    def upcast(self, event: DomainEvent) -> DomainEvent:
        """Bring an event to the latest known schema.

        Events with no registered upcaster are returned unchanged.

        Raises:
            UpcastFailure: If an upcaster raises.
        """
        while (upcaster := self._upcasters.get(event.type_key)) is not None:
            try:
                event = upcaster.upcast_event(event)
            except UpcastFailure:
                raise
            except Exception as err:
                LOGGER.error(
                    "Upcaster failed",
                    extra={
                        "event_id": str(event.event_id),
                        "event_type": event.event_type,
                        "schema_version": event.schema_version,
                    },
                )
                raise UpcastFailure(
                    f"Upcasting {event.event_type!r} v{event.schema_version} "
                    f"(event {event.event_id}) failed: {err!r}",
                    event.event_type,
                    event.schema_version,
                ) from err
        return event

    def __len__(self) -> int:
        return len(self._upcasters)
