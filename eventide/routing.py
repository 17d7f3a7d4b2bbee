import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable
from functools import singledispatch
from typing import Any, NamedTuple, TypeVar, get_type_hints

from .domain.event import DomainEvent, EventPayload, PendingEvent
from .domain.exceptions import UpcastFailure

T = TypeVar("T")


class DefaultHandler(ABC):
    """Base handler for unregistered message types."""

    __slots__ = ("base_type", "operation_name")

    def __init__(self, base_type: type, operation_name: str):
        """Initialize the default handler.

        Args:
            base_type: The base type for messages (e.g., Command).
            operation_name: Name of the operation for error messages.
        """
        self.base_type = base_type
        self.operation_name = operation_name

    @abstractmethod
    def __call__(self, message: Any, instance: Any, *args: Any, **kwargs: Any) -> Any:
        """Handle an unregistered message type."""
        ...


class RaiseHandler(DefaultHandler):
    """Raise NotImplementedError for unregistered message types."""

    __slots__ = ()

    def __call__(self, message: Any, instance: Any, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError(
            f"No {self.operation_name} registered for "
            f"{self.base_type.__name__} type {type(message).__name__}"
        )


def _extract_handler_type(func: Callable[..., Any], param_index: int = 1) -> type:
    """Extract the type annotation of a handler parameter.

    Args:
        func: The handler method to inspect.
        param_index: Index of the parameter to extract (0=self, 1=first arg).

    Returns:
        The annotated type.

    Raises:
        ValueError: If the parameter is missing or lacks a type annotation.
    """
    func_name = getattr(func, "__name__", repr(func))
    params = list(inspect.signature(func).parameters.values())

    if len(params) <= param_index:
        raise ValueError(f"Handler {func_name} must have at least {param_index + 1} parameters")

    param = params[param_index]
    if param.annotation is inspect.Parameter.empty:
        raise ValueError(
            f"Handler {func_name} parameter '{param.name}' must have a type annotation"
        )

    annotation = param.annotation
    # Postponed annotations arrive as strings
    if isinstance(annotation, str):
        annotation = get_type_hints(func)[param.name]
    return annotation


def _wants_envelope(func: Callable[..., Any]) -> bool:
    """True if an event handler takes the DomainEvent after the payload."""
    return len(inspect.signature(func).parameters) >= 3


class MessageRouter:
    """Router dispatching commands to type-specific handler methods.

    Uses singledispatch so handlers registered for a base command class
    also receive its subclasses.
    """

    __slots__ = ("_dispatch",)

    def __init__(self, default_handler: DefaultHandler):
        @singledispatch
        def dispatch(message: object, instance: object, *args: Any, **kwargs: Any) -> object:
            return default_handler(message, instance, *args, **kwargs)

        self._dispatch = dispatch

    def register(self, message_type: type, handler: Callable[..., object]) -> None:
        """Register a handler for a specific message type."""

        def wrapper(msg: object, inst: object, *args: Any, h: Any = handler, **kwargs: Any) -> object:
            return h(inst, msg, *args, **kwargs)

        self._dispatch.register(message_type)(wrapper)

    def route(self, instance: Any, message: Any, *args: Any, **kwargs: Any) -> object:
        """Route a message to its registered handler."""
        return self._dispatch(message, instance, *args, **kwargs)


class EventRoute(NamedTuple):
    payload_type: type[EventPayload]
    handler: Callable[..., object]
    wants_envelope: bool


class EventRouter:
    """Closed mapping from ``(event_type, schema_version)`` to a handler.

    The table is built once, when the owning class is defined, from the
    payload annotations of its decorated methods. Routing a DomainEvent is
    a dictionary lookup on the event's tags; the stored payload is then
    validated into the handler's payload schema.

    Args:
        strict: When True, events whose type has no route raise UpcastFailure.
            When False they are ignored. Events whose type is known but whose
            schema_version has no route always raise UpcastFailure, because
            that means an upcaster is missing.
    """

    __slots__ = ("_routes", "_known_types", "strict")

    def __init__(self, strict: bool):
        self._routes: dict[tuple[str, int], EventRoute] = {}
        self._known_types: set[str] = set()
        self.strict = strict

    def register(self, payload_type: type[EventPayload], handler: Callable[..., object]) -> None:
        key = payload_type.type_key()
        if key in self._routes:
            raise ValueError(
                f"Duplicate handler for event {key[0]!r} v{key[1]}: "
                f"{self._routes[key].handler.__name__} and {handler.__name__}"
            )
        self._routes[key] = EventRoute(payload_type, handler, _wants_envelope(handler))
        self._known_types.add(key[0])

    def handles(self, event_type: str) -> bool:
        return event_type in self._known_types

    def keys(self) -> list[tuple[str, int]]:
        return sorted(self._routes)

    def route(self, instance: Any, event: DomainEvent | PendingEvent) -> object:
        """Validate the event payload and invoke its handler.

        Returns:
            Whatever the handler returns (a coroutine for async handlers).

        Raises:
            UpcastFailure: If the event cannot be mapped to a known schema.
        """
        route = self._routes.get(event.type_key)
        if route is None:
            if event.event_type in self._known_types:
                raise UpcastFailure(
                    f"No handler or upcaster resolves {event.event_type!r} "
                    f"v{event.schema_version} for {type(instance).__name__}",
                    event.event_type,
                    event.schema_version,
                )
            if self.strict:
                raise UpcastFailure(
                    f"Unknown event type {event.event_type!r} for {type(instance).__name__}",
                    event.event_type,
                    event.schema_version,
                )
            return None

        try:
            payload = route.payload_type.model_validate(event.payload)
        except ValueError as err:
            raise UpcastFailure(
                f"Payload of {event.event_type!r} v{event.schema_version} "
                f"does not match {route.payload_type.__name__}: {err}",
                event.event_type,
                event.schema_version,
            ) from err

        if route.wants_envelope:
            return route.handler(instance, payload, event)
        return route.handler(instance, payload)


class HandlerDecorator:
    """Base class for handler decorators.

    Marks a method as a handler and records the message type taken from
    its first parameter annotation.
    """

    def __init__(self, marker_attr: str, type_attr: str):
        self.marker_attr = marker_attr
        self.type_attr = type_attr

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        message_type = _extract_handler_type(func, param_index=1)
        setattr(func, self.type_attr, message_type)
        setattr(func, self.marker_attr, True)
        return func


handles_command = HandlerDecorator("_is_command_handler", "_handles_command_type")
applies_event = HandlerDecorator("_is_event_applier", "_applies_event_type")
handles_event = HandlerDecorator("_is_event_handler", "_handles_event_type")

handles_command.__doc__ = """Decorator marking a method as a command handler.

The command type is extracted from the method's type annotation.

Example:
    >>> class Order(Aggregate):
    ...     @handles_command
    ...     def place(self, cmd: PlaceOrder) -> None:
    ...         self.emit(OrderPlaced(sku=cmd.sku))
"""

applies_event.__doc__ = """Decorator marking a method as an event applier.

The payload annotation's ``(event_type, schema_version)`` becomes the
routing key. Appliers must be deterministic and touch only aggregate state.

Example:
    >>> class Order(Aggregate):
    ...     @applies_event
    ...     def apply_placed(self, evt: OrderPlaced) -> None:
    ...         self.sku = evt.sku
"""

handles_event.__doc__ = """Decorator marking a method as a projection event handler.

The payload annotation's ``(event_type, schema_version)`` becomes the
routing key. Add a second parameter to also receive the DomainEvent.

Example:
    >>> class OrderTotals(Projection):
    ...     @handles_event
    ...     async def on_placed(self, evt: OrderPlaced, event: DomainEvent) -> None:
    ...         self.totals[event.stream_id] = evt.quantity
"""


def _decorated(cls: type, marker_attr: str, type_attr: str) -> list[tuple[type, Callable[..., object]]]:
    found: list[tuple[type, Callable[..., object]]] = []
    seen: set[str] = set()
    # Walk the MRO so subclass overrides shadow base handlers of the same name
    for klass in cls.__mro__:
        for name, value in klass.__dict__.items():
            if name in seen:
                continue
            if getattr(value, marker_attr, None):
                seen.add(name)
                found.append((getattr(value, type_attr), value))
    return found


def setup_command_routing(cls: type) -> MessageRouter:
    """Set up command routing for an aggregate class."""
    from .domain.command import Command

    router = MessageRouter(RaiseHandler(Command, "handler"))
    for message_type, handler in _decorated(cls, "_is_command_handler", "_handles_command_type"):
        router.register(message_type, handler)
    return router


def _setup_event_router(cls: type, marker_attr: str, type_attr: str, strict: bool) -> EventRouter:
    router = EventRouter(strict=strict)
    for payload_type, handler in _decorated(cls, marker_attr, type_attr):
        if not (isinstance(payload_type, type) and issubclass(payload_type, EventPayload)):
            raise TypeError(
                f"{cls.__name__}.{handler.__name__} must annotate its payload "
                f"with an EventPayload subclass, got {payload_type!r}"
            )
        router.register(payload_type, handler)
    return router


def setup_event_applying(cls: type) -> EventRouter:
    """Set up the applier table for an aggregate class.

    Aggregates must understand every event in their own stream, so the
    router is strict.
    """
    return _setup_event_router(cls, "_is_event_applier", "_applies_event_type", strict=True)


def setup_event_handling(cls: type) -> EventRouter:
    """Set up the handler table for a projection class.

    Projections only subscribe to the event types they declare; everything
    else is ignored.
    """
    return _setup_event_router(cls, "_is_event_handler", "_handles_event_type", strict=False)
