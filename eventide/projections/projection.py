"""Projection base class for building read models from the event log."""

import inspect
from typing import TYPE_CHECKING, Any, ClassVar

from ..domain import DomainEvent
from ..routing import setup_event_handling

if TYPE_CHECKING:
    from ..routing import EventRouter


class Projection:
    """Base class for read models derived from the event log.

    Projections are the read side of CQRS. They consume every event in
    global position order and keep a denormalized view up to date. They are
    disposable: rebuilding one from an empty state replays the whole log
    and must produce the same read model as incremental consumption did.

    **Event Handling:**
    Use @handles_event to mark methods that process events. The routing key
    is the ``(event_type, schema_version)`` of the payload annotation. Add a
    second parameter to receive the DomainEvent envelope as well:

    ```python
    @handles_event
    async def on_deposited(self, evt: MoneyDeposited, event: DomainEvent) -> None:
        self.balances[event.stream_id] += evt.amount
    ```

    Events of types with no handler are ignored. An event whose type is
    handled but whose schema version is not raises UpcastFailure: the
    upcaster that should have brought it to a handled version is missing.

    **Idempotence:**
    ``apply`` keeps a per-stream watermark (the last applied
    ``stream_version``) and skips any event at or below it, so redelivering
    an event never double-counts and a stream is always applied in
    increasing version order. Projections that keep their read model in a
    database should persist ``watermarks`` alongside it.

    **Rebuilds:**
    Override ``clear`` to drop the read model. ``reset`` calls it and
    forgets the watermarks.

    Attributes:
        name: Unique name of the projection; keys its stored position.
            Defaults to the class name.
    """

    name: ClassVar[str] = ""

    _event_router: ClassVar["EventRouter"]

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if not cls.__dict__.get("name"):
            cls.name = cls.__name__
        cls._event_router = setup_event_handling(cls)

    def __init__(self) -> None:
        self.watermarks: dict[str, int] = {}

    @classmethod
    def handles_type(cls, event_type: str) -> bool:
        return cls._event_router.handles(event_type)

    def handles(self, event: DomainEvent) -> bool:
        return self.handles_type(event.event_type)

    async def apply(self, event: DomainEvent) -> bool:
        """Apply one event to the read model.

        Returns:
            False if the event was already applied and has been skipped.
        """
        if event.stream_version <= self.watermarks.get(event.stream_id, 0):
            return False
        result = self._event_router.route(self, event)
        if inspect.isawaitable(result):
            await result
        self.watermarks[event.stream_id] = event.stream_version
        return True

    async def reset(self) -> None:
        self.watermarks.clear()
        result = self.clear()
        if inspect.isawaitable(result):
            await result

    def clear(self) -> Any:
        """Drop all read-model state. May be a coroutine function."""
