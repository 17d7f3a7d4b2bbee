from types import TracebackType
from typing import Any, Protocol, TypeVar, runtime_checkable

from .aggregates import AggregateRepository, InMemorySnapshotStore, SnapshotStore, SnapshotStrategy
from .config import EventideSettings
from .domain import Aggregate
from .events import EventBus, EventStore, EventTransport, EventUpcaster, InMemoryEventStore, UpcasterChain
from .integrations.mongodb import (
    MongoConfiguration,
    MongoEventStore,
    MongoProjectionStateStore,
    MongoQuarantineStore,
    MongoSnapshotStore,
)
from .projections import (
    InMemoryProjectionStateStore,
    InMemoryQuarantineStore,
    Projection,
    ProjectionManager,
    ProjectionStateStore,
    QuarantineStore,
)
from .temporal import TemporalQueryService

A = TypeVar("A", bound=Aggregate)


@runtime_checkable
class HasLifecycle(Protocol):
    async def on_startup(self) -> None:
        """Called when the application is started."""
        ...

    async def on_shutdown(self) -> None:
        """Called when the application is shutdown."""
        ...


class Application:
    """Composition root wiring the event-sourcing core together.

    The application owns one EventBus (store, upcasters, optional
    transport), one snapshot store, and the ProjectionManager. It hands out
    one AggregateRepository and one TemporalQueryService per aggregate type,
    all configured from the same EventideSettings.

    Used as an async context manager it starts every dependency that has a
    lifecycle and every registered projection, and stops them in reverse
    order on exit.

    Example:
        >>> app = Application.in_memory(EventideSettings(snapshot_interval=50))
        >>> app.register_projection(AccountBalances())
        >>> async with app:
        ...     accounts = app.repository(Account)
        ...     await accounts.handle(OpenAccount(stream_id="account-1"), create=True)
        ...     await app.projections.catch_up()
    """

    def __init__(
        self,
        event_store: EventStore,
        snapshot_store: SnapshotStore,
        projection_state_store: ProjectionStateStore,
        quarantine_store: QuarantineStore,
        settings: EventideSettings | None = None,
        transport: EventTransport | None = None,
        lifecycle: list[Any] | None = None,
    ):
        self.settings = settings or EventideSettings()
        self.event_bus = EventBus(event_store, UpcasterChain(), transport)
        self.snapshot_store = snapshot_store
        self.projections = ProjectionManager(
            self.event_bus,
            projection_state_store,
            quarantine_store,
            retry_policy=self.settings.projection_retry_policy(),
            batch_size=self.settings.projection_batch_size,
            poll_interval=self.settings.poll_interval,
        )
        event_store.poll_interval = self.settings.poll_interval
        self._lifecycle = [dependency for dependency in lifecycle or [] if isinstance(dependency, HasLifecycle)]
        self._repositories: dict[type[Aggregate], AggregateRepository[Any]] = {}

    @classmethod
    def in_memory(
        cls,
        settings: EventideSettings | None = None,
        transport: EventTransport | None = None,
    ) -> "Application":
        """An application whose stores all live in memory. For tests and demos."""
        return cls(
            event_store=InMemoryEventStore(),
            snapshot_store=InMemorySnapshotStore(),
            projection_state_store=InMemoryProjectionStateStore(),
            quarantine_store=InMemoryQuarantineStore(),
            settings=settings,
            transport=transport,
        )

    @classmethod
    def mongo(
        cls,
        config: MongoConfiguration | None = None,
        settings: EventideSettings | None = None,
        transport: EventTransport | None = None,
    ) -> "Application":
        """An application backed by MongoDB. The client is closed on shutdown."""
        config = config or MongoConfiguration()
        event_store = MongoEventStore(config)
        return cls(
            event_store=event_store,
            snapshot_store=MongoSnapshotStore(config),
            projection_state_store=MongoProjectionStateStore(config),
            quarantine_store=MongoQuarantineStore(config),
            settings=settings,
            transport=transport,
            lifecycle=[config, event_store],
        )

    @property
    def upcasters(self) -> UpcasterChain:
        return self.event_bus.upcasters

    def register_upcaster(self, upcaster: EventUpcaster) -> "Application":
        self.event_bus.upcasters.register(upcaster)
        return self

    def register_projection(self, projection: Projection) -> "Application":
        self.projections.register(projection)
        return self

    def repository(self, aggregate_type: type[A]) -> AggregateRepository[A]:
        """The repository for an aggregate type, created on first use."""
        if aggregate_type not in self._repositories:
            self._repositories[aggregate_type] = AggregateRepository(
                aggregate_type,
                self.event_bus,
                snapshot_store=self.snapshot_store,
                snapshot_strategy=SnapshotStrategy.from_interval(self.settings.snapshot_interval),
                retry_policy=self.settings.command_retry_policy(),
            )
        return self._repositories[aggregate_type]

    def temporal(self, aggregate_type: type[A]) -> TemporalQueryService[A]:
        return TemporalQueryService(self.repository(aggregate_type))

    async def startup(self) -> None:
        """Start lifecycle dependencies in registration order, then projections."""
        for dependency in self._lifecycle:
            await dependency.on_startup()
        await self.projections.start()

    async def shutdown(self) -> None:
        """Stop projections, flush snapshots, then stop dependencies in reverse order."""
        await self.projections.stop()
        for repository in self._repositories.values():
            await repository.drain()
        for dependency in reversed(self._lifecycle):
            await dependency.on_shutdown()

    async def __aenter__(self) -> "Application":
        await self.startup()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_value: BaseException | None,
        _traceback: TracebackType | None,
    ) -> None:
        await self.shutdown()
