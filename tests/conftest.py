"""Central test fixtures - imports from the bank account test app."""

import pytest

from eventide.aggregates import AggregateRepository, InMemorySnapshotStore, SnapshotEveryN
from eventide.context import clear_context
from eventide.events import EventBus, InMemoryEventStore, InMemoryEventTransport, UpcasterChain
from eventide.projections import (
    InMemoryProjectionStateStore,
    InMemoryQuarantineStore,
    ProjectionManager,
)
from eventide.retry import RetryPolicy
from tests.fixtures.test_app import BankAccount, MoneyDepositedV1ToV2


@pytest.fixture
def event_store() -> InMemoryEventStore:
    """Create an in-memory event store."""
    return InMemoryEventStore(poll_interval=0.05)


@pytest.fixture
def event_transport() -> InMemoryEventTransport:
    """Create an in-memory event transport."""
    return InMemoryEventTransport()


@pytest.fixture
def upcasters() -> UpcasterChain:
    """Upcaster chain knowing the bank account schema history."""
    return UpcasterChain([MoneyDepositedV1ToV2()])


@pytest.fixture
def event_bus(
    event_store: InMemoryEventStore,
    upcasters: UpcasterChain,
    event_transport: InMemoryEventTransport,
) -> EventBus:
    return EventBus(event_store, upcasters, event_transport)


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def repository(event_bus: EventBus, snapshot_store: InMemorySnapshotStore) -> AggregateRepository[BankAccount]:
    """BankAccount repository snapshotting every 10 versions, retrying without delay."""
    return AggregateRepository(
        BankAccount,
        event_bus,
        snapshot_store=snapshot_store,
        snapshot_strategy=SnapshotEveryN(10),
        retry_policy=RetryPolicy.immediate(3),
    )


@pytest.fixture
def projection_state_store() -> InMemoryProjectionStateStore:
    return InMemoryProjectionStateStore()


@pytest.fixture
def quarantine_store() -> InMemoryQuarantineStore:
    return InMemoryQuarantineStore()


@pytest.fixture
def projection_manager(
    event_bus: EventBus,
    projection_state_store: InMemoryProjectionStateStore,
    quarantine_store: InMemoryQuarantineStore,
) -> ProjectionManager:
    return ProjectionManager(
        event_bus,
        projection_state_store,
        quarantine_store,
        retry_policy=RetryPolicy.immediate(3),
        batch_size=10,
        poll_interval=0.05,
    )


@pytest.fixture(autouse=True)
def clear_execution_context():
    """Automatically clear execution context after each test."""
    yield
    clear_context()
