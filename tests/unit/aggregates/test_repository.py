"""Tests for the aggregate repository (load, execute, append, retry)."""

import asyncio
from uuid import uuid4

import pytest

from eventide.aggregates import AggregateRepository
from eventide.context import ExecutionContext, set_context
from eventide.domain import (
    ConcurrencyConflict,
    DomainRuleViolation,
    PendingEvent,
    RetriesExhausted,
    StreamNotFound,
    StreamTypeMismatch,
)
from eventide.events import NO_STREAM, EventBus, InMemoryEventStore
from eventide.retry import RetryPolicy
from tests.fixtures.test_app import (
    AccountOpened,
    BankAccount,
    DepositMoney,
    MoneyDeposited,
    OpenAccount,
    WithdrawMoney,
)


def deposited(amount: int) -> PendingEvent:
    return PendingEvent.from_payload(MoneyDeposited(amount=amount, currency="EUR"))


async def open_account(repository: AggregateRepository[BankAccount], stream_id: str = "account-1", balance: int = 0):
    await repository.handle(OpenAccount(stream_id=stream_id, owner="alice"), create=True)
    if balance:
        await repository.handle(DepositMoney(stream_id=stream_id, amount=balance))


def race_every_append(monkeypatch, event_bus: EventBus, times: int | None = None) -> list[int]:
    """Make a competing writer append right before each of our appends."""
    original = event_bus.append
    races: list[int] = []

    async def racing_append(stream_id, stream_type, expected_version, events):
        if times is None or len(races) < times:
            races.append(expected_version)
            await original(stream_id, stream_type, expected_version, [deposited(100)])
        return await original(stream_id, stream_type, expected_version, events)

    monkeypatch.setattr(event_bus, "append", racing_append)
    return races


def test_create_returns_zero_state(repository: AggregateRepository[BankAccount]):
    account = repository.create("account-1")

    assert isinstance(account, BankAccount)
    assert account.version == 0
    assert account.balance == 0


@pytest.mark.asyncio
async def test_handle_appends_and_returns_outcome(repository: AggregateRepository[BankAccount]):
    outcome = await repository.handle(OpenAccount(stream_id="account-1", owner="alice"), create=True)

    assert outcome.stream_id == "account-1"
    assert outcome.version == 1
    assert outcome.attempts == 1
    assert [e.event_type for e in outcome.events] == ["AccountOpened"]
    assert outcome.events[0].position == 1


@pytest.mark.asyncio
async def test_load_folds_all_events(repository: AggregateRepository[BankAccount]):
    await open_account(repository, balance=30)
    await repository.handle(WithdrawMoney(stream_id="account-1", amount=12))

    account = await repository.load("account-1")

    assert account.version == 3
    assert account.balance == 18
    assert account.owner == "alice"


@pytest.mark.asyncio
async def test_load_missing_stream_raises(repository: AggregateRepository[BankAccount]):
    with pytest.raises(StreamNotFound):
        await repository.load("missing")
    with pytest.raises(StreamNotFound):
        await repository.handle(DepositMoney(stream_id="missing", amount=1))


@pytest.mark.asyncio
async def test_load_stream_of_other_type_raises(
    repository: AggregateRepository[BankAccount], event_store: InMemoryEventStore
):
    await event_store.append(
        "order-1", "Order", NO_STREAM, [PendingEvent.from_payload(AccountOpened(owner="x"))]
    )

    with pytest.raises(StreamTypeMismatch):
        await repository.load("order-1")


@pytest.mark.asyncio
async def test_load_upcasts_stored_legacy_events(
    repository: AggregateRepository[BankAccount], event_store: InMemoryEventStore
):
    await event_store.append(
        "account-1",
        "BankAccount",
        NO_STREAM,
        [
            PendingEvent.from_payload(AccountOpened(owner="alice")),
            PendingEvent(event_type="MoneyDeposited", schema_version=1, payload={"amount": 9}),
        ],
    )

    account = await repository.load("account-1")

    assert account.balance == 9


@pytest.mark.asyncio
async def test_execute_leaves_aggregate_untouched(repository: AggregateRepository[BankAccount]):
    await open_account(repository, balance=10)
    account = await repository.load("account-1")
    before = account.model_dump()

    events = repository.execute(account, DepositMoney(stream_id="account-1", amount=5))

    assert [e.event_type for e in events] == ["MoneyDeposited"]
    assert account.model_dump() == before
    assert account.get_uncommitted_events() == []


@pytest.mark.asyncio
async def test_execute_then_append(repository: AggregateRepository[BankAccount]):
    await open_account(repository)
    account = await repository.load("account-1")

    events = repository.execute(account, DepositMoney(stream_id="account-1", amount=5))
    head = await repository.append(account, events)

    assert head == 2
    assert account.version == 2
    assert account.balance == 5


@pytest.mark.asyncio
async def test_domain_rule_violation_is_not_retried_and_writes_nothing(
    repository: AggregateRepository[BankAccount], event_store: InMemoryEventStore
):
    await open_account(repository, balance=10)

    with pytest.raises(DomainRuleViolation, match="Insufficient funds"):
        await repository.handle(WithdrawMoney(stream_id="account-1", amount=11))

    assert await event_store.head_version("account-1") == 2


@pytest.mark.asyncio
async def test_conflict_is_retried_against_fresh_state(
    repository: AggregateRepository[BankAccount], event_bus: EventBus, monkeypatch
):
    await open_account(repository, balance=100)
    races = race_every_append(monkeypatch, event_bus, times=1)

    outcome = await repository.handle(DepositMoney(stream_id="account-1", amount=5))

    assert races == [2]
    assert outcome.attempts == 2
    assert outcome.version == 4
    assert (await repository.load("account-1")).balance == 205


@pytest.mark.asyncio
async def test_retries_are_bounded(
    repository: AggregateRepository[BankAccount], event_bus: EventBus, monkeypatch
):
    await open_account(repository)
    races = race_every_append(monkeypatch, event_bus)

    with pytest.raises(RetriesExhausted) as exc_info:
        await repository.handle(DepositMoney(stream_id="account-1", amount=5))

    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, ConcurrencyConflict)
    assert len(races) == 3
    # Only the competing writer got through
    assert (await repository.load("account-1")).balance == 300


@pytest.mark.asyncio
async def test_exhausted_retries_chain_the_last_conflict(
    repository: AggregateRepository[BankAccount], event_bus: EventBus, monkeypatch, caplog
):
    await open_account(repository)
    race_every_append(monkeypatch, event_bus)

    with pytest.raises(RetriesExhausted) as exc_info:
        await repository.handle(DepositMoney(stream_id="account-1", amount=5))

    last_conflict = exc_info.value.last_error
    assert exc_info.value.__cause__ is last_conflict
    # The third attempt lost to the third competing write
    assert last_conflict.expected_version == 3
    assert last_conflict.actual_version == 4
    retries = [r for r in caplog.records if r.getMessage() == "Concurrency conflict, retrying command"]
    assert [r.attempt for r in retries] == [1, 2]


@pytest.mark.asyncio
async def test_command_expected_version_conflict_is_not_retried(
    repository: AggregateRepository[BankAccount],
):
    await open_account(repository, balance=10)

    with pytest.raises(ConcurrencyConflict) as exc_info:
        await repository.handle(DepositMoney(stream_id="account-1", amount=1, expected_version=1))

    assert exc_info.value.actual_version == 2
    outcome = await repository.handle(DepositMoney(stream_id="account-1", amount=1, expected_version=2))
    assert outcome.version == 3


@pytest.mark.asyncio
async def test_concurrent_commands_all_land(event_bus: EventBus):
    repository = AggregateRepository(BankAccount, event_bus, retry_policy=RetryPolicy.immediate(10))
    await open_account(repository)

    outcomes = await asyncio.gather(
        *(repository.handle(DepositMoney(stream_id="account-1", amount=n)) for n in range(1, 6))
    )

    account = await repository.load("account-1")
    assert account.balance == 15
    assert account.version == 6
    assert sorted(o.version for o in outcomes) == [2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_handle_stamps_causal_metadata(repository: AggregateRepository[BankAccount]):
    correlation_id = uuid4()
    set_context(ExecutionContext.create(actor="teller"))
    command = OpenAccount(stream_id="account-1", owner="alice", correlation_id=correlation_id)

    outcome = await repository.handle(command, create=True)

    [event] = outcome.events
    assert event.causation_id == command.command_id
    assert event.actor == "teller"
    assert event.correlation_id is not None


@pytest.mark.asyncio
async def test_command_correlation_is_used_without_ambient_context(
    repository: AggregateRepository[BankAccount],
):
    correlation_id = uuid4()

    outcome = await repository.handle(
        OpenAccount(stream_id="account-1", owner="alice", correlation_id=correlation_id), create=True
    )

    assert outcome.events[0].correlation_id == correlation_id


@pytest.mark.asyncio
async def test_acquire_appends_on_clean_exit(repository: AggregateRepository[BankAccount]):
    async with repository.acquire("account-1") as account:
        account.handle(OpenAccount(stream_id="account-1", owner="alice"))
        account.handle(DepositMoney(stream_id="account-1", amount=3))

    loaded = await repository.load("account-1")
    assert loaded.version == 2
    assert loaded.balance == 3


@pytest.mark.asyncio
async def test_acquire_discards_events_on_error(
    repository: AggregateRepository[BankAccount], event_store: InMemoryEventStore
):
    with pytest.raises(DomainRuleViolation):
        async with repository.acquire("account-1") as account:
            account.handle(OpenAccount(stream_id="account-1", owner="alice"))
            account.handle(WithdrawMoney(stream_id="account-1", amount=3))

    assert await event_store.head_version("account-1") == 0


@pytest.mark.asyncio
async def test_acquire_does_not_retry_conflicts(
    repository: AggregateRepository[BankAccount], event_store: InMemoryEventStore
):
    await open_account(repository)

    with pytest.raises(ConcurrencyConflict):
        async with repository.acquire("account-1", create=False) as account:
            await event_store.append("account-1", "BankAccount", 1, [deposited(1)])
            account.handle(DepositMoney(stream_id="account-1", amount=2))
