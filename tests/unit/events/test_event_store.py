"""Tests for the in-memory event store."""

import asyncio
from datetime import timedelta

import pytest

from eventide.domain import ConcurrencyConflict, PendingEvent, StreamTypeMismatch, utc_now
from eventide.events import NO_STREAM, InMemoryEventStore
from tests.fixtures.test_app import AccountOpened, MoneyDeposited


def opened(owner: str = "alice") -> PendingEvent:
    return PendingEvent.from_payload(AccountOpened(owner=owner))


def deposited(amount: int) -> PendingEvent:
    return PendingEvent.from_payload(MoneyDeposited(amount=amount, currency="EUR"))


async def collect(iterator) -> list:
    return [item async for item in iterator]


@pytest.mark.asyncio
async def test_append_to_new_stream_returns_head(event_store: InMemoryEventStore):
    head = await event_store.append(
        "account-1", "BankAccount", NO_STREAM, [opened(), deposited(10), deposited(5)]
    )

    assert head == 3
    assert await event_store.head_version("account-1") == 3
    assert await event_store.tail_position() == 3


@pytest.mark.asyncio
async def test_read_returns_events_in_stream_order(event_store: InMemoryEventStore):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened(), deposited(10)])
    await event_store.append("account-1", "BankAccount", 2, [deposited(5)])

    events = await collect(event_store.read("account-1"))

    assert [e.stream_version for e in events] == [1, 2, 3]
    assert [e.event_type for e in events] == ["AccountOpened", "MoneyDeposited", "MoneyDeposited"]
    assert all(e.stream_id == "account-1" and e.stream_type == "BankAccount" for e in events)
    assert events[2].payload == {"amount": 5, "currency": "EUR"}


@pytest.mark.asyncio
async def test_read_from_version_skips_earlier_events(event_store: InMemoryEventStore):
    await event_store.append(
        "account-1", "BankAccount", NO_STREAM, [opened(), deposited(1), deposited(2), deposited(3)]
    )

    events = await collect(event_store.read("account-1", from_version=2))

    assert [e.stream_version for e in events] == [3, 4]


@pytest.mark.asyncio
async def test_read_missing_stream_yields_nothing(event_store: InMemoryEventStore):
    assert await collect(event_store.read("nope")) == []
    assert await event_store.head_version("nope") == 0


@pytest.mark.asyncio
async def test_stale_expected_version_reports_actual_head(event_store: InMemoryEventStore):
    await event_store.append("order-1", "Order", NO_STREAM, [opened(), deposited(1)])

    with pytest.raises(ConcurrencyConflict) as exc_info:
        await event_store.append("order-1", "Order", NO_STREAM, [deposited(2)])

    assert exc_info.value.stream_id == "order-1"
    assert exc_info.value.expected_version == 0
    assert exc_info.value.actual_version == 2
    assert await event_store.head_version("order-1") == 2


@pytest.mark.asyncio
async def test_expected_version_ahead_of_head_conflicts(event_store: InMemoryEventStore):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened()])

    with pytest.raises(ConcurrencyConflict) as exc_info:
        await event_store.append("account-1", "BankAccount", 5, [deposited(1)])

    assert exc_info.value.actual_version == 1


@pytest.mark.asyncio
async def test_concurrent_appends_with_same_expected_version_only_one_wins(
    event_store: InMemoryEventStore,
):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened()])

    results = await asyncio.gather(
        event_store.append("account-1", "BankAccount", 1, [deposited(10)]),
        event_store.append("account-1", "BankAccount", 1, [deposited(20), deposited(30)]),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, int)]
    conflicts = [r for r in results if isinstance(r, ConcurrencyConflict)]
    assert len(successes) == 1
    assert len(conflicts) == 1

    versions = [e.stream_version for e in await collect(event_store.read("account-1"))]
    assert versions == list(range(1, successes[0] + 1))


@pytest.mark.asyncio
async def test_failed_append_writes_nothing(event_store: InMemoryEventStore):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened()])

    with pytest.raises(ConcurrencyConflict):
        await event_store.append("account-1", "BankAccount", 0, [deposited(1), deposited(2)])

    assert await event_store.tail_position() == 1
    assert len(await collect(event_store.read("account-1"))) == 1


@pytest.mark.asyncio
async def test_empty_append_still_checks_version(event_store: InMemoryEventStore):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened()])

    assert await event_store.append("account-1", "BankAccount", 1, []) == 1
    with pytest.raises(ConcurrencyConflict):
        await event_store.append("account-1", "BankAccount", 0, [])


@pytest.mark.asyncio
async def test_stream_type_is_fixed_by_first_append(event_store: InMemoryEventStore):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened()])

    with pytest.raises(StreamTypeMismatch) as exc_info:
        await event_store.append("account-1", "Order", 1, [deposited(1)])

    assert exc_info.value.actual_type == "BankAccount"
    assert exc_info.value.expected_type == "Order"


@pytest.mark.asyncio
async def test_read_all_interleaves_streams_in_append_order(event_store: InMemoryEventStore):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened("alice")])
    await event_store.append("account-2", "BankAccount", NO_STREAM, [opened("bob")])
    await event_store.append("account-1", "BankAccount", 1, [deposited(1), deposited(2)])
    await event_store.append("account-2", "BankAccount", 1, [deposited(3)])

    events = await collect(event_store.read_all(page_size=2))

    assert [e.position for e in events] == [1, 2, 3, 4, 5]
    assert [(e.stream_id, e.stream_version) for e in events] == [
        ("account-1", 1),
        ("account-2", 1),
        ("account-1", 2),
        ("account-1", 3),
        ("account-2", 2),
    ]
    later = await collect(event_store.read_all(from_position=3))
    assert [e.position for e in later] == [4, 5]


@pytest.mark.asyncio
async def test_read_all_follow_picks_up_new_events(event_store: InMemoryEventStore):
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened()])
    events = event_store.read_all(follow=True)

    first = await anext(events)
    pending = asyncio.ensure_future(anext(events))
    await asyncio.sleep(0)
    assert not pending.done()

    await event_store.append("account-1", "BankAccount", 1, [deposited(7)])
    second = await asyncio.wait_for(pending, timeout=1)
    await events.aclose()

    assert (first.position, second.position) == (1, 2)
    assert second.payload["amount"] == 7


@pytest.mark.asyncio
async def test_read_from_timestamp(event_store: InMemoryEventStore):
    start = utc_now()
    old = PendingEvent.from_payload(AccountOpened(owner="alice"), occurred_at=start - timedelta(days=2))
    recent = PendingEvent.from_payload(
        MoneyDeposited(amount=1, currency="EUR"), occurred_at=start - timedelta(hours=1)
    )
    await event_store.append("account-1", "BankAccount", NO_STREAM, [old, recent])

    events = await collect(event_store.read_from_timestamp(start - timedelta(days=1)))

    assert [e.event_id for e in events] == [recent.event_id]


@pytest.mark.asyncio
async def test_wait_for_events(event_store: InMemoryEventStore):
    assert await event_store.wait_for_events(0, timeout=0.01) is False

    waiter = asyncio.ensure_future(event_store.wait_for_events(0, timeout=1))
    await asyncio.sleep(0)
    await event_store.append("account-1", "BankAccount", NO_STREAM, [opened()])

    assert await waiter is True


@pytest.mark.asyncio
async def test_recorded_events_keep_identity_and_metadata(event_store: InMemoryEventStore):
    pending = opened().model_copy(update={"actor": "alice"})

    await event_store.append("account-1", "BankAccount", NO_STREAM, [pending])
    [event] = await collect(event_store.read("account-1"))

    assert event.event_id == pending.event_id
    assert event.occurred_at == pending.occurred_at
    assert event.actor == "alice"
    assert event.schema_version == 1
