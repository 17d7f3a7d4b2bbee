"""Tests for the Projection base class."""

import pytest

from eventide.domain import PendingEvent, UpcastFailure
from eventide.testing import ProjectionScenario, recorded
from tests.fixtures.test_app import (
    AccountBalances,
    AccountClosed,
    AccountOpened,
    DepositCounter,
    MoneyDeposited,
    MoneyWithdrawn,
)


def test_name_defaults_to_class_name():
    assert AccountBalances.name == "AccountBalances"
    assert DepositCounter.name == "deposit-counter"


def test_projection_subscribes_only_to_declared_types():
    projection = AccountBalances()

    assert projection.handles(recorded(AccountOpened(owner="a"), "account-1", 1))
    assert not projection.handles(recorded(AccountClosed(), "account-1", 2))
    assert AccountBalances.handles_type("MoneyWithdrawn")


@pytest.mark.asyncio
async def test_projection_folds_events():
    async with ProjectionScenario(AccountBalances(), stream_id="account-1") as scenario:
        scenario.given(
            AccountOpened(owner="alice"),
            MoneyDeposited(amount=10, currency="EUR"),
            MoneyWithdrawn(amount=4),
            AccountClosed(),
        )
        scenario.should_have_state(lambda p: p.balances == {"account-1": 6})
        scenario.should_have_state(lambda p: p.owners == {"account-1": "alice"})


@pytest.mark.asyncio
async def test_redelivered_events_are_skipped():
    projection = AccountBalances()
    events = [
        recorded(AccountOpened(owner="alice"), "account-1", 1),
        recorded(MoneyDeposited(amount=10, currency="EUR"), "account-1", 2),
    ]

    applied = [await projection.apply(event) for event in events]
    reapplied = [await projection.apply(event) for event in events]

    assert applied == [True, True]
    assert reapplied == [False, False]
    assert projection.balances == {"account-1": 10}
    assert projection.watermarks == {"account-1": 2}


@pytest.mark.asyncio
async def test_redelivery_through_scenario_does_not_double_count():
    deposit = recorded(MoneyDeposited(amount=5, currency="EUR"), "account-1", 1)

    async with ProjectionScenario(DepositCounter()) as scenario:
        scenario.given_events(deposit, deposit, deposit)
        scenario.should_have_state(lambda p: p.count == 1)


@pytest.mark.asyncio
async def test_ignored_events_still_advance_watermark():
    projection = AccountBalances()

    assert await projection.apply(recorded(AccountClosed(), "account-1", 3)) is True
    assert projection.watermarks == {"account-1": 3}


@pytest.mark.asyncio
async def test_unknown_schema_version_of_handled_type_raises():
    projection = AccountBalances()
    legacy = PendingEvent(event_type="MoneyDeposited", schema_version=1, payload={"amount": 1}).record(
        "account-1", "BankAccount", 1, 1
    )

    with pytest.raises(UpcastFailure):
        await projection.apply(legacy)
    assert projection.watermarks == {}


@pytest.mark.asyncio
async def test_reset_clears_read_model_and_watermarks():
    projection = DepositCounter()
    await projection.apply(recorded(MoneyDeposited(amount=5, currency="EUR"), "account-1", 1))

    await projection.reset()

    assert projection.count == 0
    assert projection.watermarks == {}
