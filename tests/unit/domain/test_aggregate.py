"""Tests for the Aggregate base class."""

import pytest

from eventide.context import ExecutionContext, set_context
from eventide.domain import DomainRuleViolation, EventSourcingError, PendingEvent, UpcastFailure
from tests.fixtures.test_app import (
    AccountOpened,
    BankAccount,
    DepositMoney,
    MoneyDeposited,
    OpenAccount,
)


def recorded(payload, version: int, stream_id: str = "account-1"):
    return PendingEvent.from_payload(payload).record(
        stream_id=stream_id, stream_type="BankAccount", stream_version=version, position=version
    )


def test_stream_type_defaults_to_class_name():
    assert BankAccount.stream_type == "BankAccount"


def test_handled_event_types_are_resolved_at_class_definition():
    assert BankAccount.handled_event_types() == [
        ("AccountClosed", 1),
        ("AccountOpened", 1),
        ("MoneyDeposited", 2),
        ("MoneyWithdrawn", 1),
    ]


def test_emit_applies_event_and_tracks_it():
    account = BankAccount(stream_id="account-1")

    account.handle(OpenAccount(stream_id="account-1", owner="alice"))
    account.handle(DepositMoney(stream_id="account-1", amount=10))

    assert account.owner == "alice"
    assert account.balance == 10
    assert account.version == 2
    assert [e.event_type for e in account.get_uncommitted_events()] == [
        "AccountOpened",
        "MoneyDeposited",
    ]
    assert account.get_uncommitted_events()[1].schema_version == 2


def test_emit_stamps_execution_context():
    context = ExecutionContext.create(actor="alice")
    command = OpenAccount(stream_id="account-1", owner="alice")
    set_context(context.for_command(command.command_id))
    account = BankAccount(stream_id="account-1")

    account.handle(command)

    [event] = account.get_uncommitted_events()
    assert event.actor == "alice"
    assert event.correlation_id == context.correlation_id
    assert event.causation_id == command.command_id


def test_rejected_command_raises_domain_rule_violation():
    account = BankAccount(stream_id="account-1")

    with pytest.raises(DomainRuleViolation, match="not opened"):
        account.handle(DepositMoney(stream_id="account-1", amount=10))


def test_unknown_command_raises():
    account = BankAccount(stream_id="account-1")

    with pytest.raises(NotImplementedError):
        account.handle(object())


def test_replay_folds_events_in_order():
    account = BankAccount(stream_id="account-1")

    account.replay(
        [
            recorded(AccountOpened(owner="alice"), 1),
            recorded(MoneyDeposited(amount=5, currency="EUR"), 2),
            recorded(MoneyDeposited(amount=7, currency="EUR"), 3),
        ]
    )

    assert account.version == 3
    assert account.balance == 12
    assert account.get_uncommitted_events() == []


def test_apply_event_rejects_gaps_and_foreign_streams():
    account = BankAccount(stream_id="account-1")

    with pytest.raises(EventSourcingError, match="stream_version 2"):
        account.apply_event(recorded(AccountOpened(owner="alice"), 2))
    with pytest.raises(EventSourcingError, match="belongs to stream"):
        account.apply_event(recorded(AccountOpened(owner="alice"), 1, stream_id="account-2"))


def test_unresolvable_schema_version_raises_upcast_failure():
    account = BankAccount(stream_id="account-1")
    legacy = PendingEvent(event_type="MoneyDeposited", schema_version=1, payload={"amount": 1}).record(
        stream_id="account-1", stream_type="BankAccount", stream_version=1, position=1
    )

    with pytest.raises(UpcastFailure) as exc_info:
        account.apply_event(legacy)

    assert exc_info.value.schema_version == 1


def test_unknown_event_type_raises_upcast_failure():
    account = BankAccount(stream_id="account-1")
    unknown = PendingEvent(event_type="Mystery").record(
        stream_id="account-1", stream_type="BankAccount", stream_version=1, position=1
    )

    with pytest.raises(UpcastFailure, match="Unknown event type"):
        account.apply_event(unknown)


def test_payload_that_does_not_match_schema_raises_upcast_failure():
    account = BankAccount(stream_id="account-1")
    broken = PendingEvent(event_type="AccountOpened", payload={}).record(
        stream_id="account-1", stream_type="BankAccount", stream_version=1, position=1
    )

    with pytest.raises(UpcastFailure, match="does not match"):
        account.apply_event(broken)


def test_snapshot_state_round_trip_excludes_uncommitted_events():
    account = BankAccount(stream_id="account-1")
    account.handle(OpenAccount(stream_id="account-1", owner="alice"))

    state = account.snapshot_state()
    restored = BankAccount.from_snapshot_state(state)

    assert "uncommitted_events" not in state
    assert restored.owner == "alice"
    assert restored.version == 1
    assert restored.get_uncommitted_events() == []
