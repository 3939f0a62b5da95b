from datetime import datetime, timedelta, timezone

import pytest

from card_trader.errors import ErrorCode, TradeError
from card_trader.models import Trade, TradeStatus
from card_trader.state_machine import (
    TRANSITIONS,
    TradeStateMachine,
    can_participate,
    deadline_for,
    is_expired,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_trade(status=TradeStatus.DRAFT, responder="bob", **kwargs) -> Trade:
    return Trade(
        id="t1",
        room_slug="room-1",
        initiator_user_id="alice",
        responder_user_id=responder,
        status=status,
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


def test_transition_table_only_moves_forward_or_cancels():
    assert set(TRANSITIONS) == {
        (TradeStatus.DRAFT, TradeStatus.PROPOSED),
        (TradeStatus.PROPOSED, TradeStatus.AGREED),
        (TradeStatus.AGREED, TradeStatus.COMPLETED),
        (TradeStatus.DRAFT, TradeStatus.CANCELED),
        (TradeStatus.PROPOSED, TradeStatus.CANCELED),
        (TradeStatus.AGREED, TradeStatus.CANCELED),
    }


def test_plan_bumps_version_and_records_history():
    machine = TradeStateMachine()
    trade = make_trade()

    plan = machine.plan_transition(trade, TradeStatus.PROPOSED, "alice", NOW, {"reason": "ready"})

    assert plan.after.status is TradeStatus.PROPOSED
    assert plan.after.version == trade.version + 1
    assert plan.after.proposed_expired_at == NOW + timedelta(hours=72)
    assert plan.history.from_status is TradeStatus.DRAFT
    assert plan.history.reason == "ready"
    assert trade.status is TradeStatus.DRAFT


def test_custom_ttls_are_used():
    machine = TradeStateMachine(proposal_ttl=timedelta(hours=1), agreement_ttl=timedelta(hours=2))
    trade = make_trade(TradeStatus.PROPOSED, proposed_expired_at=NOW + timedelta(minutes=30))

    plan = machine.plan_transition(trade, "agreed", "bob", NOW)

    assert plan.after.agreed_expired_at == NOW + timedelta(hours=2)


def test_authorization_is_checked_before_edge():
    machine = TradeStateMachine()
    trade = make_trade(TradeStatus.COMPLETED)

    with pytest.raises(TradeError) as excinfo:
        machine.plan_transition(trade, TradeStatus.DRAFT, "mallory", NOW)
    assert excinfo.value.code is ErrorCode.UNAUTHORIZED

    with pytest.raises(TradeError) as excinfo:
        machine.plan_transition(trade, TradeStatus.DRAFT, "alice", NOW)
    assert excinfo.value.code is ErrorCode.INVALID_TRANSITION


def test_expiry_produces_sweep_plan():
    machine = TradeStateMachine()
    trade = make_trade(TradeStatus.PROPOSED, proposed_expired_at=NOW - timedelta(seconds=1))

    plan = machine.plan_transition(trade, TradeStatus.AGREED, "bob", NOW)

    assert plan.expired
    assert plan.after.status is TradeStatus.CANCELED
    assert plan.after.previous_status is TradeStatus.PROPOSED
    assert plan.history.reason == "expired"
    assert plan.history.changed_by_user_id is None


def test_deadline_is_exclusive():
    trade = make_trade(TradeStatus.PROPOSED, proposed_expired_at=NOW)

    assert not is_expired(trade, NOW)
    assert is_expired(trade, NOW + timedelta(microseconds=1))
    assert deadline_for(trade, TradeStatus.AGREED) is None
    assert deadline_for(make_trade()) is None


def test_open_seat_admits_first_agreer_only():
    open_trade = make_trade(TradeStatus.PROPOSED, responder=None)

    assert can_participate(open_trade, "carol", TradeStatus.AGREED)
    assert not can_participate(open_trade, "carol", TradeStatus.CANCELED)
    assert not can_participate(make_trade(TradeStatus.PROPOSED), "carol", TradeStatus.AGREED)


def test_cancel_records_previous_status():
    machine = TradeStateMachine()
    trade = make_trade(TradeStatus.AGREED, agreed_expired_at=NOW + timedelta(days=1))

    plan = machine.plan_transition(trade, TradeStatus.CANCELED, "bob", NOW)

    assert plan.after.previous_status is TradeStatus.AGREED


@pytest.mark.parametrize(
    "value",
    [
        "2030-01-01T00:00:00+00:00",
        datetime(2030, 1, 1),
        NOW - timedelta(hours=1),
        NOW,
    ],
)
def test_payload_deadline_must_be_future_aware_datetime(value):
    machine = TradeStateMachine()

    with pytest.raises(TradeError) as excinfo:
        machine.plan_transition(make_trade(), TradeStatus.PROPOSED, "alice", NOW, {"proposed_expired_at": value})

    assert excinfo.value.code is ErrorCode.VALIDATION


def test_uncancel_checks_authorization_first():
    machine = TradeStateMachine()
    active = make_trade()

    with pytest.raises(TradeError) as excinfo:
        machine.plan_uncancel(active, "mallory", NOW)
    assert excinfo.value.code is ErrorCode.UNAUTHORIZED

    with pytest.raises(TradeError) as excinfo:
        machine.plan_uncancel(active, "alice", NOW)
    assert excinfo.value.code is ErrorCode.INVALID_TRANSITION


def test_uncancel_plan_restores_and_clears_previous_status():
    machine = TradeStateMachine()
    trade = make_trade(
        TradeStatus.CANCELED,
        previous_status=TradeStatus.AGREED,
        agreed_expired_at=NOW + timedelta(days=1),
    )

    plan = machine.plan_uncancel(trade, "alice", NOW)

    assert plan.after.status is TradeStatus.AGREED
    assert plan.after.previous_status is None
    assert plan.history.reason == "uncanceled"


def test_dispute_rules():
    machine = TradeStateMachine()
    agreed = make_trade(TradeStatus.AGREED, agreed_expired_at=NOW + timedelta(days=1))

    with pytest.raises(TradeError) as excinfo:
        machine.plan_open_dispute(agreed, "alice", "   ", NOW)
    assert excinfo.value.code is ErrorCode.VALIDATION

    opened = machine.plan_open_dispute(agreed, "alice", " late ", NOW).after
    assert opened.dispute_reason == "late"
    assert opened.status is TradeStatus.AGREED

    with pytest.raises(TradeError) as excinfo:
        machine.plan_open_dispute(opened, "bob", "again", NOW)
    assert excinfo.value.code is ErrorCode.INVALID_TRANSITION

    upheld = machine.plan_resolve_dispute(opened, True, NOW)
    assert upheld.after.status is TradeStatus.DISPUTED
    assert upheld.history.reason == "late"

    with pytest.raises(TradeError):
        machine.plan_resolve_dispute(agreed, False, NOW)
