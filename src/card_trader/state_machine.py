"""Trade lifecycle rules.

Everything here is pure: the functions take a trade aggregate, an acting user
and the current time and either raise :class:`~card_trader.errors.TradeError`
or return a :class:`TransitionPlan` describing the row to write. Persisting a
plan and running its side effects is the job of :mod:`card_trader.trades`.

Checks run in a fixed order: authorization, edge, expiry, then the
per-edge rules. An expired trade never reaches those rules; the plan
returned for it is the cancellation sweep, flagged with ``expired``.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple

from . import errors
from .models import EDITABLE_STATUSES, Trade, TradeHistoryEntry, TradeStatus

TRANSITIONS: Dict[Tuple[TradeStatus, TradeStatus], str] = {
    (TradeStatus.DRAFT, TradeStatus.PROPOSED): "propose",
    (TradeStatus.PROPOSED, TradeStatus.AGREED): "agree",
    (TradeStatus.AGREED, TradeStatus.COMPLETED): "complete",
    (TradeStatus.DRAFT, TradeStatus.CANCELED): "cancel",
    (TradeStatus.PROPOSED, TradeStatus.CANCELED): "cancel",
    (TradeStatus.AGREED, TradeStatus.CANCELED): "cancel",
}

EXPIRED_REASON = "expired"


@dataclass(frozen=True)
class TransitionPlan:
    before: Trade
    after: Trade
    history: Optional[TradeHistoryEntry]
    noop: bool = False
    expired: bool = False

    @property
    def from_status(self) -> TradeStatus:
        return self.before.status

    @property
    def to_status(self) -> TradeStatus:
        return self.after.status


def deadline_for(trade: Trade, status: Optional[TradeStatus] = None) -> Optional[datetime]:
    """Return the deadline governing ``status`` (the trade's own by default)."""

    status = status or trade.status
    if status is TradeStatus.PROPOSED:
        return trade.proposed_expired_at
    if status is TradeStatus.AGREED:
        return trade.agreed_expired_at
    return None


def is_expired(trade: Trade, now: datetime, status: Optional[TradeStatus] = None) -> bool:
    deadline = deadline_for(trade, status)
    return deadline is not None and now > deadline


def can_participate(trade: Trade, user_id: str, target: TradeStatus) -> bool:
    if trade.is_participant(user_id):
        return True
    # The first agree on an open trade seats the caller as responder.
    return (
        target is TradeStatus.AGREED
        and trade.responder_user_id is None
        and user_id != trade.initiator_user_id
    )


class TradeStateMachine:
    def __init__(
        self,
        proposal_ttl: timedelta = timedelta(hours=72),
        agreement_ttl: timedelta = timedelta(hours=168),
    ) -> None:
        self.proposal_ttl = proposal_ttl
        self.agreement_ttl = agreement_ttl

    def plan_transition(
        self,
        trade: Trade,
        target: TradeStatus,
        actor_id: str,
        now: datetime,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> TransitionPlan:
        target = TradeStatus(target)
        payload = payload or {}

        if not can_participate(trade, actor_id, target):
            raise errors.unauthorized()

        if target is TradeStatus.CANCELED and trade.status is TradeStatus.CANCELED:
            return TransitionPlan(before=trade, after=trade, history=None, noop=True)

        action = TRANSITIONS.get((trade.status, target))
        if action is None:
            raise errors.invalid_transition(
                f"Cannot move a {trade.status.value} trade to {target.value}"
            )

        if is_expired(trade, now):
            return self.plan_expiry(trade, now)

        changes: Dict[str, Any] = {"status": target}
        if action == "propose":
            if trade.responder_user_id is None:
                raise errors.invalid_transition("A responder must be set before proposing")
            stored = trade.proposed_expired_at
            if stored is not None and stored <= now:
                # The deadline set at creation has lapsed while still a draft.
                stored = None
            changes["proposed_expired_at"] = (
                _deadline_from(payload, "proposed_expired_at", now)
                or stored
                or now + self.proposal_ttl
            )
        elif action == "agree":
            if trade.responder_user_id is None:
                if actor_id == trade.initiator_user_id:
                    raise errors.invalid_transition("A responder must join before agreeing")
                changes["responder_user_id"] = actor_id
            changes["agreed_expired_at"] = (
                _deadline_from(payload, "agreed_expired_at", now) or now + self.agreement_ttl
            )
        elif action == "complete":
            if trade.has_open_dispute:
                raise errors.invalid_transition("Resolve the open dispute before completing")
        elif action == "cancel":
            changes["previous_status"] = trade.status

        return self._plan(trade, changes, now, actor_id, payload.get("reason"))

    def plan_expiry(self, trade: Trade, now: datetime) -> TransitionPlan:
        plan = self._plan(
            trade,
            {"status": TradeStatus.CANCELED, "previous_status": trade.status},
            now,
            None,
            EXPIRED_REASON,
        )
        return replace(plan, expired=True)

    def plan_uncancel(self, trade: Trade, actor_id: str, now: datetime) -> TransitionPlan:
        if not trade.is_participant(actor_id):
            raise errors.unauthorized()
        if trade.status is not TradeStatus.CANCELED or trade.previous_status is None:
            raise errors.invalid_transition("Only a canceled trade with a prior status can be restored")
        if is_expired(trade, now, trade.previous_status):
            raise errors.expired("The trade expired and can no longer be restored")
        return self._plan(
            trade,
            {"status": trade.previous_status, "previous_status": None},
            now,
            actor_id,
            "uncanceled",
        )

    def plan_set_responder(self, trade: Trade, user_id: str, now: datetime) -> TransitionPlan:
        if user_id == trade.initiator_user_id:
            raise errors.validation("A user cannot trade with themselves")
        if trade.responder_user_id is not None:
            raise errors.invalid_transition("Trade already has a responder")
        if trade.status not in EDITABLE_STATUSES:
            raise errors.invalid_transition(
                f"Cannot join a {trade.status.value} trade"
            )
        after = replace(
            trade, responder_user_id=user_id, version=trade.version + 1, updated_at=now
        )
        return TransitionPlan(before=trade, after=after, history=None)

    def plan_open_dispute(
        self, trade: Trade, actor_id: str, reason: str, now: datetime
    ) -> TransitionPlan:
        if not trade.is_participant(actor_id):
            raise errors.unauthorized()
        if trade.status is not TradeStatus.AGREED:
            raise errors.invalid_transition("Disputes can only be opened on agreed trades")
        if trade.has_open_dispute:
            raise errors.invalid_transition("A dispute is already open for this trade")
        if not reason.strip():
            raise errors.validation("A dispute needs a reason")
        after = replace(
            trade,
            dispute_opened_at=now,
            dispute_reason=reason.strip(),
            version=trade.version + 1,
            updated_at=now,
        )
        return TransitionPlan(before=trade, after=after, history=None)

    def plan_resolve_dispute(self, trade: Trade, uphold: bool, now: datetime) -> TransitionPlan:
        if trade.status is not TradeStatus.AGREED or not trade.has_open_dispute:
            raise errors.invalid_transition("There is no open dispute on this trade")
        if not uphold:
            after = replace(
                trade,
                dispute_opened_at=None,
                dispute_reason=None,
                version=trade.version + 1,
                updated_at=now,
            )
            return TransitionPlan(before=trade, after=after, history=None)
        return self._plan(
            trade, {"status": TradeStatus.DISPUTED}, now, None, trade.dispute_reason
        )

    @staticmethod
    def _plan(
        trade: Trade,
        changes: Dict[str, Any],
        now: datetime,
        actor_id: Optional[str],
        reason: Optional[str],
    ) -> TransitionPlan:
        after = replace(trade, **changes, version=trade.version + 1, updated_at=now)
        history = TradeHistoryEntry(
            trade_id=trade.id,
            from_status=trade.status,
            to_status=after.status,
            changed_by_user_id=actor_id,
            reason=reason,
            created_at=now,
        )
        return TransitionPlan(before=trade, after=after, history=history)


def _deadline_from(payload: Mapping[str, Any], key: str, now: datetime) -> Optional[datetime]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise errors.validation(f"{key} must be a datetime")
    if value.tzinfo is None:
        raise errors.validation(f"{key} must be timezone-aware")
    if value <= now:
        raise errors.validation(f"{key} must be in the future")
    return value
