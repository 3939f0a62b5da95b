"""Trade lifecycle operations."""
from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional

from . import errors
from .database import Database
from .models import (
    ACTIVE_STATUSES,
    OfferItem,
    OfferedCard,
    Participant,
    Trade,
    TradeDetail,
    TradeHistoryEntry,
    TradeStatus,
    User,
    UserTradeListItem,
    utcnow,
)
from .notifications import Notifier, NullNotifier
from .offers import OfferEditor
from .repository import TradeRepository
from .state_machine import TradeStateMachine, TransitionPlan
from .stats import StatsAggregator, counts_as_outcome
from .trust_worker import TrustService

_log = logging.getLogger(__name__)

STATUS_FILTERS = {
    "active": ACTIVE_STATUSES,
    "completed": frozenset({TradeStatus.COMPLETED}),
}
STALE_MESSAGE = "The trade changed since it was loaded; reload and retry"


class TradeService:
    """Entry point for every trade operation.

    Each call loads nothing on its own behalf: callers pass the aggregate they
    read, and a write only lands if nobody else changed the trade in between.
    A stale write fails with ``INVALID_TRANSITION`` and is never retried here.
    Stats, trust jobs and notifications run after the write and cannot undo
    it.
    """

    def __init__(
        self,
        db: Database,
        *,
        state_machine: Optional[TradeStateMachine] = None,
        stats: Optional[StatsAggregator] = None,
        trust: Optional[TrustService] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.repository = TradeRepository(db)
        self.state_machine = state_machine or TradeStateMachine()
        self.stats = stats or StatsAggregator(db)
        self.trust = trust
        self.notifier = notifier or NullNotifier()
        self._clock = clock
        self.offers = OfferEditor(
            db, self.repository, self.state_machine, self._apply_sweep, clock
        )

    # Reads -----------------------------------------------------------------

    async def get_trade(self, trade_id: str) -> Optional[Trade]:
        return await self.repository.get(trade_id)

    async def get_trade_by_slug(self, room_slug: str) -> Optional[Trade]:
        return await self.repository.get_by_slug(room_slug)

    async def require_trade(self, room_slug: str) -> Trade:
        trade = await self.repository.get_by_slug(room_slug)
        if trade is None:
            raise errors.not_found("Trade not found", room_slug=room_slug)
        return trade

    async def get_trade_detail(self, room_slug: str) -> TradeDetail:
        trade = await self.require_trade(room_slug)
        users = await self.db.get_users(trade.participants)
        cards = await self.db.get_cards(item.card_id for item in trade.items)

        def offered(user_id: Optional[str]) -> List[OfferedCard]:
            return [
                OfferedCard(
                    card_id=item.card_id,
                    card_name=cards[item.card_id].name if item.card_id in cards else item.card_id,
                    offered_by_user_id=item.user_id,
                )
                for item in trade.items
                if item.user_id == user_id
            ]

        responder = None
        if trade.responder_user_id is not None:
            responder = _participant(trade.responder_user_id, users.get(trade.responder_user_id))
        return TradeDetail(
            trade=trade,
            initiator=_participant(trade.initiator_user_id, users.get(trade.initiator_user_id)),
            responder=responder,
            initiator_items=offered(trade.initiator_user_id),
            responder_items=offered(trade.responder_user_id),
            history=await self.repository.history(trade.id),
        )

    async def list_user_trades(
        self, user_id: str, status_filter: Optional[str] = None
    ) -> List[UserTradeListItem]:
        if status_filter is None:
            statuses: Iterable[TradeStatus] = list(TradeStatus)
        elif status_filter in STATUS_FILTERS:
            statuses = STATUS_FILTERS[status_filter]
        else:
            raise errors.validation(f"Unknown trade filter {status_filter!r}")
        return await self.repository.list_for_user(user_id, statuses)

    async def history(self, trade: Trade) -> List[TradeHistoryEntry]:
        return await self.repository.history(trade.id)

    # Writes ----------------------------------------------------------------

    async def create_trade(
        self,
        initiator_id: str,
        *,
        responder_user_id: Optional[str] = None,
        proposed_expired_at: Optional[datetime] = None,
        initial_card_id: Optional[str] = None,
    ) -> Trade:
        if responder_user_id is not None and responder_user_id == initiator_id:
            raise errors.validation("A user cannot trade with themselves")
        now = self._clock()
        if proposed_expired_at is not None:
            if proposed_expired_at.tzinfo is None:
                raise errors.validation("proposed_expired_at must be timezone-aware")
            if proposed_expired_at <= now:
                raise errors.validation("proposed_expired_at must be in the future")

        trade_id = uuid.uuid4().hex
        items: List[OfferItem] = []
        if initial_card_id is not None:
            if await self.db.missing_cards([initial_card_id]):
                raise errors.not_found("Card not found", missing=[initial_card_id])
            items.append(
                OfferItem(
                    trade_id=trade_id,
                    user_id=initiator_id,
                    card_id=initial_card_id,
                    created_at=now,
                )
            )

        await self.db.ensure_user(initiator_id)
        if responder_user_id is not None:
            await self.db.ensure_user(responder_user_id)

        trade = Trade(
            id=trade_id,
            room_slug=secrets.token_urlsafe(12),
            initiator_user_id=initiator_id,
            responder_user_id=responder_user_id,
            status=TradeStatus.DRAFT,
            created_at=now,
            updated_at=now,
            proposed_expired_at=proposed_expired_at,
            items=items,
        )
        await self.repository.insert(
            trade,
            TradeHistoryEntry(
                trade_id=trade_id,
                from_status=None,
                to_status=TradeStatus.DRAFT,
                changed_by_user_id=initiator_id,
                reason="created",
                created_at=now,
            ),
        )
        _log.info("Trade %s created by %s", trade.room_slug, initiator_id)
        return trade

    async def transition_trade(
        self,
        trade: Trade,
        target_status: TradeStatus,
        actor_id: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Trade:
        plan = self.state_machine.plan_transition(
            trade, target_status, actor_id, self._clock(), payload
        )
        if plan.noop:
            return trade
        if plan.expired:
            await self._apply_sweep(plan)
            raise errors.expired()

        seated = plan.after.responder_user_id
        if seated is not None and plan.before.responder_user_id is None:
            await self.db.ensure_user(seated)
        await self._persist(plan)
        _log.info(
            "Trade %s moved %s -> %s by %s",
            trade.room_slug,
            plan.from_status.value,
            plan.to_status.value,
            actor_id,
        )
        await self._after_status_change(plan, actor_id)
        return plan.after

    async def set_responder(self, trade: Trade, user_id: str) -> Trade:
        plan = self.state_machine.plan_set_responder(trade, user_id, self._clock())
        await self.db.ensure_user(user_id)
        await self._persist(plan)
        _log.info("User %s joined trade %s", user_id, trade.room_slug)
        return plan.after

    async def update_offer(
        self, trade: Trade, actor_id: str, card_ids: Iterable[str]
    ) -> List[OfferItem]:
        return await self.offers.update_offer(trade, actor_id, card_ids)

    async def uncancel_trade(self, trade: Trade, actor_id: str) -> TradeStatus:
        plan = self.state_machine.plan_uncancel(trade, actor_id, self._clock())
        await self._persist(plan)
        _log.info("Trade %s restored to %s by %s", trade.room_slug, plan.to_status.value, actor_id)
        await self._after_status_change(plan, actor_id)
        return plan.to_status

    async def open_dispute(self, trade: Trade, actor_id: str, reason: str) -> Trade:
        plan = self.state_machine.plan_open_dispute(trade, actor_id, reason, self._clock())
        await self._persist(plan)
        _log.warning("Dispute opened on trade %s by %s", trade.room_slug, actor_id)
        return plan.after

    async def resolve_dispute(self, trade_id: str, uphold: bool) -> Trade:
        trade = await self.repository.get(trade_id)
        if trade is None:
            raise errors.not_found("Trade not found", trade_id=trade_id)
        plan = self.state_machine.plan_resolve_dispute(trade, uphold, self._clock())
        await self._persist(plan)
        _log.info(
            "Dispute on trade %s %s", trade.room_slug, "upheld" if uphold else "rejected"
        )
        if uphold:
            await self._after_status_change(plan, None)
        return plan.after

    # Internals -------------------------------------------------------------

    async def _persist(self, plan: TransitionPlan) -> None:
        saved = await self.repository.save(
            plan.after, expected_version=plan.before.version, history=plan.history
        )
        if not saved:
            raise errors.invalid_transition(STALE_MESSAGE)

    async def _apply_sweep(self, plan: TransitionPlan) -> None:
        saved = await self.repository.save(
            plan.after, expected_version=plan.before.version, history=plan.history
        )
        if not saved:
            # Someone else already moved the trade on.
            return
        _log.warning(
            "Trade %s expired while %s and was canceled",
            plan.before.room_slug,
            plan.from_status.value,
        )
        await self._after_status_change(plan, None)

    async def _after_status_change(self, plan: TransitionPlan, actor_id: Optional[str]) -> None:
        trade = plan.after
        stats_changed = False
        if counts_as_outcome(plan.from_status, plan.to_status):
            stats_changed = await self._guard(
                "record outcome",
                trade,
                lambda: self.stats.record_trade_outcome(trade, plan.to_status, trade.updated_at),
            )
        elif plan.from_status is TradeStatus.CANCELED and plan.to_status is TradeStatus.AGREED:
            stats_changed = await self._guard(
                "revert cancellation", trade, lambda: self.stats.revert_cancellation(trade)
            )

        if stats_changed and self.trust is not None:
            for user_id in trade.participants:
                await self._guard(
                    "queue trust recalculation",
                    trade,
                    lambda user_id=user_id: self.trust.request_recalculation(user_id),
                )

        await self._guard(
            "notify participants",
            trade,
            lambda: self.notifier.trade_state_changed(
                trade, plan.from_status, plan.to_status, actor_id
            ),
        )

    async def _guard(
        self, action: str, trade: Trade, call: Callable[[], Awaitable[Any]]
    ) -> bool:
        try:
            await call()
        except errors.TradeError as exc:
            _log.warning("Could not %s for trade %s: %s", action, trade.id, exc.message)
            return False
        except Exception:
            _log.exception("Failed to %s for trade %s", action, trade.id)
            return False
        return True


def _participant(user_id: str, user: Optional[User]) -> Participant:
    if user is None:
        return Participant(user_id=user_id, display_name=user_id, trust_grade=None)
    return Participant(
        user_id=user_id, display_name=user.display_name, trust_grade=user.trust_grade
    )
