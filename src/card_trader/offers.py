"""Offer editing for one participant of a trade."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, FrozenSet, Iterable, List

from . import errors
from .database import Database
from .models import EDITABLE_STATUSES, OfferItem, Trade
from .repository import TradeRepository
from .state_machine import TradeStateMachine, TransitionPlan, is_expired

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OfferDiff:
    remove: FrozenSet[str]
    add: FrozenSet[str]

    @property
    def is_empty(self) -> bool:
        return not self.remove and not self.add


def normalize_card_ids(card_ids: Iterable[str]) -> FrozenSet[str]:
    """Strip blanks and collapse duplicates; offers record presence only."""

    return frozenset(card_id.strip() for card_id in card_ids if card_id and card_id.strip())


def diff_offer(current: Iterable[str], target: Iterable[str]) -> OfferDiff:
    current_set = frozenset(current)
    target_set = frozenset(target)
    return OfferDiff(remove=current_set - target_set, add=target_set - current_set)


class OfferEditor:
    """Replaces a participant's whole offer in one write."""

    def __init__(
        self,
        db: Database,
        repository: TradeRepository,
        state_machine: TradeStateMachine,
        sweep: Callable[[TransitionPlan], Awaitable[None]],
        clock: Callable[[], datetime],
    ) -> None:
        self._db = db
        self._repository = repository
        self._state_machine = state_machine
        self._sweep = sweep
        self._clock = clock

    async def update_offer(
        self, trade: Trade, actor_id: str, card_ids: Iterable[str]
    ) -> List[OfferItem]:
        if not trade.is_participant(actor_id):
            raise errors.unauthorized()
        if trade.status not in EDITABLE_STATUSES:
            raise errors.invalid_transition(
                f"Offers cannot change once a trade is {trade.status.value}"
            )

        now = self._clock()
        if is_expired(trade, now):
            await self._sweep(self._state_machine.plan_expiry(trade, now))
            raise errors.expired()

        target = normalize_card_ids(card_ids)
        missing = await self._db.missing_cards(target)
        if missing:
            raise errors.not_found("Some cards do not exist", missing=missing)

        diff = diff_offer(trade.offer_for(actor_id), target)
        applied = await self._repository.replace_offer(
            trade,
            actor_id,
            remove=diff.remove,
            add=diff.add,
            now=now,
            editable=EDITABLE_STATUSES,
        )
        if not applied:
            raise errors.invalid_transition("The trade changed since it was loaded; reload and retry")

        _log.info(
            "Offer for %s on trade %s: +%d -%d",
            actor_id,
            trade.id,
            len(diff.add),
            len(diff.remove),
        )
        kept = [
            item
            for item in trade.items
            if item.user_id == actor_id and item.card_id in target
        ]
        added = [
            OfferItem(trade_id=trade.id, user_id=actor_id, card_id=card_id, created_at=now)
            for card_id in diff.add
        ]
        return sorted(kept + added, key=lambda item: item.card_id)
