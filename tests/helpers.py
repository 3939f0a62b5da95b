from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from card_trader.database import Database
from card_trader.notifications import Notifier
from card_trader.stats import StatsAggregator
from card_trader.trades import TradeService
from card_trader.trust_worker import TrustService

CARDS = [
    ("base-004", "Charizard"),
    ("base-002", "Blastoise"),
    ("base-015", "Venusaur"),
    ("jungle-012", "Snorlax"),
    ("fossil-005", "Gengar"),
]


class Clock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.trade_events = []
        self.reviews = []

    async def trade_state_changed(self, trade, from_status, to_status, actor_id) -> None:
        self.trade_events.append((trade.id, from_status, to_status, actor_id))

    async def review_received(self, review) -> None:
        self.reviews.append(review)


class FailingNotifier(Notifier):
    async def trade_state_changed(self, trade, from_status, to_status, actor_id) -> None:
        raise RuntimeError("mail server down")

    async def review_received(self, review) -> None:
        raise RuntimeError("mail server down")


async def init_db(tmp_path: Path) -> Database:
    db = Database(tmp_path / "test.db")
    await db.setup()
    for card_id, name in CARDS:
        await db.add_card(card_id, name)
    return db


async def init_services(
    tmp_path: Path,
    *,
    clock: Optional[Clock] = None,
    notifier: Optional[Notifier] = None,
) -> TradeService:
    db = await init_db(tmp_path)
    clock = clock or Clock()
    stats = StatsAggregator(db)
    trust = TrustService(db, stats, clock=clock)
    return TradeService(db, stats=stats, trust=trust, notifier=notifier, clock=clock)
