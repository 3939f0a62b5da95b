"""Per-user trade and review aggregates."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import aiosqlite

from .database import Database
from .models import (
    ReviewStats,
    Trade,
    TradeStats,
    TradeStatus,
    UserStats,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

_log = logging.getLogger(__name__)

COUNTER_COLUMNS = {
    TradeStatus.COMPLETED: "completed_count",
    TradeStatus.CANCELED: "canceled_count",
    TradeStatus.DISPUTED: "disputed_count",
}

RECENT_WINDOW = 10
POSITIVE_MIN_RATING = 4
NEGATIVE_MAX_RATING = 2


def counts_as_outcome(from_status: TradeStatus, to_status: TradeStatus) -> bool:
    """Whether a status change is recorded in the outcome counters.

    Completion always counts. Cancellation and disputes only count once the
    trade had been agreed.
    """

    if to_status is TradeStatus.COMPLETED:
        return True
    if to_status in (TradeStatus.CANCELED, TradeStatus.DISPUTED):
        return from_status is TradeStatus.AGREED
    return False


@dataclass(frozen=True)
class TrustInputs:
    trade: TradeStats
    review: ReviewStats
    recent_outcomes: List[TradeStatus]


class StatsAggregator:
    """Atomic counters and running review means.

    Counters are only ever changed with in-place ``x = x + 1`` statements so
    concurrent trade completions cannot lose updates.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def record_trade_outcome(
        self, trade: Trade, outcome: TradeStatus, at: Optional[datetime] = None
    ) -> None:
        column = COUNTER_COLUMNS[outcome]
        stamp = format_timestamp(at or utcnow())
        async with self._db.transaction() as conn:
            for user_id in trade.participants:
                await conn.execute(
                    f"INSERT INTO user_trade_stats(user_id, {column}, first_trade_at, last_trade_at)\n"
                    "VALUES (?, 1, ?, ?)\n"
                    f"ON CONFLICT(user_id) DO UPDATE SET {column} = {column} + 1,\n"
                    "first_trade_at = COALESCE(user_trade_stats.first_trade_at, excluded.first_trade_at),\n"
                    "last_trade_at = excluded.last_trade_at",
                    (user_id, stamp, stamp),
                )
                await conn.execute(
                    "INSERT INTO user_trade_outcomes(user_id, trade_id, outcome, created_at)\n"
                    "VALUES (?, ?, ?, ?)\n"
                    "ON CONFLICT(user_id, trade_id) DO UPDATE SET outcome = excluded.outcome,\n"
                    "created_at = excluded.created_at",
                    (user_id, trade.id, outcome.value, stamp),
                )
        _log.info("Recorded %s outcome for trade %s", outcome.value, trade.id)

    async def revert_cancellation(self, trade: Trade) -> None:
        """Undo a counted cancellation after the trade was restored."""

        async with self._db.transaction() as conn:
            for user_id in trade.participants:
                cursor = await conn.execute(
                    "DELETE FROM user_trade_outcomes WHERE user_id = ? AND trade_id = ? AND outcome = ?",
                    (user_id, trade.id, TradeStatus.CANCELED.value),
                )
                if cursor.rowcount == 0:
                    continue
                await conn.execute(
                    "UPDATE user_trade_stats SET canceled_count = MAX(canceled_count - 1, 0)\n"
                    "WHERE user_id = ?",
                    (user_id,),
                )

    async def record_review(
        self, user_id: str, rating: int, conn: Optional[aiosqlite.Connection] = None
    ) -> None:
        """Fold a rating into the running mean with ``avg + (r - avg) / n``."""

        if conn is None:
            async with self._db.transaction() as own:
                await _apply_review(own, user_id, rating)
        else:
            await _apply_review(conn, user_id, rating)

    async def get_trade_stats(self, user_id: str) -> TradeStats:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT completed_count, canceled_count, disputed_count, first_trade_at, last_trade_at\n"
                "FROM user_trade_stats WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return TradeStats(user_id=user_id)
        return TradeStats(
            user_id=user_id,
            completed_count=row[0],
            canceled_count=row[1],
            disputed_count=row[2],
            first_trade_at=parse_timestamp(row[3]),
            last_trade_at=parse_timestamp(row[4]),
        )

    async def get_review_stats(self, user_id: str) -> ReviewStats:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT review_count, avg_rating, positive_count, negative_count\n"
                "FROM user_review_stats WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return ReviewStats(user_id=user_id)
        return ReviewStats(
            user_id=user_id,
            review_count=row[0],
            avg_rating=row[1],
            positive_count=row[2],
            negative_count=row[3],
        )

    async def get_stats(self, user_id: str) -> UserStats:
        return UserStats(
            trade=await self.get_trade_stats(user_id),
            review=await self.get_review_stats(user_id),
        )

    async def recent_outcomes(self, user_id: str, limit: int = RECENT_WINDOW) -> List[TradeStatus]:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT outcome FROM user_trade_outcomes WHERE user_id = ?\n"
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            )
            rows = await cursor.fetchall()
        return [TradeStatus(row[0]) for row in rows]

    async def trust_inputs(self, user_id: str) -> TrustInputs:
        """Everything the trust engine reads about a user's trading record."""

        stats = await self.get_stats(user_id)
        return TrustInputs(
            trade=stats.trade,
            review=stats.review,
            recent_outcomes=await self.recent_outcomes(user_id),
        )

    async def rebuild_trade_stats(self, user_id: str) -> TradeStats:
        """Recount a user's trade counters from the outcome log."""

        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT outcome, COUNT(*), MIN(created_at), MAX(created_at)\n"
                "FROM user_trade_outcomes WHERE user_id = ? GROUP BY outcome",
                (user_id,),
            )
            rows = await cursor.fetchall()
            counts = {status: 0 for status in COUNTER_COLUMNS}
            first: Optional[str] = None
            last: Optional[str] = None
            for outcome, count, earliest, latest in rows:
                counts[TradeStatus(outcome)] = count
                first = earliest if first is None else min(first, earliest)
                last = latest if last is None else max(last, latest)
            await conn.execute(
                "INSERT INTO user_trade_stats(user_id, completed_count, canceled_count, disputed_count,\n"
                "first_trade_at, last_trade_at) VALUES (?, ?, ?, ?, ?, ?)\n"
                "ON CONFLICT(user_id) DO UPDATE SET completed_count = excluded.completed_count,\n"
                "canceled_count = excluded.canceled_count, disputed_count = excluded.disputed_count,\n"
                "first_trade_at = excluded.first_trade_at, last_trade_at = excluded.last_trade_at",
                (
                    user_id,
                    counts[TradeStatus.COMPLETED],
                    counts[TradeStatus.CANCELED],
                    counts[TradeStatus.DISPUTED],
                    first,
                    last,
                ),
            )
        _log.info("Rebuilt trade stats for user %s", user_id)
        return await self.get_trade_stats(user_id)


async def _apply_review(conn: aiosqlite.Connection, user_id: str, rating: int) -> None:
    positive = 1 if rating >= POSITIVE_MIN_RATING else 0
    negative = 1 if rating <= NEGATIVE_MAX_RATING else 0
    await conn.execute(
        "INSERT INTO user_review_stats(user_id, review_count, avg_rating, positive_count, negative_count)\n"
        "VALUES (?, 1, ?, ?, ?)\n"
        "ON CONFLICT(user_id) DO UPDATE SET\n"
        "avg_rating = COALESCE(user_review_stats.avg_rating, 0.0)\n"
        "    + (excluded.avg_rating - COALESCE(user_review_stats.avg_rating, 0.0))\n"
        "    / (user_review_stats.review_count + 1),\n"
        "review_count = user_review_stats.review_count + 1,\n"
        "positive_count = user_review_stats.positive_count + excluded.positive_count,\n"
        "negative_count = user_review_stats.negative_count + excluded.negative_count",
        (user_id, float(rating), positive, negative),
    )
