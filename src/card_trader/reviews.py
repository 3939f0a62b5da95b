"""Reviews left by trade participants after completion."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

import aiosqlite

from . import errors
from .database import Database
from .errors import ErrorCode, TradeError
from .models import PendingReview, Review, TradeStatus, format_timestamp, parse_timestamp, utcnow
from .notifications import Notifier, NullNotifier
from .repository import TradeRepository
from .stats import StatsAggregator
from .trust_worker import TrustService

_log = logging.getLogger(__name__)

REVIEW_COLUMNS = (
    "id, trade_id, reviewer_user_id, reviewee_user_id, rating, comment, is_public, created_at"
)
COMMENT_CHAR_LIMIT = 500


class ReviewService:
    def __init__(
        self,
        db: Database,
        *,
        stats: Optional[StatsAggregator] = None,
        trust: Optional[TrustService] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._trades = TradeRepository(db)
        self.stats = stats or StatsAggregator(db)
        self.trust = trust
        self.notifier = notifier or NullNotifier()
        self._clock = clock

    async def create_review(
        self,
        trade_id: str,
        reviewer_id: str,
        rating: int,
        comment: Optional[str] = None,
        is_public: bool = True,
    ) -> Review:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise errors.validation("Rating must be between 1 and 5")
        comment = (comment or "").strip() or None
        if comment is not None and len(comment) > COMMENT_CHAR_LIMIT:
            raise errors.validation(f"Comments are limited to {COMMENT_CHAR_LIMIT} characters")

        trade = await self._trades.get(trade_id)
        if trade is None:
            raise errors.not_found("Trade not found", trade_id=trade_id)
        if not trade.is_participant(reviewer_id):
            raise errors.unauthorized()
        if trade.status is not TradeStatus.COMPLETED:
            raise errors.invalid_transition("Only completed trades can be reviewed")
        reviewee_id = trade.partner_of(reviewer_id)
        if reviewee_id is None:
            raise errors.not_found("Trade partner not found", trade_id=trade_id)

        review = Review(
            id=uuid.uuid4().hex,
            trade_id=trade.id,
            reviewer_user_id=reviewer_id,
            reviewee_user_id=reviewee_id,
            rating=rating,
            comment=comment,
            is_public=is_public,
            created_at=self._clock(),
        )
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    f"INSERT INTO trade_reviews({REVIEW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        review.id,
                        review.trade_id,
                        review.reviewer_user_id,
                        review.reviewee_user_id,
                        review.rating,
                        review.comment,
                        int(review.is_public),
                        format_timestamp(review.created_at),
                    ),
                )
                await self.stats.record_review(reviewee_id, rating, conn)
        except aiosqlite.IntegrityError as exc:
            raise TradeError(ErrorCode.CONFLICT, "You have already reviewed this trade") from exc

        _log.info("Review %s left on trade %s by %s", review.id, trade.id, reviewer_id)
        if self.trust is not None:
            try:
                await self.trust.request_recalculation(reviewee_id)
            except TradeError as exc:
                _log.warning("Could not queue trust recalculation for %s: %s", reviewee_id, exc.message)
            except Exception:
                _log.exception("Failed to queue trust recalculation for %s", reviewee_id)
        try:
            await self.notifier.review_received(review)
        except Exception:
            _log.exception("Failed to send review notification for %s", review.id)
        return review

    async def has_reviewed(self, trade_id: str, user_id: str) -> bool:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT 1 FROM trade_reviews WHERE trade_id = ? AND reviewer_user_id = ?",
                (trade_id, user_id),
            )
            return await cursor.fetchone() is not None

    async def list_trade_reviews(self, trade_id: str) -> List[Review]:
        async with self._db.connect() as db:
            cursor = await db.execute(
                f"SELECT {REVIEW_COLUMNS} FROM trade_reviews WHERE trade_id = ? ORDER BY created_at",
                (trade_id,),
            )
            rows = await cursor.fetchall()
        return [_review_from_row(row) for row in rows]

    async def list_user_reviews(
        self,
        user_id: str,
        *,
        only_public: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Review]:
        query = f"SELECT {REVIEW_COLUMNS} FROM trade_reviews WHERE reviewee_user_id = ?"
        if only_public:
            query += " AND is_public = 1"
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        async with self._db.connect() as db:
            cursor = await db.execute(query, (user_id, limit, offset))
            rows = await cursor.fetchall()
        return [_review_from_row(row) for row in rows]

    async def pending_reviews(self, user_id: str) -> List[PendingReview]:
        """Completed trades the user took part in but has not reviewed yet."""

        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT t.id, t.room_slug,\n"
                "CASE WHEN t.initiator_user_id = ? THEN t.responder_user_id ELSE t.initiator_user_id END,\n"
                "t.updated_at\n"
                "FROM trades t\n"
                "WHERE t.status = 'completed' AND (t.initiator_user_id = ? OR t.responder_user_id = ?)\n"
                "AND NOT EXISTS (SELECT 1 FROM trade_reviews r\n"
                "    WHERE r.trade_id = t.id AND r.reviewer_user_id = ?)\n"
                "ORDER BY t.updated_at DESC",
                (user_id, user_id, user_id, user_id),
            )
            rows = await cursor.fetchall()
        return [
            PendingReview(
                trade_id=row[0],
                room_slug=row[1],
                other_user_id=row[2],
                completed_at=parse_timestamp(row[3]),
            )
            for row in rows
        ]


def _review_from_row(row) -> Review:
    return Review(
        id=row[0],
        trade_id=row[1],
        reviewer_user_id=row[2],
        reviewee_user_id=row[3],
        rating=row[4],
        comment=row[5],
        is_public=bool(row[6]),
        created_at=parse_timestamp(row[7]),
    )
