"""Trust score computation.

The score is the sum of three bounded components:

* ``x_profile`` (0-45): linked X account signals scaled to 35, plus 10 for a
  verified e-mail address.
* ``behavior`` (0-35): completed trades, success rate, the recent outcome
  window and how long the user has been trading.
* ``review`` (0-20): average rating, review volume and negative reviews.

Every function here is pure. Ages and day counts are computed by the caller,
so the same inputs always produce the same snapshot.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Tuple

from .models import (
    ReviewStats,
    SocialProfile,
    TradeStats,
    TradeStatus,
    TrustComponents,
    TrustGrade,
    TrustScoreSnapshot,
)

X_PROFILE_CAP = 45
X_ACCOUNT_CAP = 35
EMAIL_VERIFIED_POINTS = 10
BEHAVIOR_CAP = 35
REVIEW_CAP = 20

RECENT_WINDOW = 10
MIN_TRADES_FOR_SUCCESS_RATE = 5
MIN_REVIEWS_FOR_AVERAGE = 3

GRADE_THRESHOLDS: Tuple[Tuple[int, TrustGrade], ...] = (
    (80, TrustGrade.S),
    (65, TrustGrade.A),
    (50, TrustGrade.B),
    (35, TrustGrade.C),
    (10, TrustGrade.D),
)


@dataclass(frozen=True)
class ProfileSignals:
    account_age_days: int
    tweet_count: int
    followers_count: int
    has_profile_image: bool
    has_description: bool
    verified: bool
    protected: bool

    @classmethod
    def from_profile(cls, profile: SocialProfile, now: datetime) -> "ProfileSignals":
        age_days = 0
        if profile.account_created_at is not None:
            age_days = max(0, (now - profile.account_created_at).days)
        return cls(
            account_age_days=age_days,
            tweet_count=profile.tweet_count,
            followers_count=profile.followers_count,
            has_profile_image=profile.has_profile_image,
            has_description=profile.has_description,
            verified=profile.verified,
            protected=profile.protected,
        )


@dataclass(frozen=True)
class BehaviorSignals:
    completed_count: int = 0
    canceled_count: int = 0
    disputed_count: int = 0
    recent_outcomes: Tuple[TradeStatus, ...] = ()
    days_since_first_trade: Optional[int] = None

    @classmethod
    def from_stats(
        cls, stats: TradeStats, recent: Sequence[TradeStatus], now: datetime
    ) -> "BehaviorSignals":
        days = None
        if stats.first_trade_at is not None:
            days = max(0, (now - stats.first_trade_at).days)
        return cls(
            completed_count=stats.completed_count,
            canceled_count=stats.canceled_count,
            disputed_count=stats.disputed_count,
            recent_outcomes=tuple(recent[:RECENT_WINDOW]),
            days_since_first_trade=days,
        )

    @property
    def total_count(self) -> int:
        return self.completed_count + self.canceled_count + self.disputed_count


@dataclass(frozen=True)
class ReviewSignals:
    review_count: int = 0
    avg_rating: Optional[float] = None
    negative_count: int = 0

    @classmethod
    def from_stats(cls, stats: ReviewStats) -> "ReviewSignals":
        return cls(
            review_count=stats.review_count,
            avg_rating=stats.avg_rating,
            negative_count=stats.negative_count,
        )


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def x_account_base_score(p: ProfileSignals) -> int:
    """Score an X account on a 0-100 scale."""

    score = 0

    if p.account_age_days >= 365 * 5:
        score += 30
    elif p.account_age_days >= 365 * 2:
        score += 20
    elif p.account_age_days >= 180:
        score += 10
    elif p.account_age_days >= 30:
        score += 5
    else:
        score -= 20

    if p.tweet_count >= 5000:
        score += 25
    elif p.tweet_count >= 1000:
        score += 15
    elif p.tweet_count >= 200:
        score += 5
    elif p.tweet_count == 0:
        score -= 10

    if p.followers_count >= 1000:
        score += 20
    elif p.followers_count >= 200:
        score += 10
    elif p.followers_count >= 50:
        score += 5

    score += 10 if p.has_profile_image else -15
    if p.has_description:
        score += 5
    if p.verified:
        score += 10
    if p.protected:
        score -= 10

    return _clamp(score, 0, 100)


def x_profile_score(profile: Optional[ProfileSignals], email_verified: bool) -> int:
    score = 0
    if profile is not None:
        score += _round_half_up(x_account_base_score(profile) / 100 * X_ACCOUNT_CAP)
    if email_verified:
        score += EMAIL_VERIFIED_POINTS
    return _clamp(score, 0, X_PROFILE_CAP)


def _recent_window_score(outcomes: Sequence[TradeStatus]) -> int:
    window = list(outcomes[:RECENT_WINDOW])
    if not window:
        return 0
    completed = sum(1 for outcome in window if outcome is TradeStatus.COMPLETED)
    disputed = sum(1 for outcome in window if outcome is TradeStatus.DISPUTED)
    share = completed / len(window)
    if share >= 0.9:
        score = 5
    elif share >= 0.7:
        score = 3
    elif share >= 0.5:
        score = 1
    else:
        score = 0
    return max(0, score - 2 * disputed)


def behavior_score(b: BehaviorSignals) -> int:
    score = 0

    if b.completed_count >= 20:
        score += 17
    elif b.completed_count >= 10:
        score += 13
    elif b.completed_count >= 5:
        score += 9
    elif b.completed_count >= 1:
        score += 4

    if b.total_count >= MIN_TRADES_FOR_SUCCESS_RATE:
        success_rate = b.completed_count / b.total_count * 100
        if success_rate >= 90:
            score += 9
        elif success_rate >= 80:
            score += 6
        elif success_rate >= 70:
            score += 3

    score += _recent_window_score(b.recent_outcomes)

    if b.days_since_first_trade is not None:
        if b.days_since_first_trade >= 180:
            score += 4
        elif b.days_since_first_trade >= 30:
            score += 2

    return _clamp(score, 0, BEHAVIOR_CAP)


def review_score(r: ReviewSignals) -> int:
    score = 0

    if r.review_count >= MIN_REVIEWS_FOR_AVERAGE and r.avg_rating is not None:
        if r.avg_rating >= 4.5:
            score += 12
        elif r.avg_rating >= 4.0:
            score += 9
        elif r.avg_rating >= 3.5:
            score += 6
        elif r.avg_rating >= 3.0:
            score += 3

    if r.review_count >= 10:
        score += 4
    elif r.review_count >= 5:
        score += 2

    if r.negative_count >= 2:
        score -= 4
    elif r.negative_count >= 1:
        score -= 2

    return _clamp(score, 0, REVIEW_CAP)


def grade_for(score: int) -> TrustGrade:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return TrustGrade.U


def compute_trust_score(
    user_id: str,
    *,
    profile: Optional[ProfileSignals],
    email_verified: bool,
    behavior: BehaviorSignals,
    review: ReviewSignals,
    updated_at: Optional[datetime] = None,
) -> TrustScoreSnapshot:
    components = TrustComponents(
        x_profile=x_profile_score(profile, email_verified),
        behavior=behavior_score(behavior),
        review=review_score(review),
    )
    total = _clamp(components.x_profile + components.behavior + components.review, 0, 100)
    return TrustScoreSnapshot(
        user_id=user_id,
        trust_score=total,
        trust_grade=grade_for(total),
        components=components,
        updated_at=updated_at,
    )


def meets_grade(grade: Optional[TrustGrade], minimum: Optional[TrustGrade]) -> bool:
    """True when ``grade`` is at least ``minimum``; an unknown grade counts as U."""

    if minimum is None:
        return True
    return (grade or TrustGrade.U).rank >= minimum.rank
