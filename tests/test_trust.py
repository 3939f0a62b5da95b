from datetime import datetime, timedelta, timezone

import pytest

from card_trader.models import SocialProfile, TradeStats, TradeStatus, TrustGrade
from card_trader.trust import (
    BehaviorSignals,
    ProfileSignals,
    ReviewSignals,
    behavior_score,
    compute_trust_score,
    grade_for,
    meets_grade,
    review_score,
    x_account_base_score,
    x_profile_score,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

STRONG_PROFILE = ProfileSignals(
    account_age_days=365 * 6,
    tweet_count=8000,
    followers_count=2500,
    has_profile_image=True,
    has_description=True,
    verified=True,
    protected=False,
)

EMPTY_PROFILE = ProfileSignals(
    account_age_days=3,
    tweet_count=0,
    followers_count=0,
    has_profile_image=False,
    has_description=False,
    verified=False,
    protected=True,
)


def test_x_profile_component_bounds():
    assert x_account_base_score(STRONG_PROFILE) == 100
    assert x_account_base_score(EMPTY_PROFILE) == 0
    assert x_profile_score(STRONG_PROFILE, email_verified=True) == 45
    assert x_profile_score(STRONG_PROFILE, email_verified=False) == 35
    assert x_profile_score(EMPTY_PROFILE, email_verified=True) == 10
    assert x_profile_score(None, email_verified=False) == 0


def test_x_profile_scaling_rounds_half_up():
    profile = ProfileSignals(
        account_age_days=200,
        tweet_count=300,
        followers_count=60,
        has_profile_image=True,
        has_description=False,
        verified=False,
        protected=False,
    )

    assert x_account_base_score(profile) == 30
    assert x_profile_score(profile, email_verified=False) == 11


def test_profile_signals_from_stored_profile():
    profile = SocialProfile(
        user_id="alice",
        username="alice_cards",
        account_created_at=NOW - timedelta(days=400),
        followers_count=12,
        tweet_count=40,
        has_profile_image=True,
    )

    signals = ProfileSignals.from_profile(profile, NOW)

    assert signals.account_age_days == 400
    assert signals.followers_count == 12
    assert signals.has_profile_image


def test_behavior_score_for_veteran_trader():
    signals = BehaviorSignals(
        completed_count=25,
        recent_outcomes=(TradeStatus.COMPLETED,) * 10,
        days_since_first_trade=365,
    )

    assert behavior_score(signals) == 35


def test_behavior_score_mixed_record():
    signals = BehaviorSignals(
        completed_count=4,
        canceled_count=1,
        recent_outcomes=(TradeStatus.COMPLETED,) * 4 + (TradeStatus.CANCELED,),
        days_since_first_trade=40,
    )

    assert behavior_score(signals) == 4 + 6 + 3 + 2


def test_success_rate_needs_enough_trades():
    signals = BehaviorSignals(completed_count=4, recent_outcomes=(TradeStatus.COMPLETED,) * 4)

    assert behavior_score(signals) == 4 + 5


def test_disputes_drag_down_recent_window():
    signals = BehaviorSignals(
        completed_count=6,
        disputed_count=4,
        recent_outcomes=(TradeStatus.COMPLETED,) * 6 + (TradeStatus.DISPUTED,) * 4,
    )

    assert behavior_score(signals) == 9


def test_behavior_signals_from_stats():
    stats = TradeStats(
        user_id="alice",
        completed_count=3,
        canceled_count=1,
        first_trade_at=NOW - timedelta(days=31),
    )
    recent = [TradeStatus.COMPLETED] * 12

    signals = BehaviorSignals.from_stats(stats, recent, NOW)

    assert signals.days_since_first_trade == 31
    assert len(signals.recent_outcomes) == 10
    assert signals.total_count == 4
    assert BehaviorSignals.from_stats(TradeStats(user_id="new"), [], NOW).days_since_first_trade is None


@pytest.mark.parametrize(
    "signals, expected",
    [
        (ReviewSignals(review_count=3, avg_rating=4.6), 12),
        (ReviewSignals(review_count=10, avg_rating=4.6), 16),
        (ReviewSignals(review_count=5, avg_rating=3.2, negative_count=2), 1),
        (ReviewSignals(review_count=2, avg_rating=5.0), 0),
        (ReviewSignals(review_count=4, avg_rating=2.0, negative_count=3), 0),
        (ReviewSignals(), 0),
    ],
)
def test_review_score(signals, expected):
    assert review_score(signals) == expected


@pytest.mark.parametrize(
    "score, grade",
    [
        (100, TrustGrade.S),
        (80, TrustGrade.S),
        (79, TrustGrade.A),
        (65, TrustGrade.A),
        (64, TrustGrade.B),
        (50, TrustGrade.B),
        (49, TrustGrade.C),
        (35, TrustGrade.C),
        (34, TrustGrade.D),
        (10, TrustGrade.D),
        (9, TrustGrade.U),
        (0, TrustGrade.U),
    ],
)
def test_grade_thresholds(score, grade):
    assert grade_for(score) is grade


def test_compute_trust_score_sums_components():
    snapshot = compute_trust_score(
        "alice",
        profile=STRONG_PROFILE,
        email_verified=True,
        behavior=BehaviorSignals(
            completed_count=25,
            recent_outcomes=(TradeStatus.COMPLETED,) * 10,
            days_since_first_trade=365,
        ),
        review=ReviewSignals(review_count=10, avg_rating=4.6),
        updated_at=NOW,
    )

    assert snapshot.components.x_profile == 45
    assert snapshot.components.behavior == 35
    assert snapshot.components.review == 16
    assert snapshot.trust_score == 96
    assert snapshot.trust_grade is TrustGrade.S
    assert snapshot.to_dict() == {
        "userId": "alice",
        "trustScore": 96,
        "trustGrade": "S",
        "componentScores": {"xProfile": 45, "behavior": 35, "review": 16},
        "updatedAt": "2024-06-01T00:00:00+00:00",
    }


def test_new_user_is_unrated():
    snapshot = compute_trust_score(
        "newbie",
        profile=None,
        email_verified=False,
        behavior=BehaviorSignals(),
        review=ReviewSignals(),
    )

    assert snapshot.trust_score == 0
    assert snapshot.trust_grade is TrustGrade.U


def test_same_inputs_same_snapshot():
    kwargs = dict(
        profile=EMPTY_PROFILE,
        email_verified=True,
        behavior=BehaviorSignals(completed_count=2),
        review=ReviewSignals(review_count=1, avg_rating=5.0),
        updated_at=NOW,
    )

    assert compute_trust_score("alice", **kwargs) == compute_trust_score("alice", **kwargs)


def test_meets_grade_treats_missing_as_unrated():
    assert meets_grade(None, None)
    assert meets_grade(None, TrustGrade.U)
    assert not meets_grade(None, TrustGrade.D)
    assert meets_grade(TrustGrade.A, TrustGrade.B)
    assert not meets_grade(TrustGrade.C, TrustGrade.B)
