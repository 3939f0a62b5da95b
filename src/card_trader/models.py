"""Domain records passed between the storage layer and the services."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TradeStatus(str, Enum):
    DRAFT = "draft"
    PROPOSED = "proposed"
    AGREED = "agreed"
    COMPLETED = "completed"
    CANCELED = "canceled"
    DISPUTED = "disputed"


#: Statuses whose offers can still change.
EDITABLE_STATUSES = frozenset({TradeStatus.DRAFT, TradeStatus.PROPOSED})
#: Statuses shown as "in progress" in trade listings.
ACTIVE_STATUSES = frozenset({TradeStatus.DRAFT, TradeStatus.PROPOSED, TradeStatus.AGREED})
#: Statuses with no outgoing transition.
TERMINAL_STATUSES = frozenset({TradeStatus.COMPLETED, TradeStatus.DISPUTED})


class TrustGrade(str, Enum):
    S = "S"
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    U = "U"

    @property
    def rank(self) -> int:
        return _GRADE_RANK[self]


_GRADE_RANK = {
    TrustGrade.S: 5,
    TrustGrade.A: 4,
    TrustGrade.B: 3,
    TrustGrade.C: 2,
    TrustGrade.D: 1,
    TrustGrade.U: 0,
}


class TrustJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class User:
    user_id: str
    display_name: str
    email_verified: bool = False
    trust_score: Optional[int] = None
    trust_grade: Optional[TrustGrade] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Card:
    card_id: str
    name: str
    set_name: str = ""


@dataclass(frozen=True)
class OfferItem:
    trade_id: str
    user_id: str
    card_id: str
    created_at: Optional[datetime] = None


@dataclass
class Trade:
    """A trade aggregate: the trade row plus both participants' offer items."""

    id: str
    room_slug: str
    initiator_user_id: str
    responder_user_id: Optional[str]
    status: TradeStatus
    created_at: datetime
    updated_at: datetime
    proposed_expired_at: Optional[datetime] = None
    agreed_expired_at: Optional[datetime] = None
    previous_status: Optional[TradeStatus] = None
    dispute_opened_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    version: int = 0
    items: List[OfferItem] = field(default_factory=list)

    @property
    def participants(self) -> tuple[str, ...]:
        if self.responder_user_id is None:
            return (self.initiator_user_id,)
        return (self.initiator_user_id, self.responder_user_id)

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def partner_of(self, user_id: str) -> Optional[str]:
        if user_id == self.initiator_user_id:
            return self.responder_user_id
        if user_id == self.responder_user_id:
            return self.initiator_user_id
        return None

    def offer_for(self, user_id: str) -> List[str]:
        return sorted(item.card_id for item in self.items if item.user_id == user_id)

    @property
    def has_open_dispute(self) -> bool:
        return self.dispute_opened_at is not None


@dataclass(frozen=True)
class TradeHistoryEntry:
    trade_id: str
    from_status: Optional[TradeStatus]
    to_status: TradeStatus
    changed_by_user_id: Optional[str]
    reason: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class Participant:
    user_id: str
    display_name: str
    trust_grade: Optional[TrustGrade]


@dataclass(frozen=True)
class OfferedCard:
    card_id: str
    card_name: str
    offered_by_user_id: str


@dataclass
class TradeDetail:
    trade: Trade
    initiator: Participant
    responder: Optional[Participant]
    initiator_items: List[OfferedCard]
    responder_items: List[OfferedCard]
    history: List[TradeHistoryEntry]


@dataclass(frozen=True)
class UserTradeListItem:
    trade_id: str
    room_slug: str
    status: TradeStatus
    partner_id: Optional[str]
    partner_name: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TradeStats:
    user_id: str
    completed_count: int = 0
    canceled_count: int = 0
    disputed_count: int = 0
    first_trade_at: Optional[datetime] = None
    last_trade_at: Optional[datetime] = None

    @property
    def total_count(self) -> int:
        return self.completed_count + self.canceled_count + self.disputed_count

    @property
    def success_rate(self) -> float:
        """Completed share of terminal trades, as a percentage."""
        if self.total_count == 0:
            return 0.0
        return self.completed_count / self.total_count * 100


@dataclass(frozen=True)
class ReviewStats:
    user_id: str
    review_count: int = 0
    avg_rating: Optional[float] = None
    positive_count: int = 0
    negative_count: int = 0


@dataclass(frozen=True)
class UserStats:
    trade: TradeStats
    review: ReviewStats


@dataclass(frozen=True)
class Review:
    id: str
    trade_id: str
    reviewer_user_id: str
    reviewee_user_id: str
    rating: int
    comment: Optional[str]
    is_public: bool
    created_at: datetime


@dataclass(frozen=True)
class PendingReview:
    trade_id: str
    room_slug: str
    other_user_id: str
    completed_at: datetime


@dataclass(frozen=True)
class SocialProfile:
    """Public X (Twitter) profile signals linked to a user."""

    user_id: str
    username: str
    account_created_at: Optional[datetime] = None
    followers_count: int = 0
    tweet_count: int = 0
    has_profile_image: bool = False
    has_description: bool = False
    verified: bool = False
    protected: bool = False
    fetched_at: Optional[datetime] = None


@dataclass(frozen=True)
class TrustComponents:
    x_profile: int
    behavior: int
    review: int


@dataclass(frozen=True)
class TrustScoreSnapshot:
    user_id: str
    trust_score: int
    trust_grade: TrustGrade
    components: TrustComponents
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "trustScore": self.trust_score,
            "trustGrade": self.trust_grade.value,
            "componentScores": {
                "xProfile": self.components.x_profile,
                "behavior": self.components.behavior,
                "review": self.components.review,
            },
            "updatedAt": format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class TrustJob:
    id: str
    user_id: str
    status: TrustJobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class MatchCard:
    card_id: str
    card_name: str


@dataclass
class Match:
    user_id: str
    display_name: str
    trust_grade: TrustGrade
    trust_score: Optional[int]
    they_have_i_want: List[MatchCard]
    i_have_they_want: List[MatchCard]

    @property
    def match_score(self) -> int:
        return len(self.they_have_i_want) + len(self.i_have_they_want)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["trust_grade"] = self.trust_grade.value
        payload["match_score"] = self.match_score
        return payload
