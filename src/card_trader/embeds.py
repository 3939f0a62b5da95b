"""Embed builder utilities for consistent formatting."""
from __future__ import annotations

from typing import Iterable, Optional

import discord

from .errors import ErrorCode, TradeError
from .models import (
    Match,
    OfferedCard,
    TradeDetail,
    TradeStatus,
    TrustGrade,
    TrustScoreSnapshot,
    UserStats,
    UserTradeListItem,
)

FOOTER_TEXT = "Card Trader"

STATUS_LABELS = {
    TradeStatus.DRAFT: "📝 Draft",
    TradeStatus.PROPOSED: "📨 Proposed",
    TradeStatus.AGREED: "🤝 Agreed",
    TradeStatus.COMPLETED: "✅ Completed",
    TradeStatus.CANCELED: "🚫 Canceled",
    TradeStatus.DISPUTED: "⚠️ Disputed",
}

GRADE_COLORS = {
    TrustGrade.S: 0xFFD700,
    TrustGrade.A: 0x57F287,
    TrustGrade.B: 0x3BA55C,
    TrustGrade.C: 0xFEE75C,
    TrustGrade.D: 0xED4245,
    TrustGrade.U: 0x2B2D31,
}


def info_embed(title: str, description: str | None = None, *, color: int = 0x2b2d31) -> discord.Embed:
    embed = discord.Embed(title=title, description=description or "", color=color)
    embed.set_footer(text=FOOTER_TEXT)
    return embed


ERROR_TITLES = {
    ErrorCode.UNAUTHORIZED: "🚫 Not allowed",
    ErrorCode.INVALID_TRANSITION: "⚠️ Not possible right now",
    ErrorCode.EXPIRED: "⌛ Trade expired",
    ErrorCode.NOT_FOUND: "🔍 Not found",
    ErrorCode.VALIDATION: "✏️ Check your input",
    ErrorCode.CONFLICT: "🔁 Already done",
    ErrorCode.QUEUE_FULL: "⏳ Busy",
}


def error_embed(exc: TradeError) -> discord.Embed:
    description = exc.message
    missing = exc.details.get("missing")
    if missing:
        description += "\n" + ", ".join(f"`{card_id}`" for card_id in missing)
    return info_embed(ERROR_TITLES.get(exc.code, "⚠️ Something went wrong"), description, color=0xED4245)


def status_label(status: TradeStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def grade_label(grade: Optional[TrustGrade]) -> str:
    return f"Grade {grade.value}" if grade else "Unrated"


def format_offer(cards: Iterable[OfferedCard]) -> str:
    return "\n".join(f"**{card.card_name}** (`{card.card_id}`)" for card in cards) or "Nothing offered yet."


def format_trade_list(entries: Iterable[UserTradeListItem]) -> str:
    lines = []
    for entry in entries:
        partner = f"<@{entry.partner_id}>" if entry.partner_id else "open seat"
        lines.append(f"`{entry.room_slug}` {status_label(entry.status)} with {partner}")
    return "\n".join(lines) or "No trades yet."


def trade_embed(detail: TradeDetail) -> discord.Embed:
    trade = detail.trade
    embed = info_embed(f"Trade {trade.room_slug}", status_label(trade.status))
    embed.add_field(
        name=f"{detail.initiator.display_name} offers",
        value=format_offer(detail.initiator_items),
        inline=True,
    )
    responder_name = detail.responder.display_name if detail.responder else "Open seat"
    embed.add_field(
        name=f"{responder_name} offers",
        value=format_offer(detail.responder_items),
        inline=True,
    )
    deadline = trade.agreed_expired_at if trade.status is TradeStatus.AGREED else trade.proposed_expired_at
    if deadline and trade.status in (TradeStatus.PROPOSED, TradeStatus.AGREED):
        embed.add_field(
            name="Expires", value=discord.utils.format_dt(deadline, "R"), inline=False
        )
    if trade.has_open_dispute:
        embed.add_field(name="Dispute open", value=trade.dispute_reason or "No reason given", inline=False)
    return embed


def rating_summary(avg_rating: Optional[float], count: int) -> str:
    if count == 0 or avg_rating is None:
        return "No reviews yet"
    return f"⭐ {avg_rating:.2f} average from {count} reviews"


def stats_summary(stats: UserStats) -> str:
    trade = stats.trade
    return (
        f"✅ {trade.completed_count} completed • 🚫 {trade.canceled_count} canceled"
        f" • ⚠️ {trade.disputed_count} disputed\n"
        f"{rating_summary(stats.review.avg_rating, stats.review.review_count)}"
    )


def trust_embed(snapshot: TrustScoreSnapshot, stats: UserStats | None = None) -> discord.Embed:
    embed = info_embed(
        f"Trust {snapshot.trust_grade.value} • {snapshot.trust_score}/100",
        color=GRADE_COLORS[snapshot.trust_grade],
    )
    components = snapshot.components
    embed.add_field(name="Profile", value=f"{components.x_profile}/45", inline=True)
    embed.add_field(name="Behavior", value=f"{components.behavior}/35", inline=True)
    embed.add_field(name="Reviews", value=f"{components.review}/20", inline=True)
    if stats is not None:
        embed.add_field(name="History", value=stats_summary(stats), inline=False)
    return embed


def format_matches(matches: Iterable[Match]) -> str:
    lines = []
    for match in matches:
        wants = ", ".join(card.card_name for card in match.they_have_i_want) or "nothing"
        gives = ", ".join(card.card_name for card in match.i_have_they_want) or "nothing"
        lines.append(
            f"<@{match.user_id}> ({grade_label(match.trust_grade)}) has {wants}; wants {gives}"
        )
    return "\n".join(lines) or "No matching traders yet."
