from datetime import datetime, timedelta, timezone

import discord

from card_trader import embeds
from card_trader.errors import ErrorCode, TradeError, not_found
from card_trader.models import (
    Match,
    MatchCard,
    OfferedCard,
    Participant,
    ReviewStats,
    Trade,
    TradeDetail,
    TradeStats,
    TradeStatus,
    TrustComponents,
    TrustGrade,
    TrustScoreSnapshot,
    UserStats,
    UserTradeListItem,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_format_helpers_render_text():
    offer = embeds.format_offer([OfferedCard("base-004", "Charizard", "alice")])
    assert "Charizard" in offer
    assert "base-004" in offer
    assert embeds.format_offer([]) == "Nothing offered yet."

    listing = embeds.format_trade_list(
        [UserTradeListItem("t1", "room-1", TradeStatus.AGREED, "2", "Bob", NOW, NOW)]
    )
    assert "room-1" in listing
    assert "<@2>" in listing

    summary = embeds.rating_summary(4.5, 10)
    assert "4.50" in summary
    assert embeds.rating_summary(None, 0) == "No reviews yet"


def test_info_embed_sets_footer():
    embed = embeds.info_embed("Title", "Body")
    assert isinstance(embed, discord.Embed)
    assert embed.footer.text.startswith("Card Trader")


def test_error_embed_lists_missing_cards():
    embed = embeds.error_embed(not_found("Some cards do not exist", missing=["promo-1", "promo-2"]))

    assert embed.title == embeds.ERROR_TITLES[ErrorCode.NOT_FOUND]
    assert "`promo-1`" in embed.description
    assert "`promo-2`" in embed.description

    plain = embeds.error_embed(TradeError(ErrorCode.EXPIRED, "This trade has expired"))
    assert plain.description == "This trade has expired"


def test_trade_embed_shows_both_offers_and_deadline():
    trade = Trade(
        id="t1",
        room_slug="room-1",
        initiator_user_id="1",
        responder_user_id=None,
        status=TradeStatus.PROPOSED,
        created_at=NOW,
        updated_at=NOW,
        proposed_expired_at=NOW + timedelta(hours=72),
    )
    detail = TradeDetail(
        trade=trade,
        initiator=Participant("1", "Alice", TrustGrade.B),
        responder=None,
        initiator_items=[OfferedCard("base-004", "Charizard", "1")],
        responder_items=[],
        history=[],
    )

    embed = embeds.trade_embed(detail)

    names = [field.name for field in embed.fields]
    assert names == ["Alice offers", "Open seat offers", "Expires"]
    assert "Charizard" in embed.fields[0].value
    assert embed.description == embeds.status_label(TradeStatus.PROPOSED)


def test_trust_embed_shows_components_and_history():
    snapshot = TrustScoreSnapshot(
        user_id="1",
        trust_score=66,
        trust_grade=TrustGrade.A,
        components=TrustComponents(x_profile=30, behavior=24, review=12),
        updated_at=NOW,
    )
    stats = UserStats(
        trade=TradeStats(user_id="1", completed_count=12, canceled_count=1),
        review=ReviewStats(user_id="1", review_count=4, avg_rating=4.75),
    )

    embed = embeds.trust_embed(snapshot, stats)

    assert "66/100" in embed.title
    assert embed.color.value == embeds.GRADE_COLORS[TrustGrade.A]
    assert [field.value for field in embed.fields[:3]] == ["30/45", "24/35", "12/20"]
    assert "12 completed" in embed.fields[3].value
    assert "4.75" in embed.fields[3].value


def test_format_matches_names_cards():
    match = Match(
        user_id="2",
        display_name="Bob",
        trust_grade=TrustGrade.U,
        trust_score=None,
        they_have_i_want=[MatchCard("base-004", "Charizard")],
        i_have_they_want=[],
    )

    text = embeds.format_matches([match])

    assert "<@2>" in text
    assert "Charizard" in text
    assert embeds.grade_label(None) == "Unrated"
    assert embeds.format_matches([]) == "No matching traders yet."
