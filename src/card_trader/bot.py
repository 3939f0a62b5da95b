"""Discord bot entrypoint and command registration."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, List, Mapping, Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from .config import Settings, load_settings
from .database import Database
from .embeds import (
    error_embed,
    format_matches,
    format_trade_list,
    info_embed,
    status_label,
    trade_embed,
    trust_embed,
)
from .errors import TradeError
from .matching import find_matches
from .models import TradeStatus, TrustGrade, utcnow
from .notifications import DiscordNotifier
from .reviews import ReviewService
from .social import XProfileClient
from .state_machine import TradeStateMachine
from .stats import StatsAggregator
from .trades import TradeService
from .trust_worker import TrustService

_log = logging.getLogger(__name__)
MAX_OFFER_CARDS = 25
AUTOCOMPLETE_LIMIT = 25

GRADE_CHOICES = [app_commands.Choice(name=grade.value, value=grade.value) for grade in TrustGrade]


def parse_card_list(raw: str) -> List[str]:
    """Split a comma or whitespace separated list of card ids."""

    return [part for part in raw.replace(",", " ").split() if part]


async def send_error(interaction: discord.Interaction, exc: TradeError) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(embed=error_embed(exc), ephemeral=True)
    else:
        await interaction.response.send_message(embed=error_embed(exc), ephemeral=True)


class TraderBot(commands.Bot):
    """Discord bot that exposes the card trading commands."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        *,
        x_client: XProfileClient | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.members = True
        super().__init__(command_prefix=commands.when_mentioned_or("!"), intents=intents)
        self.settings = settings
        self.db = db
        self.x_client = x_client
        self.stats = StatsAggregator(db)
        self.trust = TrustService(
            db,
            self.stats,
            x_client=x_client,
            queue_limit=settings.trust_queue_limit,
            batch_size=settings.trust_batch_size,
        )
        notifier = DiscordNotifier(self)
        self.trades = TradeService(
            db,
            state_machine=TradeStateMachine(
                proposal_ttl=timedelta(hours=settings.proposal_ttl_hours),
                agreement_ttl=timedelta(hours=settings.agreement_ttl_hours),
            ),
            stats=self.stats,
            trust=self.trust,
            notifier=notifier,
        )
        self.reviews = ReviewService(db, stats=self.stats, trust=self.trust, notifier=notifier)
        self.trust_loop = tasks.loop(minutes=settings.trust_worker_minutes)(self.run_trust_jobs)
        self.trust_loop.before_loop(self.wait_until_ready)

    async def setup_hook(self) -> None:
        await self.db.setup()
        self.tree.add_command(TradeGroup(self))
        self.tree.add_command(CardGroup(self))
        await self.add_misc_commands()
        await self.tree.sync()
        _log.info("Slash commands synced")
        self.trust_loop.start()

    async def close(self) -> None:
        self.trust_loop.cancel()
        if self.x_client is not None:
            await self.x_client.close()
        await super().close()

    async def run_trust_jobs(self) -> None:
        summary = await self.trust.run_pending()
        if summary.processed or summary.rate_limited:
            _log.info(
                "Trust worker processed %s job(s): %s succeeded, %s failed%s",
                summary.processed,
                summary.succeeded,
                summary.failed,
                " (rate limited)" if summary.rate_limited else "",
            )

    async def add_misc_commands(self) -> None:
        bot = self

        @self.tree.command(description="Show a trader's trust score")
        @app_commands.describe(member="Trader to look up (defaults to you)")
        async def trust(interaction: discord.Interaction, member: Optional[discord.Member] = None):
            target = member or interaction.user
            user_id = str(target.id)
            await bot.db.ensure_user(user_id, target.display_name)
            try:
                snapshot = await bot.trust.get_trust_score(user_id)
            except TradeError as exc:
                await send_error(interaction, exc)
                return
            stats = await bot.stats.get_stats(user_id)
            embed = trust_embed(snapshot, stats)
            embed.title = f"{target.display_name} • {embed.title}"
            await interaction.response.send_message(embed=embed, ephemeral=True)

        @self.tree.command(description="Ask for your trust score to be recalculated")
        async def recalc(interaction: discord.Interaction):
            user_id = str(interaction.user.id)
            await bot.db.ensure_user(user_id, interaction.user.display_name)
            try:
                job = await bot.trust.request_recalculation(user_id)
            except TradeError as exc:
                await send_error(interaction, exc)
                return
            position = await bot.trust.queue_position(job)
            detail = f"You are #{position} in the queue." if position else "Your job is running now."
            await interaction.response.send_message(
                embed=info_embed("🔄 Recalculation queued", detail), ephemeral=True
            )

        @self.tree.command(description="Link your X account for the trust profile score")
        @app_commands.describe(username="Your X handle")
        async def linkx(interaction: discord.Interaction, username: str):
            user_id = str(interaction.user.id)
            await bot.db.ensure_user(user_id, interaction.user.display_name)
            try:
                profile = await bot.trust.link_x_account(user_id, username)
                await bot.trust.request_recalculation(user_id)
            except TradeError as exc:
                await send_error(interaction, exc)
                return
            await interaction.response.send_message(
                embed=info_embed("🔗 X account linked", f"Linked **@{profile.username}**."),
                ephemeral=True,
            )

        @self.tree.command(description="Find traders whose cards match your have and want lists")
        @app_commands.describe(min_grade="Only show traders with at least this trust grade")
        @app_commands.choices(min_grade=GRADE_CHOICES)
        async def matches(
            interaction: discord.Interaction,
            min_grade: Optional[app_commands.Choice[str]] = None,
        ):
            grade = TrustGrade(min_grade.value) if min_grade else None
            results, total = await find_matches(
                bot.db, str(interaction.user.id), min_trust_grade=grade, limit=10
            )
            embed = info_embed(f"🤝 {total} matching trader(s)", format_matches(results))
            await interaction.response.send_message(
                embed=embed,
                ephemeral=True,
                allowed_mentions=discord.AllowedMentions.none(),
            )


class TradeGroup(app_commands.Group):
    def __init__(self, bot: TraderBot):
        super().__init__(name="trade", description="Negotiate card trades")
        self.bot = bot
        self.db = bot.db
        self.trades = bot.trades

    async def _actor(self, interaction: discord.Interaction) -> str:
        user_id = str(interaction.user.id)
        await self.db.ensure_user(user_id, interaction.user.display_name)
        return user_id

    async def _transition(
        self,
        interaction: discord.Interaction,
        room: str,
        target: TradeStatus,
        title: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        actor = await self._actor(interaction)
        try:
            trade = await self.trades.require_trade(room)
            trade = await self.trades.transition_trade(trade, target, actor, payload)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        await interaction.response.send_message(
            embed=info_embed(title, f"Trade `{trade.room_slug}` is {status_label(trade.status)}."),
            ephemeral=True,
        )

    async def room_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[str]]:
        entries = await self.trades.list_user_trades(str(interaction.user.id))
        current = current.strip().lower()
        return [
            app_commands.Choice(
                name=f"{entry.room_slug} ({entry.status.value})", value=entry.room_slug
            )
            for entry in entries
            if current in entry.room_slug.lower()
        ][:AUTOCOMPLETE_LIMIT]

    @app_commands.command(name="create", description="Start a new trade")
    @app_commands.describe(
        partner="Member you want to trade with (optional)",
        card="A card you want to offer straight away",
    )
    async def create(
        self,
        interaction: discord.Interaction,
        partner: Optional[discord.Member] = None,
        card: Optional[str] = None,
    ):
        actor = await self._actor(interaction)
        responder = None
        if partner is not None:
            responder = str(partner.id)
            await self.db.ensure_user(responder, partner.display_name)
        try:
            trade = await self.trades.create_trade(
                actor, responder_user_id=responder, initial_card_id=card
            )
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        with_text = f" with {partner.mention}" if partner else ""
        await interaction.response.send_message(
            embed=info_embed(
                "📝 Trade created",
                f"Trade `{trade.room_slug}`{with_text} is ready. Add cards with `/trade offer`.",
            ),
            ephemeral=True,
        )

    @app_commands.command(name="join", description="Take the open seat in a trade")
    async def join(self, interaction: discord.Interaction, room: str):
        actor = await self._actor(interaction)
        try:
            trade = await self.trades.require_trade(room)
            trade = await self.trades.set_responder(trade, actor)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        await interaction.response.send_message(
            embed=info_embed("🪑 Joined", f"You joined trade `{trade.room_slug}`."),
            ephemeral=True,
        )

    @app_commands.command(name="offer", description="Replace the cards you are offering")
    @app_commands.describe(room="Trade room", cards="Card ids separated by commas or spaces")
    async def offer(self, interaction: discord.Interaction, room: str, cards: str = ""):
        actor = await self._actor(interaction)
        card_ids = parse_card_list(cards)
        if len(card_ids) > MAX_OFFER_CARDS:
            await interaction.response.send_message(
                embed=info_embed("✏️ Too many cards", f"Offer at most {MAX_OFFER_CARDS} cards."),
                ephemeral=True,
            )
            return
        try:
            trade = await self.trades.require_trade(room)
            items = await self.trades.update_offer(trade, actor, card_ids)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        summary = ", ".join(f"`{item.card_id}`" for item in items) or "nothing"
        await interaction.response.send_message(
            embed=info_embed("🃏 Offer updated", f"You now offer {summary}."),
            ephemeral=True,
        )

    @app_commands.command(name="propose", description="Send the trade to your partner")
    @app_commands.describe(hours="Hours your partner has to agree")
    async def propose(
        self,
        interaction: discord.Interaction,
        room: str,
        hours: Optional[app_commands.Range[int, 1, 720]] = None,
    ):
        payload = None
        if hours:
            payload = {"proposed_expired_at": utcnow() + timedelta(hours=hours)}
        await self._transition(interaction, room, TradeStatus.PROPOSED, "📨 Trade proposed", payload)

    @app_commands.command(name="agree", description="Agree to a proposed trade")
    async def agree(self, interaction: discord.Interaction, room: str):
        await self._transition(interaction, room, TradeStatus.AGREED, "🤝 Trade agreed")

    @app_commands.command(name="complete", description="Mark an agreed trade as done")
    async def complete(self, interaction: discord.Interaction, room: str):
        await self._transition(interaction, room, TradeStatus.COMPLETED, "✅ Trade completed")

    @app_commands.command(name="cancel", description="Cancel a trade")
    async def cancel(self, interaction: discord.Interaction, room: str):
        await self._transition(interaction, room, TradeStatus.CANCELED, "🚫 Trade canceled")

    @app_commands.command(name="uncancel", description="Restore a canceled trade")
    async def uncancel(self, interaction: discord.Interaction, room: str):
        actor = await self._actor(interaction)
        try:
            trade = await self.trades.require_trade(room)
            status = await self.trades.uncancel_trade(trade, actor)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        await interaction.response.send_message(
            embed=info_embed("↩️ Trade restored", f"Trade `{room}` is {status_label(status)} again."),
            ephemeral=True,
        )

    @app_commands.command(name="dispute", description="Report a problem with an agreed trade")
    async def dispute(self, interaction: discord.Interaction, room: str, reason: str):
        actor = await self._actor(interaction)
        try:
            trade = await self.trades.require_trade(room)
            await self.trades.open_dispute(trade, actor, reason)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        await interaction.response.send_message(
            embed=info_embed("⚠️ Dispute opened", "A moderator will review this trade."),
            ephemeral=True,
        )

    @app_commands.command(name="resolve", description="Resolve an open dispute (moderators)")
    @app_commands.describe(uphold="Uphold the dispute and close the trade as disputed")
    async def resolve(self, interaction: discord.Interaction, room: str, uphold: bool):
        if not interaction.permissions.manage_guild:
            await interaction.response.send_message(
                embed=info_embed("🚫 Moderators only", "You need Manage Server to resolve disputes."),
                ephemeral=True,
            )
            return
        try:
            trade = await self.trades.require_trade(room)
            trade = await self.trades.resolve_dispute(trade.id, uphold)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        await interaction.response.send_message(
            embed=info_embed(
                "⚖️ Dispute resolved",
                f"Trade `{trade.room_slug}` is {status_label(trade.status)}.",
            ),
            ephemeral=True,
        )

    @app_commands.command(name="show", description="Show a trade")
    async def show(self, interaction: discord.Interaction, room: str):
        try:
            detail = await self.trades.get_trade_detail(room)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        await interaction.response.send_message(embed=trade_embed(detail), ephemeral=True)

    @app_commands.command(name="list", description="List your trades")
    @app_commands.choices(
        which=[
            app_commands.Choice(name="In progress", value="active"),
            app_commands.Choice(name="Completed", value="completed"),
        ]
    )
    async def list_trades(
        self,
        interaction: discord.Interaction,
        which: Optional[app_commands.Choice[str]] = None,
    ):
        entries = await self.trades.list_user_trades(
            str(interaction.user.id), which.value if which else None
        )
        await interaction.response.send_message(
            embed=info_embed("📋 Your trades", format_trade_list(entries)),
            ephemeral=True,
            allowed_mentions=discord.AllowedMentions.none(),
        )

    @app_commands.command(name="review", description="Review your partner after a completed trade")
    @app_commands.describe(rating="Stars (1-5)", comment="Optional comment", public="Show on your partner's profile")
    async def review(
        self,
        interaction: discord.Interaction,
        room: str,
        rating: app_commands.Range[int, 1, 5],
        comment: Optional[str] = None,
        public: bool = True,
    ):
        actor = await self._actor(interaction)
        try:
            trade = await self.trades.require_trade(room)
            await self.bot.reviews.create_review(trade.id, actor, rating, comment, public)
        except TradeError as exc:
            await send_error(interaction, exc)
            return
        await interaction.response.send_message(
            embed=info_embed("⭐ Review saved", f"You rated trade `{room}` {rating} star(s)."),
            ephemeral=True,
        )

    for _command in (join, offer, propose, agree, complete, cancel, uncancel, dispute, resolve, show, review):
        _command.autocomplete("room")(room_autocomplete)
    del _command


class CardGroup(app_commands.Group):
    def __init__(self, bot: TraderBot):
        super().__init__(name="cards", description="Manage the cards you have and want")
        self.db = bot.db

    async def card_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[str]]:
        cards = await self.db.search_cards(current, limit=AUTOCOMPLETE_LIMIT)
        return [
            app_commands.Choice(name=f"{card.name} ({card.card_id})"[:100], value=card.card_id)
            for card in cards
        ]

    async def _check_card(self, interaction: discord.Interaction, card: str) -> bool:
        if await self.db.missing_cards([card]):
            await interaction.response.send_message(
                embed=info_embed("🔍 Unknown card", f"No card with id `{card}`."),
                ephemeral=True,
            )
            return False
        return True

    @app_commands.command(name="have", description="Add a card you can trade away")
    async def have(self, interaction: discord.Interaction, card: str):
        if not await self._check_card(interaction, card):
            return
        await self.db.ensure_user(str(interaction.user.id), interaction.user.display_name)
        await self.db.add_have(str(interaction.user.id), card)
        await interaction.response.send_message(
            embed=info_embed("📦 Have list updated", f"Added `{card}`."), ephemeral=True
        )

    @app_commands.command(name="want", description="Add a card you are looking for")
    async def want(self, interaction: discord.Interaction, card: str):
        if not await self._check_card(interaction, card):
            return
        await self.db.ensure_user(str(interaction.user.id), interaction.user.display_name)
        await self.db.add_want(str(interaction.user.id), card)
        await interaction.response.send_message(
            embed=info_embed("🔎 Want list updated", f"Added `{card}`."), ephemeral=True
        )

    @app_commands.command(name="drop", description="Remove a card from your have and want lists")
    async def drop(self, interaction: discord.Interaction, card: str):
        user_id = str(interaction.user.id)
        removed = await self.db.remove_have(user_id, card)
        removed = await self.db.remove_want(user_id, card) or removed
        title = "🗑️ Removed" if removed else "Nothing to remove"
        await interaction.response.send_message(
            embed=info_embed(title, f"`{card}`"), ephemeral=True
        )

    @app_commands.command(name="mine", description="Show your have and want lists")
    async def mine(self, interaction: discord.Interaction):
        user_id = str(interaction.user.id)
        haves = await self.db.list_haves(user_id)
        wants = await self.db.list_wants(user_id)
        embed = info_embed("🗂️ Your cards")
        embed.add_field(
            name="Have", value="\n".join(card.name for card in haves) or "Nothing yet", inline=True
        )
        embed.add_field(
            name="Want", value="\n".join(card.name for card in wants) or "Nothing yet", inline=True
        )
        await interaction.response.send_message(embed=embed, ephemeral=True)

    for _command in (have, want, drop):
        _command.autocomplete("card")(card_autocomplete)
    del _command


def run_bot() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level)
    x_client = XProfileClient(settings.x_bearer_token) if settings.x_bearer_token else None
    bot = TraderBot(settings, Database(settings.database_path), x_client=x_client)
    bot.run(settings.discord_token)


if __name__ == "__main__":
    run_bot()
