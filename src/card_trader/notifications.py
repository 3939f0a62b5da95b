"""Fire-and-forget participant notifications."""
from __future__ import annotations

import logging
from typing import Optional

import discord

from .embeds import info_embed, status_label
from .models import Review, Trade, TradeStatus

_log = logging.getLogger(__name__)


class Notifier:
    """Receives trade and review events after they have been persisted."""

    async def trade_state_changed(
        self,
        trade: Trade,
        from_status: TradeStatus,
        to_status: TradeStatus,
        actor_id: Optional[str],
    ) -> None:
        raise NotImplementedError

    async def review_received(self, review: Review) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    async def trade_state_changed(self, trade, from_status, to_status, actor_id) -> None:
        return None

    async def review_received(self, review: Review) -> None:
        return None


class DiscordNotifier(Notifier):
    """Direct-messages trade participants through the bot."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def trade_state_changed(self, trade, from_status, to_status, actor_id) -> None:
        for user_id in trade.participants:
            if user_id == actor_id:
                continue
            await self._send(
                user_id,
                info_embed(
                    f"Trade {trade.room_slug} updated",
                    f"{status_label(from_status)} → {status_label(to_status)}",
                ),
            )

    async def review_received(self, review: Review) -> None:
        await self._send(
            review.reviewee_user_id,
            info_embed(
                "⭐ New review",
                f"<@{review.reviewer_user_id}> rated your trade {review.rating} star(s).",
            ),
        )

    async def _send(self, user_id: str, embed: discord.Embed) -> None:
        try:
            snowflake = int(user_id)
        except ValueError:
            _log.warning("Cannot DM non-Discord user id %s", user_id)
            return
        try:
            user = self.client.get_user(snowflake) or await self.client.fetch_user(snowflake)
            await user.send(embed=embed)
        except discord.HTTPException:
            _log.warning("Failed to send notification to %s", user_id)
