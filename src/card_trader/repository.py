"""Loading and version-checked persistence of trade aggregates."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, Iterable, List, Optional

import aiosqlite

from .database import Database
from .models import (
    OfferItem,
    Trade,
    TradeHistoryEntry,
    TradeStatus,
    UserTradeListItem,
    format_timestamp,
    parse_timestamp,
)

_log = logging.getLogger(__name__)

TRADE_COLUMNS = (
    "id, room_slug, initiator_user_id, responder_user_id, status, proposed_expired_at,"
    " agreed_expired_at, previous_status, dispute_opened_at, dispute_reason, version,"
    " created_at, updated_at"
)


class TradeRepository:
    """Reads and writes one trade aggregate at a time.

    Every write is conditioned on the ``version`` the caller read. A write
    whose version no longer matches changes nothing and reports ``False`` so
    the caller can surface a stale read instead of overwriting a newer state.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert(self, trade: Trade, history: TradeHistoryEntry) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                f"INSERT INTO trades({TRADE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    trade.id,
                    trade.room_slug,
                    trade.initiator_user_id,
                    trade.responder_user_id,
                    trade.status.value,
                    format_timestamp(trade.proposed_expired_at),
                    format_timestamp(trade.agreed_expired_at),
                    _status_value(trade.previous_status),
                    format_timestamp(trade.dispute_opened_at),
                    trade.dispute_reason,
                    trade.version,
                    format_timestamp(trade.created_at),
                    format_timestamp(trade.updated_at),
                ),
            )
            await _insert_items(conn, trade.items)
            await _append_history(conn, history)

    async def get(self, trade_id: str) -> Optional[Trade]:
        return await self._fetch("id", trade_id)

    async def get_by_slug(self, room_slug: str) -> Optional[Trade]:
        return await self._fetch("room_slug", room_slug)

    async def _fetch(self, column: str, value: str) -> Optional[Trade]:
        async with self._db.connect() as conn:
            conn.row_factory = aiosqlite.Row
            cursor = await conn.execute(
                f"SELECT {TRADE_COLUMNS} FROM trades WHERE {column} = ?", (value,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await conn.execute(
                "SELECT trade_id, user_id, card_id, created_at FROM trade_items\n"
                "WHERE trade_id = ? ORDER BY user_id, card_id",
                (row["id"],),
            )
            items = [
                OfferItem(
                    trade_id=item["trade_id"],
                    user_id=item["user_id"],
                    card_id=item["card_id"],
                    created_at=parse_timestamp(item["created_at"]),
                )
                for item in await cursor.fetchall()
            ]
        return _trade_from_row(row, items)

    async def save(
        self,
        trade: Trade,
        *,
        expected_version: int,
        history: Optional[TradeHistoryEntry] = None,
    ) -> bool:
        """Write the mutable columns of ``trade`` if the stored version matches."""

        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE trades SET responder_user_id = ?, status = ?, proposed_expired_at = ?,\n"
                "agreed_expired_at = ?, previous_status = ?, dispute_opened_at = ?,\n"
                "dispute_reason = ?, version = ?, updated_at = ?\n"
                "WHERE id = ? AND version = ?",
                (
                    trade.responder_user_id,
                    trade.status.value,
                    format_timestamp(trade.proposed_expired_at),
                    format_timestamp(trade.agreed_expired_at),
                    _status_value(trade.previous_status),
                    format_timestamp(trade.dispute_opened_at),
                    trade.dispute_reason,
                    trade.version,
                    format_timestamp(trade.updated_at),
                    trade.id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                _log.warning(
                    "Stale write rejected for trade %s (expected version %s)",
                    trade.id,
                    expected_version,
                )
                return False
            if history is not None:
                await _append_history(conn, history)
        return True

    async def replace_offer(
        self,
        trade: Trade,
        user_id: str,
        *,
        remove: Collection[str],
        add: Collection[str],
        now: datetime,
        editable: Iterable[TradeStatus],
    ) -> bool:
        """Apply an offer diff together with the trade's version bump.

        Nothing is written unless the trade still has the version the caller
        read and is still in one of the ``editable`` statuses.
        """

        statuses = [status.value for status in editable]
        placeholders = ", ".join("?" for _ in statuses)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE trades SET version = version + 1, updated_at = ?\n"
                f"WHERE id = ? AND version = ? AND status IN ({placeholders})",
                (format_timestamp(now), trade.id, trade.version, *statuses),
            )
            if cursor.rowcount == 0:
                _log.warning("Stale offer edit rejected for trade %s", trade.id)
                return False
            await conn.executemany(
                "DELETE FROM trade_items WHERE trade_id = ? AND user_id = ? AND card_id = ?",
                [(trade.id, user_id, card_id) for card_id in sorted(remove)],
            )
            await _insert_items(
                conn,
                [
                    OfferItem(trade_id=trade.id, user_id=user_id, card_id=card_id, created_at=now)
                    for card_id in sorted(add)
                ],
            )
        return True

    async def history(self, trade_id: str) -> List[TradeHistoryEntry]:
        async with self._db.connect() as conn:
            cursor = await conn.execute(
                "SELECT trade_id, from_status, to_status, changed_by_user_id, reason, created_at\n"
                "FROM trade_history WHERE trade_id = ? ORDER BY id",
                (trade_id,),
            )
            rows = await cursor.fetchall()
        return [
            TradeHistoryEntry(
                trade_id=row[0],
                from_status=TradeStatus(row[1]) if row[1] else None,
                to_status=TradeStatus(row[2]),
                changed_by_user_id=row[3],
                reason=row[4],
                created_at=parse_timestamp(row[5]),
            )
            for row in rows
        ]

    async def list_for_user(
        self, user_id: str, statuses: Iterable[TradeStatus]
    ) -> List[UserTradeListItem]:
        statuses = [status.value for status in statuses]
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        async with self._db.connect() as conn:
            cursor = await conn.execute(
                "SELECT t.id, t.room_slug, t.status,\n"
                "CASE WHEN t.initiator_user_id = ? THEN t.responder_user_id ELSE t.initiator_user_id END AS partner,\n"
                "t.created_at, t.updated_at\n"
                "FROM trades t\n"
                "WHERE (t.initiator_user_id = ? OR t.responder_user_id = ?)\n"
                f"AND t.status IN ({placeholders})\n"
                "ORDER BY t.updated_at DESC, t.id",
                (user_id, user_id, user_id, *statuses),
            )
            rows = await cursor.fetchall()
            partner_ids = [row[3] for row in rows if row[3]]
            names = {}
            if partner_ids:
                name_placeholders = ", ".join("?" for _ in partner_ids)
                cursor = await conn.execute(
                    f"SELECT user_id, display_name FROM users WHERE user_id IN ({name_placeholders})",
                    partner_ids,
                )
                names = {row[0]: row[1] or row[0] for row in await cursor.fetchall()}
        return [
            UserTradeListItem(
                trade_id=row[0],
                room_slug=row[1],
                status=TradeStatus(row[2]),
                partner_id=row[3],
                partner_name=names.get(row[3], row[3]) if row[3] else None,
                created_at=parse_timestamp(row[4]),
                updated_at=parse_timestamp(row[5]),
            )
            for row in rows
        ]


async def _insert_items(conn: aiosqlite.Connection, items: Iterable[OfferItem]) -> None:
    await conn.executemany(
        "INSERT INTO trade_items(trade_id, user_id, card_id, created_at) VALUES (?, ?, ?, ?)",
        [
            (item.trade_id, item.user_id, item.card_id, format_timestamp(item.created_at))
            for item in items
        ],
    )


async def _append_history(conn: aiosqlite.Connection, entry: TradeHistoryEntry) -> None:
    await conn.execute(
        "INSERT INTO trade_history(trade_id, from_status, to_status, changed_by_user_id, reason, created_at)\n"
        "VALUES (?, ?, ?, ?, ?, ?)",
        (
            entry.trade_id,
            _status_value(entry.from_status),
            entry.to_status.value,
            entry.changed_by_user_id,
            entry.reason,
            format_timestamp(entry.created_at),
        ),
    )


def _status_value(status: Optional[TradeStatus]) -> Optional[str]:
    return status.value if status is not None else None


def _trade_from_row(row: aiosqlite.Row, items: List[OfferItem]) -> Trade:
    previous = row["previous_status"]
    return Trade(
        id=row["id"],
        room_slug=row["room_slug"],
        initiator_user_id=row["initiator_user_id"],
        responder_user_id=row["responder_user_id"],
        status=TradeStatus(row["status"]),
        proposed_expired_at=parse_timestamp(row["proposed_expired_at"]),
        agreed_expired_at=parse_timestamp(row["agreed_expired_at"]),
        previous_status=TradeStatus(previous) if previous else None,
        dispute_opened_at=parse_timestamp(row["dispute_opened_at"]),
        dispute_reason=row["dispute_reason"],
        version=row["version"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        items=items,
    )
