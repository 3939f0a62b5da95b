"""SQLite persistence layer for the card trading core."""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite
from rapidfuzz import fuzz

from .models import (
    Card,
    SocialProfile,
    TrustComponents,
    TrustGrade,
    TrustScoreSnapshot,
    User,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

_log = logging.getLogger(__name__)

#: Seconds a connection waits for another writer to release the database.
BUSY_TIMEOUT = 30.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL DEFAULT '',
    email_verified INTEGER NOT NULL DEFAULT 0,
    trust_score INTEGER,
    trust_grade TEXT,
    x_profile_score INTEGER,
    behavior_score INTEGER,
    review_score INTEGER,
    trust_updated_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS social_profiles (
    user_id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    account_created_at TEXT,
    followers_count INTEGER NOT NULL DEFAULT 0,
    tweet_count INTEGER NOT NULL DEFAULT 0,
    has_profile_image INTEGER NOT NULL DEFAULT 0,
    has_description INTEGER NOT NULL DEFAULT 0,
    verified INTEGER NOT NULL DEFAULT 0,
    protected INTEGER NOT NULL DEFAULT 0,
    fetched_at TEXT
);

CREATE TABLE IF NOT EXISTS cards (
    card_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    set_name TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS have_cards (
    user_id TEXT NOT NULL,
    card_id TEXT NOT NULL REFERENCES cards(card_id),
    PRIMARY KEY (user_id, card_id)
);

CREATE TABLE IF NOT EXISTS want_cards (
    user_id TEXT NOT NULL,
    card_id TEXT NOT NULL REFERENCES cards(card_id),
    PRIMARY KEY (user_id, card_id)
);

CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    room_slug TEXT NOT NULL UNIQUE,
    initiator_user_id TEXT NOT NULL,
    responder_user_id TEXT,
    status TEXT NOT NULL DEFAULT 'draft',
    proposed_expired_at TEXT,
    agreed_expired_at TEXT,
    previous_status TEXT,
    dispute_opened_at TEXT,
    dispute_reason TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (responder_user_id IS NULL OR responder_user_id <> initiator_user_id)
);

CREATE INDEX IF NOT EXISTS idx_trades_initiator ON trades(initiator_user_id);
CREATE INDEX IF NOT EXISTS idx_trades_responder ON trades(responder_user_id);

CREATE TABLE IF NOT EXISTS trade_items (
    trade_id TEXT NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    card_id TEXT NOT NULL REFERENCES cards(card_id),
    created_at TEXT NOT NULL,
    PRIMARY KEY (trade_id, user_id, card_id)
);

CREATE TABLE IF NOT EXISTS trade_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trade_id TEXT NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
    from_status TEXT,
    to_status TEXT NOT NULL,
    changed_by_user_id TEXT,
    reason TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_trade_stats (
    user_id TEXT PRIMARY KEY,
    completed_count INTEGER NOT NULL DEFAULT 0,
    canceled_count INTEGER NOT NULL DEFAULT 0,
    disputed_count INTEGER NOT NULL DEFAULT 0,
    first_trade_at TEXT,
    last_trade_at TEXT
);

CREATE TABLE IF NOT EXISTS user_trade_outcomes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    trade_id TEXT NOT NULL,
    outcome TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, trade_id)
);

CREATE TABLE IF NOT EXISTS user_review_stats (
    user_id TEXT PRIMARY KEY,
    review_count INTEGER NOT NULL DEFAULT 0,
    avg_rating REAL,
    positive_count INTEGER NOT NULL DEFAULT 0,
    negative_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS trade_reviews (
    id TEXT PRIMARY KEY,
    trade_id TEXT NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
    reviewer_user_id TEXT NOT NULL,
    reviewee_user_id TEXT NOT NULL,
    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    comment TEXT,
    is_public INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (trade_id, reviewer_user_id)
);

CREATE TABLE IF NOT EXISTS trust_jobs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_trust_jobs_status ON trust_jobs(status, created_at);
"""


class Database:
    """Data access helper built on top of SQLite."""

    def __init__(self, path: str) -> None:
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        async with self.connect() as db:
            await db.executescript(SCHEMA)
            await db.commit()
        _log.debug("Database schema ready at %s", self.path)

    def connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.path, timeout=BUSY_TIMEOUT)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection inside a ``BEGIN IMMEDIATE`` write transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises. Taking the write lock up front means a read inside the
        block cannot be invalidated by another writer before the block's own
        writes land.
        """

        async with aiosqlite.connect(
            self.path, timeout=BUSY_TIMEOUT, isolation_level=None
        ) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except Exception:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    # Users -----------------------------------------------------------------

    async def ensure_user(self, user_id: str, display_name: Optional[str] = None) -> None:
        async with self._lock:
            async with self.connect() as db:
                await db.execute(
                    "INSERT INTO users(user_id, display_name, created_at) VALUES (?, ?, ?)\n"
                    "ON CONFLICT(user_id) DO UPDATE SET display_name = "
                    "CASE WHEN excluded.display_name = '' THEN users.display_name "
                    "ELSE excluded.display_name END",
                    (user_id, (display_name or "").strip(), format_timestamp(utcnow())),
                )
                await db.commit()

    async def set_email_verified(self, user_id: str, verified: bool = True) -> None:
        await self.ensure_user(user_id)
        async with self._lock:
            async with self.connect() as db:
                await db.execute(
                    "UPDATE users SET email_verified = ? WHERE user_id = ?",
                    (int(verified), user_id),
                )
                await db.commit()

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT user_id, display_name, email_verified, trust_score, trust_grade, created_at\n"
                "FROM users WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return _user_from_row(row)

    async def get_users(self, user_ids: Iterable[str]) -> Dict[str, User]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT user_id, display_name, email_verified, trust_score, trust_grade, created_at\n"
                f"FROM users WHERE user_id IN ({placeholders})",
                ids,
            )
            rows = await cursor.fetchall()
        return {row[0]: _user_from_row(row) for row in rows}

    # Trust snapshot ---------------------------------------------------------

    async def get_trust_snapshot(self, user_id: str) -> Optional[TrustScoreSnapshot]:
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT trust_score, trust_grade, x_profile_score, behavior_score, review_score,\n"
                "trust_updated_at FROM users WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        score, grade, x_profile, behavior, review, updated_at = row
        return TrustScoreSnapshot(
            user_id=user_id,
            trust_score=score,
            trust_grade=TrustGrade(grade),
            components=TrustComponents(
                x_profile=x_profile or 0, behavior=behavior or 0, review=review or 0
            ),
            updated_at=parse_timestamp(updated_at),
        )

    async def save_trust_snapshot(self, snapshot: TrustScoreSnapshot) -> None:
        """Replace the stored trust view for a user in a single statement."""

        await self.ensure_user(snapshot.user_id)
        async with self._lock:
            async with self.connect() as db:
                await db.execute(
                    "UPDATE users SET trust_score = ?, trust_grade = ?, x_profile_score = ?,\n"
                    "behavior_score = ?, review_score = ?, trust_updated_at = ?\n"
                    "WHERE user_id = ?",
                    (
                        snapshot.trust_score,
                        snapshot.trust_grade.value,
                        snapshot.components.x_profile,
                        snapshot.components.behavior,
                        snapshot.components.review,
                        format_timestamp(snapshot.updated_at),
                        snapshot.user_id,
                    ),
                )
                await db.commit()

    # Social profiles --------------------------------------------------------

    async def save_social_profile(self, profile: SocialProfile) -> None:
        await self.ensure_user(profile.user_id)
        async with self._lock:
            async with self.connect() as db:
                await db.execute(
                    "INSERT INTO social_profiles(user_id, username, account_created_at, followers_count,\n"
                    "tweet_count, has_profile_image, has_description, verified, protected, fetched_at)\n"
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)\n"
                    "ON CONFLICT(user_id) DO UPDATE SET username = excluded.username,\n"
                    "account_created_at = excluded.account_created_at,\n"
                    "followers_count = excluded.followers_count, tweet_count = excluded.tweet_count,\n"
                    "has_profile_image = excluded.has_profile_image,\n"
                    "has_description = excluded.has_description, verified = excluded.verified,\n"
                    "protected = excluded.protected, fetched_at = excluded.fetched_at",
                    (
                        profile.user_id,
                        profile.username,
                        format_timestamp(profile.account_created_at),
                        profile.followers_count,
                        profile.tweet_count,
                        int(profile.has_profile_image),
                        int(profile.has_description),
                        int(profile.verified),
                        int(profile.protected),
                        format_timestamp(profile.fetched_at),
                    ),
                )
                await db.commit()

    async def get_social_profile(self, user_id: str) -> Optional[SocialProfile]:
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT username, account_created_at, followers_count, tweet_count,\n"
                "has_profile_image, has_description, verified, protected, fetched_at\n"
                "FROM social_profiles WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return SocialProfile(
            user_id=user_id,
            username=row[0],
            account_created_at=parse_timestamp(row[1]),
            followers_count=row[2],
            tweet_count=row[3],
            has_profile_image=bool(row[4]),
            has_description=bool(row[5]),
            verified=bool(row[6]),
            protected=bool(row[7]),
            fetched_at=parse_timestamp(row[8]),
        )

    # Cards and collections --------------------------------------------------

    async def add_card(self, card_id: str, name: str, set_name: str = "") -> None:
        async with self._lock:
            async with self.connect() as db:
                await db.execute(
                    "INSERT INTO cards(card_id, name, set_name) VALUES (?, ?, ?)\n"
                    "ON CONFLICT(card_id) DO UPDATE SET name = excluded.name, set_name = excluded.set_name",
                    (card_id, name.strip(), set_name.strip()),
                )
                await db.commit()

    async def get_cards(self, card_ids: Iterable[str]) -> Dict[str, Card]:
        ids = sorted(set(card_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        async with self.connect() as db:
            cursor = await db.execute(
                f"SELECT card_id, name, set_name FROM cards WHERE card_id IN ({placeholders})",
                ids,
            )
            rows = await cursor.fetchall()
        return {row[0]: Card(card_id=row[0], name=row[1], set_name=row[2]) for row in rows}

    async def missing_cards(self, card_ids: Iterable[str]) -> List[str]:
        """Return the ids from ``card_ids`` that are not in the catalogue."""

        wanted = set(card_ids)
        found = await self.get_cards(wanted)
        return sorted(wanted - set(found))

    async def search_cards(self, term: str, limit: int = 20) -> List[Card]:
        """Search the card catalogue for fuzzy matches on card names."""

        term = term.strip()
        if not term:
            return []

        normalized_term = self._normalize_text(term)
        async with self.connect() as db:
            cursor = await db.execute("SELECT card_id, name, set_name FROM cards")
            rows = await cursor.fetchall()

        scored = []
        for card_id, name, set_name in rows:
            score = fuzz.WRatio(normalized_term, self._normalize_text(name))
            if score >= 60:
                scored.append((score, Card(card_id=card_id, name=name, set_name=set_name)))

        scored.sort(key=lambda entry: (-entry[0], entry[1].name.lower(), entry[1].card_id))
        return [card for _, card in scored[:limit]]

    @staticmethod
    def _normalize_text(value: str) -> str:
        return " ".join(value.lower().split())

    async def add_have(self, user_id: str, card_id: str) -> None:
        await self._add_collection_card("have_cards", user_id, card_id)

    async def add_want(self, user_id: str, card_id: str) -> None:
        await self._add_collection_card("want_cards", user_id, card_id)

    async def remove_have(self, user_id: str, card_id: str) -> bool:
        return await self._remove_collection_card("have_cards", user_id, card_id)

    async def remove_want(self, user_id: str, card_id: str) -> bool:
        return await self._remove_collection_card("want_cards", user_id, card_id)

    async def list_haves(self, user_id: str) -> List[Card]:
        return await self._list_collection("have_cards", user_id)

    async def list_wants(self, user_id: str) -> List[Card]:
        return await self._list_collection("want_cards", user_id)

    async def _add_collection_card(self, table: str, user_id: str, card_id: str) -> None:
        _check_collection(table)
        await self.ensure_user(user_id)
        async with self._lock:
            async with self.connect() as db:
                await db.execute(
                    f"INSERT OR IGNORE INTO {table}(user_id, card_id) VALUES (?, ?)",
                    (user_id, card_id),
                )
                await db.commit()

    async def _remove_collection_card(self, table: str, user_id: str, card_id: str) -> bool:
        _check_collection(table)
        async with self._lock:
            async with self.connect() as db:
                cursor = await db.execute(
                    f"DELETE FROM {table} WHERE user_id = ? AND card_id = ?",
                    (user_id, card_id),
                )
                await db.commit()
                return cursor.rowcount > 0

    async def _list_collection(self, table: str, user_id: str) -> List[Card]:
        _check_collection(table)
        async with self.connect() as db:
            cursor = await db.execute(
                f"SELECT c.card_id, c.name, c.set_name FROM {table} t\n"
                "JOIN cards c ON c.card_id = t.card_id WHERE t.user_id = ? ORDER BY c.name",
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [Card(card_id=row[0], name=row[1], set_name=row[2]) for row in rows]

    async def dump_state(self, tables: Sequence[str] = ("users", "trades", "trade_items")) -> List[Tuple[str, Tuple]]:
        """Used for debugging and tests to inspect stored state."""
        rows: List[Tuple[str, Tuple]] = []
        async with self.connect() as db:
            for table in tables:
                if table not in _DUMPABLE_TABLES:
                    raise ValueError(f"Unknown table {table!r}")
                cursor = await db.execute(f"SELECT * FROM {table}")
                for row in await cursor.fetchall():
                    rows.append((table, tuple(row)))
        return rows


_DUMPABLE_TABLES = frozenset(
    {
        "users",
        "cards",
        "have_cards",
        "want_cards",
        "trades",
        "trade_items",
        "trade_history",
        "user_trade_stats",
        "user_trade_outcomes",
        "user_review_stats",
        "trade_reviews",
        "trust_jobs",
    }
)


def _check_collection(table: str) -> None:
    if table not in {"have_cards", "want_cards"}:
        raise ValueError("Invalid collection table name")


def _user_from_row(row: Sequence) -> User:
    user_id, display_name, email_verified, trust_score, trust_grade, created_at = row
    return User(
        user_id=user_id,
        display_name=display_name or user_id,
        email_verified=bool(email_verified),
        trust_score=trust_score,
        trust_grade=TrustGrade(trust_grade) if trust_grade else None,
        created_at=parse_timestamp(created_at),
    )
