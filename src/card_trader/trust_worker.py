"""Trust score recomputation and the recalculation job queue."""
from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import aiosqlite

from . import errors
from .database import Database
from .errors import ErrorCode, TradeError
from .models import (
    SocialProfile,
    TrustJob,
    TrustJobStatus,
    TrustScoreSnapshot,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from .social import RateLimitError, XProfileClient
from .stats import StatsAggregator
from .trust import BehaviorSignals, ProfileSignals, ReviewSignals, compute_trust_score

_log = logging.getLogger(__name__)

JOB_COLUMNS = "id, user_id, status, created_at, started_at, finished_at, error_message"


@dataclass
class RunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    rate_limited: bool = False


class TrustService:
    """Keeps each user's materialised trust snapshot in step with their record.

    Recomputation for one user is serialised with a per-user lock; different
    users recompute independently.
    """

    def __init__(
        self,
        db: Database,
        stats: Optional[StatsAggregator] = None,
        *,
        x_client: Optional[XProfileClient] = None,
        queue_limit: int = 1000,
        batch_size: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self.stats = stats or StatsAggregator(db)
        self.x_client = x_client
        self.queue_limit = queue_limit
        self.batch_size = batch_size
        self._clock = clock
        # Entries vanish once no recompute holds or waits on the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def recompute_trust_score(self, user_id: str) -> TrustScoreSnapshot:
        async with self._lock_for(user_id):
            user = await self._db.get_user(user_id)
            if user is None:
                raise errors.not_found("User not found", user_id=user_id)

            now = self._clock()
            inputs = await self.stats.trust_inputs(user_id)
            profile = await self._db.get_social_profile(user_id)
            computed = compute_trust_score(
                user_id,
                profile=ProfileSignals.from_profile(profile, now) if profile else None,
                email_verified=user.email_verified,
                behavior=BehaviorSignals.from_stats(inputs.trade, inputs.recent_outcomes, now),
                review=ReviewSignals.from_stats(inputs.review),
                updated_at=now,
            )

            stored = await self._db.get_trust_snapshot(user_id)
            if stored is not None and _same_score(stored, computed):
                return stored

            await self._db.save_trust_snapshot(computed)
            _log.info(
                "Trust score for %s is now %s (%s)",
                user_id,
                computed.trust_score,
                computed.trust_grade.value,
            )
            return computed

    async def get_trust_score(self, user_id: str) -> TrustScoreSnapshot:
        """Return the stored snapshot, computing it on first use."""

        stored = await self._db.get_trust_snapshot(user_id)
        if stored is not None:
            return stored
        return await self.recompute_trust_score(user_id)

    async def link_x_account(self, user_id: str, username: str) -> SocialProfile:
        handle = username.strip().lstrip("@")
        if not handle:
            raise errors.validation("An X username is required")
        if self.x_client is not None:
            profile = await self.x_client.fetch_profile(user_id, handle)
        else:
            profile = SocialProfile(user_id=user_id, username=handle)
        await self._db.save_social_profile(profile)
        return profile

    # Job queue ------------------------------------------------------------

    async def request_recalculation(self, user_id: str) -> TrustJob:
        """Queue a recalculation, reusing any job already waiting for the user."""

        now = format_timestamp(self._clock())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"SELECT {JOB_COLUMNS} FROM trust_jobs\n"
                "WHERE user_id = ? AND status IN ('queued', 'running')\n"
                "ORDER BY created_at DESC LIMIT 1",
                (user_id,),
            )
            existing = await cursor.fetchone()
            if existing is not None:
                return _job_from_row(existing)

            cursor = await conn.execute(
                "SELECT COUNT(*) FROM trust_jobs WHERE status = 'queued'"
            )
            (queued,) = await cursor.fetchone()
            if queued >= self.queue_limit:
                raise TradeError(
                    ErrorCode.QUEUE_FULL,
                    "The trust queue is full, try again later",
                    details={"queued": queued},
                )

            job_id = uuid.uuid4().hex
            await conn.execute(
                "INSERT INTO trust_jobs(id, user_id, status, created_at) VALUES (?, ?, 'queued', ?)",
                (job_id, user_id, now),
            )
        return TrustJob(
            id=job_id,
            user_id=user_id,
            status=TrustJobStatus.QUEUED,
            created_at=parse_timestamp(now),
        )

    async def get_job(self, job_id: str) -> Optional[TrustJob]:
        async with self._db.connect() as db:
            cursor = await db.execute(
                f"SELECT {JOB_COLUMNS} FROM trust_jobs WHERE id = ?", (job_id,)
            )
            row = await cursor.fetchone()
        return _job_from_row(row) if row else None

    async def latest_job(self, user_id: str) -> Optional[TrustJob]:
        async with self._db.connect() as db:
            cursor = await db.execute(
                f"SELECT {JOB_COLUMNS} FROM trust_jobs WHERE user_id = ?\n"
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (user_id,),
            )
            row = await cursor.fetchone()
        return _job_from_row(row) if row else None

    async def queue_position(self, job: TrustJob) -> Optional[int]:
        """1-based position of a queued job, or ``None`` once it has left the queue."""

        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT status, created_at, rowid FROM trust_jobs WHERE id = ?", (job.id,)
            )
            row = await cursor.fetchone()
            if row is None or row[0] != TrustJobStatus.QUEUED.value:
                return None
            cursor = await db.execute(
                "SELECT COUNT(*) FROM trust_jobs WHERE status = 'queued'\n"
                "AND (created_at < ? OR (created_at = ? AND rowid < ?))",
                (row[1], row[1], row[2]),
            )
            (ahead,) = await cursor.fetchone()
        return ahead + 1

    async def run_pending(self, limit: Optional[int] = None) -> RunSummary:
        """Process queued jobs oldest first.

        A rate-limited profile refresh puts its job back in the queue and ends
        the batch; any other failure marks the job failed and moves on.
        """

        summary = RunSummary()
        for _ in range(limit or self.batch_size):
            job = await self._claim_next()
            if job is None:
                break
            try:
                await self._refresh_profile(job.user_id)
                await self.recompute_trust_score(job.user_id)
            except RateLimitError:
                _log.warning("X API rate limited, requeueing trust job %s", job.id)
                await self._requeue(job)
                summary.rate_limited = True
                break
            except Exception as exc:
                _log.exception("Trust job %s for user %s failed", job.id, job.user_id)
                await self._finish(job, TrustJobStatus.FAILED, str(exc) or type(exc).__name__)
                summary.failed += 1
                summary.processed += 1
                continue
            await self._finish(job, TrustJobStatus.SUCCEEDED)
            summary.succeeded += 1
            summary.processed += 1
        return summary

    async def _refresh_profile(self, user_id: str) -> None:
        if self.x_client is None:
            return
        profile = await self._db.get_social_profile(user_id)
        if profile is None:
            return
        fresh = await self.x_client.fetch_profile(user_id, profile.username)
        await self._db.save_social_profile(fresh)

    async def _claim_next(self) -> Optional[TrustJob]:
        now = format_timestamp(self._clock())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"SELECT {JOB_COLUMNS} FROM trust_jobs WHERE status = 'queued'\n"
                "ORDER BY created_at, rowid LIMIT 1"
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await conn.execute(
                "UPDATE trust_jobs SET status = 'running', started_at = ?\n"
                "WHERE id = ? AND status = 'queued'",
                (now, row["id"]),
            )
            if cursor.rowcount == 0:
                return None
        job = _job_from_row(row)
        return TrustJob(
            id=job.id,
            user_id=job.user_id,
            status=TrustJobStatus.RUNNING,
            created_at=job.created_at,
            started_at=parse_timestamp(now),
        )

    async def _requeue(self, job: TrustJob) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "UPDATE trust_jobs SET status = 'queued', started_at = NULL WHERE id = ?",
                (job.id,),
            )

    async def _finish(
        self, job: TrustJob, status: TrustJobStatus, error_message: Optional[str] = None
    ) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "UPDATE trust_jobs SET status = ?, finished_at = ?, error_message = ? WHERE id = ?",
                (status.value, format_timestamp(self._clock()), error_message, job.id),
            )


def _same_score(stored: TrustScoreSnapshot, computed: TrustScoreSnapshot) -> bool:
    return (
        stored.trust_score == computed.trust_score
        and stored.trust_grade is computed.trust_grade
        and stored.components == computed.components
    )


def _job_from_row(row: aiosqlite.Row) -> TrustJob:
    return TrustJob(
        id=row[0],
        user_id=row[1],
        status=TrustJobStatus(row[2]),
        created_at=parse_timestamp(row[3]),
        started_at=parse_timestamp(row[4]),
        finished_at=parse_timestamp(row[5]),
        error_message=row[6],
    )
