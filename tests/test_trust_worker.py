import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Optional

import pytest

from card_trader.errors import ErrorCode, TradeError
from card_trader.models import SocialProfile, Trade, TradeStatus, TrustGrade, TrustJobStatus
from card_trader.social import RateLimitError
from card_trader.stats import StatsAggregator
from card_trader.trust_worker import TrustService

from helpers import Clock, init_db

pytestmark = pytest.mark.asyncio


class FakeXClient:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls = []

    async def fetch_profile(self, user_id: str, username: str) -> SocialProfile:
        self.calls.append((user_id, username))
        if self.error is not None:
            raise self.error
        return SocialProfile(
            user_id=user_id,
            username=username,
            account_created_at=Clock().now - timedelta(days=365 * 6),
            followers_count=5000,
            tweet_count=9000,
            has_profile_image=True,
            has_description=True,
            verified=True,
        )


async def init_trust(tmp_path: Path, **kwargs) -> TrustService:
    db = await init_db(tmp_path)
    clock = kwargs.pop("clock", None) or Clock()
    return TrustService(db, StatsAggregator(db), clock=clock, **kwargs)


async def test_new_user_scores_zero(tmp_path: Path):
    trust = await init_trust(tmp_path)
    await trust._db.ensure_user("alice")

    snapshot = await trust.get_trust_score("alice")

    assert snapshot.trust_score == 0
    assert snapshot.trust_grade is TrustGrade.U
    stored = await trust._db.get_user("alice")
    assert stored.trust_grade is TrustGrade.U


async def test_unknown_user_is_not_found(tmp_path: Path):
    trust = await init_trust(tmp_path)

    with pytest.raises(TradeError) as excinfo:
        await trust.recompute_trust_score("ghost")

    assert excinfo.value.code is ErrorCode.NOT_FOUND


async def test_recompute_without_changes_keeps_snapshot(tmp_path: Path):
    clock = Clock()
    trust = await init_trust(tmp_path, clock=clock)
    await trust._db.ensure_user("alice")
    await trust._db.set_email_verified("alice")

    first = await trust.recompute_trust_score("alice")
    clock.advance(hours=1)
    second = await trust.recompute_trust_score("alice")

    assert first.components.x_profile == 10
    assert second == first
    assert second.updated_at == first.updated_at


async def test_recompute_reflects_new_outcomes(tmp_path: Path):
    clock = Clock()
    trust = await init_trust(tmp_path, clock=clock)
    await trust._db.ensure_user("alice")
    before = await trust.recompute_trust_score("alice")

    trade = Trade(
        id="t1",
        room_slug="room-t1",
        initiator_user_id="alice",
        responder_user_id="bob",
        status=TradeStatus.COMPLETED,
        created_at=clock(),
        updated_at=clock(),
    )
    await trust.stats.record_trade_outcome(trade, TradeStatus.COMPLETED, clock())
    clock.advance(minutes=5)
    after = await trust.recompute_trust_score("alice")

    assert after.components.behavior == 4 + 5
    assert after.trust_score > before.trust_score
    assert after.updated_at == clock()


async def test_request_recalculation_reuses_waiting_job(tmp_path: Path):
    trust = await init_trust(tmp_path)

    first = await trust.request_recalculation("alice")
    second = await trust.request_recalculation("alice")

    assert first.status is TrustJobStatus.QUEUED
    assert second.id == first.id
    assert (await trust.latest_job("alice")).id == first.id


async def test_queue_full_is_reported(tmp_path: Path):
    trust = await init_trust(tmp_path, queue_limit=2)
    await trust.request_recalculation("alice")
    await trust.request_recalculation("bob")

    with pytest.raises(TradeError) as excinfo:
        await trust.request_recalculation("carol")

    assert excinfo.value.code is ErrorCode.QUEUE_FULL
    assert excinfo.value.http_status == 503
    assert excinfo.value.details["queued"] == 2


async def test_queue_position_follows_creation_order(tmp_path: Path):
    clock = Clock()
    trust = await init_trust(tmp_path, clock=clock)
    for user_id in ("alice", "bob", "carol"):
        await trust._db.ensure_user(user_id)
    jobs = [await trust.request_recalculation(user_id) for user_id in ("alice", "bob", "carol")]

    assert [await trust.queue_position(job) for job in jobs] == [1, 2, 3]

    summary = await trust.run_pending(limit=1)

    assert summary.processed == 1
    assert await trust.queue_position(jobs[0]) is None
    assert await trust.queue_position(jobs[1]) == 1
    done = await trust.get_job(jobs[0].id)
    assert done.status is TrustJobStatus.SUCCEEDED
    assert done.finished_at == clock()


async def test_run_pending_marks_failures_and_continues(tmp_path: Path):
    trust = await init_trust(tmp_path)
    await trust._db.ensure_user("alice")
    ghost_job = await trust.request_recalculation("ghost")
    alice_job = await trust.request_recalculation("alice")

    summary = await trust.run_pending()

    assert summary.processed == 2
    assert summary.succeeded == 1
    assert summary.failed == 1
    failed = await trust.get_job(ghost_job.id)
    assert failed.status is TrustJobStatus.FAILED
    assert failed.error_message == "User not found"
    assert (await trust.get_job(alice_job.id)).status is TrustJobStatus.SUCCEEDED


async def test_run_pending_respects_batch_size(tmp_path: Path):
    trust = await init_trust(tmp_path, batch_size=2)
    for user_id in ("alice", "bob", "carol"):
        await trust._db.ensure_user(user_id)
        await trust.request_recalculation(user_id)

    summary = await trust.run_pending()

    assert summary.processed == 2
    assert (await trust.latest_job("carol")).status is TrustJobStatus.QUEUED


async def test_rate_limit_requeues_and_stops(tmp_path: Path):
    client = FakeXClient(error=RateLimitError())
    trust = await init_trust(tmp_path, x_client=client)
    await trust._db.save_social_profile(SocialProfile(user_id="alice", username="alice_cards"))
    await trust._db.ensure_user("bob")
    alice_job = await trust.request_recalculation("alice")
    bob_job = await trust.request_recalculation("bob")

    summary = await trust.run_pending()

    assert summary.rate_limited
    assert summary.processed == 0
    assert client.calls == [("alice", "alice_cards")]
    requeued = await trust.get_job(alice_job.id)
    assert requeued.status is TrustJobStatus.QUEUED
    assert requeued.started_at is None
    assert (await trust.get_job(bob_job.id)).status is TrustJobStatus.QUEUED


async def test_job_refreshes_linked_profile(tmp_path: Path):
    client = FakeXClient()
    trust = await init_trust(tmp_path, x_client=client)
    await trust.link_x_account("alice", "@alice_cards")
    await trust.request_recalculation("alice")

    await trust.run_pending()

    snapshot = await trust.get_trust_score("alice")
    assert snapshot.components.x_profile == 35
    assert client.calls == [("alice", "alice_cards"), ("alice", "alice_cards")]


async def test_link_without_client_stores_handle(tmp_path: Path):
    trust = await init_trust(tmp_path)

    profile = await trust.link_x_account("alice", " @alice_cards ")

    assert profile.username == "alice_cards"
    stored = await trust._db.get_social_profile("alice")
    assert stored.username == "alice_cards"

    with pytest.raises(TradeError) as excinfo:
        await trust.link_x_account("alice", "@")
    assert excinfo.value.code is ErrorCode.VALIDATION


async def test_user_locks_are_released_after_recompute(tmp_path: Path):
    trust = await init_trust(tmp_path)
    for user_id in ("alice", "bob"):
        await trust._db.ensure_user(user_id)

    await asyncio.gather(
        trust.recompute_trust_score("alice"),
        trust.recompute_trust_score("alice"),
        trust.recompute_trust_score("bob"),
    )

    assert len(trust._locks) == 0
