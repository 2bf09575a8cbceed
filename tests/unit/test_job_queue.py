"""Unit tests for scandaemon/core/job_queue.py.

Every behavioural test runs against both implementations: the in-memory
heap queue and the Redis queue backed by ``fakeredis``.  Time is injected
through a fake clock so backoff is tested without sleeping.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from scandaemon.core.errors import QueueError
from scandaemon.core.job_queue import InMemoryJobQueue, RedisJobQueue, backoff_delay
from scandaemon.core.models import ScanJob


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _job(job_id: str, priority: int = 3) -> ScanJob:
    return ScanJob(
        id=job_id,
        file_id=f"file-{job_id}",
        file_path=f"/srv/uploads/{job_id}",
        file_name="scan.dcm",
        file_size_bytes=10,
        file_hash="0" * 64,
        tier="gold",
        caller_id="user-1",
        priority=priority,
        scanners=("basic_validation",),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(params=["memory", "redis"])
async def queue(request, clock):
    if request.param == "memory":
        yield InMemoryJobQueue(max_attempts=3, retry_base_seconds=2.0, clock=clock)
        return
    fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield RedisJobQueue(fake, max_attempts=3, retry_base_seconds=2.0, clock=clock)
    await fake.aclose()


# ---------------------------------------------------------------------------
# backoff_delay
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("attempt, expected", [(1, 2.0), (2, 4.0), (3, 8.0)])
def test_backoff_delay_doubles(attempt: int, expected: float) -> None:
    assert backoff_delay(attempt, 2.0) == expected


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        InMemoryJobQueue(max_attempts=0)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class TestOrdering:
    async def test_empty_queue_claims_none(self, queue) -> None:
        assert await queue.claim() is None

    async def test_fifo_within_same_priority(self, queue) -> None:
        for job_id in ("a", "b", "c"):
            await queue.enqueue(_job(job_id))

        claimed = [(await queue.claim()).id for _ in range(3)]

        assert claimed == ["a", "b", "c"]

    async def test_lower_priority_number_first(self, queue) -> None:
        await queue.enqueue(_job("low", priority=4))
        await queue.enqueue(_job("urgent", priority=1))
        await queue.enqueue(_job("normal", priority=3))

        claimed = [(await queue.claim()).id for _ in range(3)]

        assert claimed == ["urgent", "normal", "low"]

    async def test_claimed_job_round_trips(self, queue) -> None:
        job = _job("a", priority=2)
        await queue.enqueue(job)

        claimed = await queue.claim()

        assert claimed is not None
        assert claimed.id == "a"
        assert claimed.scanners == ("basic_validation",)
        assert claimed.priority == 2

    async def test_duplicate_enqueue_rejected(self, queue) -> None:
        await queue.enqueue(_job("a"))
        with pytest.raises(QueueError):
            await queue.enqueue(_job("a"))


# ---------------------------------------------------------------------------
# Claim exclusivity
# ---------------------------------------------------------------------------


async def test_concurrent_claims_hand_out_each_job_once(queue) -> None:
    for i in range(20):
        await queue.enqueue(_job(f"j{i}"))

    claimed = await asyncio.gather(*(queue.claim() for _ in range(40)))

    ids = [job.id for job in claimed if job is not None]
    assert len(ids) == 20
    assert len(set(ids)) == 20


# ---------------------------------------------------------------------------
# Ack / retry / fail
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_ack_counts_completed(self, queue) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()

        await queue.ack("a")

        status = await queue.status()
        assert status.completed == 1
        assert status.active == 0
        assert status.waiting == 0

    async def test_status_counts_active(self, queue) -> None:
        await queue.enqueue(_job("a"))
        await queue.enqueue(_job("b"))
        await queue.claim()

        status = await queue.status()

        assert status.waiting == 1
        assert status.active == 1

    async def test_retry_delays_job_with_backoff(self, queue, clock) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()

        assert await queue.retry("a", "db down") is True
        assert await queue.attempts("a") == 1
        assert (await queue.status()).waiting == 1

        clock.advance(1.9)
        assert await queue.claim() is None
        clock.advance(0.2)
        job = await queue.claim()
        assert job is not None and job.id == "a"

    async def test_second_retry_waits_longer(self, queue, clock) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()
        await queue.retry("a", "first")
        clock.advance(2.0)
        await queue.claim()

        assert await queue.retry("a", "second") is True

        clock.advance(3.0)
        assert await queue.claim() is None
        clock.advance(1.0)
        assert (await queue.claim()) is not None

    async def test_retry_exhausted_after_max_attempts(self, queue, clock) -> None:
        await queue.enqueue(_job("a"))
        results = []
        for _ in range(3):
            assert (await queue.claim()) is not None
            results.append(await queue.retry("a", "still down"))
            clock.advance(60)

        assert results == [True, True, False]

        await queue.fail("a", "still down")
        status = await queue.status()
        assert status.failed == 1
        assert status.active == 0
        assert status.waiting == 0

    async def test_retry_of_unclaimed_job_rejected(self, queue) -> None:
        await queue.enqueue(_job("a"))
        with pytest.raises(QueueError):
            await queue.retry("a", "boom")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:
    async def test_cancel_waiting_job(self, queue) -> None:
        await queue.enqueue(_job("a"))
        await queue.enqueue(_job("b"))

        assert await queue.cancel("a") is True

        claimed = await queue.claim()
        assert claimed is not None and claimed.id == "b"
        assert await queue.claim() is None

    async def test_cancel_delayed_job(self, queue, clock) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()
        await queue.retry("a", "boom")

        assert await queue.cancel("a") is True

        clock.advance(100)
        assert await queue.claim() is None

    async def test_cancel_active_job_refused(self, queue) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()
        assert await queue.cancel("a") is False

    async def test_cancel_unknown_job(self, queue) -> None:
        assert await queue.cancel("missing") is False

    async def test_cancelled_job_not_counted(self, queue) -> None:
        await queue.enqueue(_job("a"))
        await queue.cancel("a")
        assert (await queue.status()).waiting == 0


# ---------------------------------------------------------------------------
# Stale claims
# ---------------------------------------------------------------------------


class TestStaleClaims:
    async def test_requeue_stale_returns_abandoned_claims(self, queue, clock) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()

        clock.advance(60)
        assert await queue.requeue_stale(900) == 0

        clock.advance(900)
        assert await queue.requeue_stale(900) == 1
        job = await queue.claim()
        assert job is not None and job.id == "a"

    async def test_requeued_job_can_be_acked_after_reclaim(self, queue, clock) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()
        clock.advance(1000)
        await queue.requeue_stale(900)

        await queue.claim()
        await queue.ack("a")

        status = await queue.status()
        assert status.completed == 1
        assert status.active == 0
        assert status.waiting == 0

    async def test_delayed_jobs_are_not_stale(self, queue, clock) -> None:
        await queue.enqueue(_job("a"))
        await queue.claim()
        await queue.retry("a", "boom")

        clock.advance(1000)

        assert await queue.requeue_stale(900) == 0


# ---------------------------------------------------------------------------
# Redis specifics
# ---------------------------------------------------------------------------


class TestRedisJobQueue:
    async def test_claim_moves_job_to_active_in_one_step(self, clock) -> None:
        fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
        queue = RedisJobQueue(fake, clock=clock)
        await queue.enqueue(_job("a"))

        await queue.claim()

        assert await fake.zcard("scandaemon:queue:waiting") == 0
        assert await fake.hget("scandaemon:queue:active", "a") == repr(clock.now)
        assert await fake.hexists("scandaemon:queue:jobs", "a")
        await fake.aclose()

    async def test_retry_moves_job_from_active_to_delayed(self, clock) -> None:
        fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
        queue = RedisJobQueue(fake, clock=clock)
        await queue.enqueue(_job("a"))
        await queue.claim()

        await queue.retry("a", "db down")

        assert not await fake.hexists("scandaemon:queue:active", "a")
        assert await fake.zscore("scandaemon:queue:delayed", "a") == clock.now + 2.0
        await fake.aclose()

    async def test_concurrent_promotion_hands_out_delayed_job_once(self, clock) -> None:
        fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
        workers = [RedisJobQueue(fake, clock=clock) for _ in range(4)]
        await workers[0].enqueue(_job("a"))
        await workers[0].claim()
        await workers[0].retry("a", "boom")
        clock.advance(10)

        claimed = await asyncio.gather(*(w.claim() for w in workers))

        assert [job.id for job in claimed if job is not None] == ["a"]
        assert (await workers[0].status()).active == 1
        await fake.aclose()

    async def test_concurrent_requeue_counts_each_job_once(self, clock) -> None:
        fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
        workers = [RedisJobQueue(fake, clock=clock) for _ in range(3)]
        await workers[0].enqueue(_job("a"))
        await workers[0].claim()
        clock.advance(1000)

        counts = await asyncio.gather(*(w.requeue_stale(900) for w in workers))

        assert sum(counts) == 1
        assert (await workers[0].status()).waiting == 1
        await fake.aclose()

    async def test_entry_without_payload_is_dropped(self, clock) -> None:
        fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
        queue = RedisJobQueue(fake, clock=clock)
        await queue.enqueue(_job("a"))
        await queue.enqueue(_job("b"))
        await fake.hdel("scandaemon:queue:jobs", "a")

        job = await queue.claim()

        assert job is not None and job.id == "b"
        assert await queue.claim() is None
        await fake.aclose()

    async def test_two_queue_instances_share_state(self, clock) -> None:
        fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
        producer = RedisJobQueue(fake, clock=clock)
        consumer = RedisJobQueue(fake, clock=clock)

        await producer.enqueue(_job("a"))
        job = await consumer.claim()

        assert job is not None and job.id == "a"
        assert await producer.claim() is None
        await fake.aclose()

    async def test_redis_errors_become_queue_errors(self) -> None:
        redis_client = MagicMock()
        redis_client.register_script = MagicMock(
            return_value=AsyncMock(side_effect=RedisConnectionError("refused"))
        )
        queue = RedisJobQueue(redis_client)

        with pytest.raises(QueueError, match="claim failed"):
            await queue.claim()
        with pytest.raises(QueueError, match="enqueue failed"):
            await queue.enqueue(_job("a"))
        with pytest.raises(QueueError, match="ack failed"):
            await queue.ack("a")
        with pytest.raises(QueueError, match="retry failed"):
            await queue.retry("a", "boom")
