"""Unit tests for the admission gatekeeper (scandaemon/core/gatekeeper.py).

All collaborators are the in-memory implementations; failure modes are
injected with :class:`unittest.mock.AsyncMock`.

Coverage areas:

* Accepted submissions: receipt, queued status, queue entry, priority.
* Rejections in order: unknown tier, size limit, daily quota.  A rejection
  leaves no queue entry and consumes no quota.
* Quota atomicity under concurrent submissions.
* Enqueue / status-write failures release the quota reservation.
* Scanner-set snapshot is unaffected by a later policy change.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from scandaemon.core.errors import (
    FileTooLargeError,
    QueueError,
    QuotaExceededError,
    StoreError,
    UnknownTierError,
)
from scandaemon.core.gatekeeper import AdmissionGatekeeper, estimate_scan_time
from scandaemon.core.job_queue import InMemoryJobQueue
from scandaemon.core.models import JobStatus, Submission
from scandaemon.core.store import InMemoryResultStore
from scandaemon.core.tiers import MIB, TierPolicy, TierPolicyTable
from scandaemon.core.usage import InMemoryQuotaCounter

HASH = "a" * 64


def _submission(**overrides) -> Submission:
    fields = {
        "file_id": "file-1",
        "file_path": "/srv/uploads/file-1.dcm",
        "file_name": "scan.dcm",
        "file_size_bytes": 2048,
        "file_hash": HASH,
        "tier": "gold",
        "caller_id": "user-1",
    }
    fields.update(overrides)
    return Submission(**fields)


def _tiny_table(max_jobs_per_day: int = 2) -> TierPolicyTable:
    return TierPolicyTable(
        [TierPolicy("tiny", ("basic_validation",), 100, max_jobs_per_day, 3)]
    )


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def quota() -> InMemoryQuotaCounter:
    return InMemoryQuotaCounter()


@pytest.fixture
def store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture
def gatekeeper(queue, quota, store) -> AdmissionGatekeeper:
    return AdmissionGatekeeper(TierPolicyTable.default(), queue, quota, store)


# ---------------------------------------------------------------------------
# estimate_scan_time
# ---------------------------------------------------------------------------


class TestEstimateScanTime:
    def test_small_file_uses_per_scanner_baseline(self) -> None:
        assert estimate_scan_time(["basic_validation", "signature"], 1024) == 6

    def test_scales_with_size_above_reference(self) -> None:
        assert estimate_scan_time(["basic_validation", "signature"], 20 * MIB) == 12

    def test_unknown_scanner_uses_default(self) -> None:
        assert estimate_scan_time(["something_new"], 0) == 5


# ---------------------------------------------------------------------------
# Accepted submissions
# ---------------------------------------------------------------------------


class TestAccepted:
    async def test_returns_queued_receipt(self, gatekeeper, queue, store) -> None:
        receipt = await gatekeeper.submit(_submission())

        assert receipt.status == "queued"
        assert receipt.job_id
        assert receipt.estimated_time == estimate_scan_time(
            TierPolicyTable.default().get("gold").allowed_scanners, 2048
        )
        assert (await queue.status()).waiting == 1
        record = await store.get_job_status(receipt.job_id)
        assert record is not None
        assert record.status is JobStatus.QUEUED
        assert record.file_id == "file-1"

    async def test_job_carries_tier_scanners_and_priority(self, gatekeeper, queue) -> None:
        receipt = await gatekeeper.submit(_submission(tier="premium"))
        job = await queue.claim()

        assert job is not None
        assert job.id == receipt.job_id
        assert job.scanners == ("basic_validation", "signature", "rules_reduced")
        assert job.priority == 3

    async def test_named_priority_overrides_tier_default(self, gatekeeper, queue) -> None:
        await gatekeeper.submit(_submission(tier="free", file_id="slow"))
        await gatekeeper.submit(_submission(tier="free", file_id="fast", priority="urgent"))

        first = await queue.claim()
        assert first is not None
        assert first.file_id == "fast"
        assert first.priority == 1

    async def test_file_at_exact_limit_is_accepted(self, gatekeeper) -> None:
        receipt = await gatekeeper.submit(
            _submission(tier="free", file_size_bytes=10 * MIB)
        )
        assert receipt.status == "queued"

    async def test_job_ids_are_unique(self, gatekeeper) -> None:
        receipts = [await gatekeeper.submit(_submission()) for _ in range(5)]
        assert len({r.job_id for r in receipts}) == 5


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestRejected:
    async def test_unknown_tier(self, gatekeeper, queue, quota) -> None:
        with pytest.raises(UnknownTierError):
            await gatekeeper.submit(_submission(tier="platinum"))
        assert (await queue.status()).waiting == 0
        assert await quota.count("user-1") == 0

    async def test_file_too_large(self, gatekeeper, queue, quota) -> None:
        with pytest.raises(FileTooLargeError) as exc_info:
            await gatekeeper.submit(_submission(tier="free", file_size_bytes=10 * MIB + 1))
        assert exc_info.value.limit == 10 * MIB
        assert (await queue.status()).waiting == 0
        assert await quota.count("user-1") == 0

    async def test_negative_size(self, gatekeeper) -> None:
        with pytest.raises(ValueError):
            await gatekeeper.submit(_submission(file_size_bytes=-1))

    async def test_unknown_tier_wins_over_size(self, gatekeeper) -> None:
        with pytest.raises(UnknownTierError):
            await gatekeeper.submit(_submission(tier="platinum", file_size_bytes=10**12))

    async def test_daily_quota(self, queue, quota, store) -> None:
        gatekeeper = AdmissionGatekeeper(_tiny_table(2), queue, quota, store)
        await gatekeeper.submit(_submission(tier="tiny", file_size_bytes=10))
        await gatekeeper.submit(_submission(tier="tiny", file_size_bytes=10))

        with pytest.raises(QuotaExceededError):
            await gatekeeper.submit(_submission(tier="tiny", file_size_bytes=10))

        assert await quota.count("user-1") == 2
        assert (await queue.status()).waiting == 2

    async def test_quota_is_per_caller(self, queue, quota, store) -> None:
        gatekeeper = AdmissionGatekeeper(_tiny_table(1), queue, quota, store)
        await gatekeeper.submit(_submission(tier="tiny", file_size_bytes=10, caller_id="a"))
        await gatekeeper.submit(_submission(tier="tiny", file_size_bytes=10, caller_id="b"))
        assert (await queue.status()).waiting == 2

    async def test_concurrent_submissions_never_exceed_quota(self, queue, quota, store) -> None:
        gatekeeper = AdmissionGatekeeper(_tiny_table(3), queue, quota, store)

        results = await asyncio.gather(
            *(
                gatekeeper.submit(_submission(tier="tiny", file_size_bytes=10))
                for _ in range(10)
            ),
            return_exceptions=True,
        )

        admitted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, QuotaExceededError)]
        assert len(admitted) == 3
        assert len(rejected) == 7
        assert (await queue.status()).waiting == 3


# ---------------------------------------------------------------------------
# Infrastructure failures
# ---------------------------------------------------------------------------


class TestInfrastructureFailures:
    async def test_enqueue_failure_releases_quota(self, quota, store) -> None:
        queue = InMemoryJobQueue()
        queue.enqueue = AsyncMock(side_effect=QueueError("redis down"))  # type: ignore[method-assign]
        gatekeeper = AdmissionGatekeeper(TierPolicyTable.default(), queue, quota, store)

        with pytest.raises(QueueError):
            await gatekeeper.submit(_submission())

        assert await quota.count("user-1") == 0

    async def test_enqueue_failure_marks_status_error(self, quota, store) -> None:
        queue = InMemoryJobQueue()
        queue.enqueue = AsyncMock(side_effect=QueueError("redis down"))  # type: ignore[method-assign]
        gatekeeper = AdmissionGatekeeper(TierPolicyTable.default(), queue, quota, store)

        with pytest.raises(QueueError):
            await gatekeeper.submit(_submission())

        job_id = queue.enqueue.await_args.args[0].id
        record = await store.get_job_status(job_id)
        assert record is not None
        assert record.status is JobStatus.ERROR
        assert "redis down" in (record.error or "")

    async def test_status_write_failure_releases_quota_and_skips_queue(
        self, queue, quota
    ) -> None:
        store = InMemoryResultStore()
        store.put_job_status = AsyncMock(side_effect=StoreError("db down"))  # type: ignore[method-assign]
        gatekeeper = AdmissionGatekeeper(TierPolicyTable.default(), queue, quota, store)

        with pytest.raises(StoreError):
            await gatekeeper.submit(_submission())

        assert await quota.count("user-1") == 0
        assert (await queue.status()).waiting == 0


# ---------------------------------------------------------------------------
# Policy snapshot
# ---------------------------------------------------------------------------


async def test_replacing_tiers_does_not_change_queued_jobs(gatekeeper, queue) -> None:
    await gatekeeper.submit(_submission(tier="gold"))
    gatekeeper.replace_tiers(
        TierPolicyTable([TierPolicy("gold", ("basic_validation",), 100 * MIB, 10, 2)])
    )

    job = await queue.claim()

    assert job is not None
    assert job.scanners == TierPolicyTable.default().get("gold").allowed_scanners
    assert gatekeeper.tiers.get("gold").allowed_scanners == ("basic_validation",)
