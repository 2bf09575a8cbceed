"""Admission gatekeeper — validates submissions and creates scan jobs.

Checks run in a fixed order and the first failure wins:

1. unknown tier        → :class:`~scandaemon.core.errors.UnknownTierError`
2. file too large      → :class:`~scandaemon.core.errors.FileTooLargeError`
3. daily quota reached → :class:`~scandaemon.core.errors.QuotaExceededError`

The quota check reserves the slot atomically (``QuotaCounter.try_admit``).
If the job then cannot be enqueued the reservation is released, so only
admitted jobs count towards the quota and a rejected submission leaves no
queue side effects.
"""
from __future__ import annotations

import logging
import uuid
from types import MappingProxyType
from typing import Iterable, Mapping

from scandaemon.core.errors import (
    FileTooLargeError,
    JobStateError,
    QuotaExceededError,
    StoreError,
)
from scandaemon.core.job_queue import JobQueue
from scandaemon.core.models import JobStatus, ScanJob, Submission, SubmissionReceipt
from scandaemon.core.store import ResultStore
from scandaemon.core.tiers import MIB, TierPolicyTable, resolve_priority
from scandaemon.core.usage import QuotaCounter, today_utc

logger = logging.getLogger(__name__)

#: Expected seconds per scanner for a file of :data:`REFERENCE_SIZE_BYTES`.
SCANNER_EXPECTED_SECONDS: Mapping[str, int] = MappingProxyType(
    {
        "basic_validation": 1,
        "signature": 5,
        "rules_reduced": 3,
        "rules_full": 8,
        "reputation": 15,
        "heuristic": 10,
    }
)
DEFAULT_SCANNER_SECONDS = 5
REFERENCE_SIZE_BYTES = 10 * MIB


def estimate_scan_time(scanners: Iterable[str], file_size_bytes: int) -> int:
    """Estimated seconds to scan a file with *scanners*."""
    base = sum(SCANNER_EXPECTED_SECONDS.get(s, DEFAULT_SCANNER_SECONDS) for s in scanners)
    size_factor = max(1.0, file_size_bytes / REFERENCE_SIZE_BYTES)
    return round(base * size_factor)


class AdmissionGatekeeper:
    """Admits submissions into the job queue.

    Args:
        tiers: Tier policy table consulted for every submission.
        queue: Destination job queue.
        quota: Per-caller daily admission counter.
        store: Result store; receives the initial ``queued`` status.
    """

    def __init__(
        self,
        tiers: TierPolicyTable,
        queue: JobQueue,
        quota: QuotaCounter,
        store: ResultStore,
    ) -> None:
        self._tiers = tiers
        self._queue = queue
        self._quota = quota
        self._store = store

    @property
    def tiers(self) -> TierPolicyTable:
        return self._tiers

    def replace_tiers(self, tiers: TierPolicyTable) -> None:
        """Swap the policy table; jobs already admitted keep their snapshot."""
        self._tiers = tiers

    async def submit(self, submission: Submission) -> SubmissionReceipt:
        """Validate *submission*, enqueue a job and return its receipt.

        Raises:
            UnknownTierError: The tier is not in the policy table.
            FileTooLargeError: The file exceeds the tier's size limit.
            QuotaExceededError: The caller reached the tier's daily limit.
            QueueError: The queue rejected the job; no job was created.
            ValueError: The submission carries a negative size or an
                invalid priority.
        """
        if submission.file_size_bytes < 0:
            raise ValueError("file_size_bytes must not be negative")

        policy = self._tiers.get(submission.tier)
        if submission.file_size_bytes > policy.max_file_size_bytes:
            raise FileTooLargeError(
                policy.name, submission.file_size_bytes, policy.max_file_size_bytes
            )

        priority = resolve_priority(submission.priority, policy.base_priority)

        day = today_utc()
        if not await self._quota.try_admit(submission.caller_id, policy.max_jobs_per_day, day):
            raise QuotaExceededError(submission.caller_id, policy.name, policy.max_jobs_per_day)

        job = ScanJob(
            id=str(uuid.uuid4()),
            file_id=submission.file_id,
            file_path=submission.file_path,
            file_name=submission.file_name,
            file_size_bytes=submission.file_size_bytes,
            file_hash=submission.file_hash,
            tier=policy.name,
            caller_id=submission.caller_id,
            priority=priority,
            scanners=policy.allowed_scanners,
            metadata=dict(submission.metadata),
        )

        # Status first: a worker may claim the job the moment it is enqueued.
        try:
            await self._store.put_job_status(
                job.id, job.file_id, JobStatus.QUEUED, job.submitted_at
            )
        except Exception:
            await self._quota.release(submission.caller_id, day)
            raise
        try:
            await self._queue.enqueue(job)
        except Exception as exc:
            await self._quota.release(submission.caller_id, day)
            await self._abandon(job, exc)
            raise

        estimated = estimate_scan_time(job.scanners, job.file_size_bytes)
        logger.info(
            "Job admitted job_id=%s file_id=%s tier=%s caller_id=%s priority=%d "
            "scanners=%s estimated_s=%d",
            job.id,
            job.file_id,
            job.tier,
            job.caller_id,
            job.priority,
            ",".join(job.scanners),
            estimated,
        )
        return SubmissionReceipt(job_id=job.id, status=JobStatus.QUEUED.value, estimated_time=estimated)

    async def _abandon(self, job: ScanJob, exc: Exception) -> None:
        try:
            await self._store.put_job_status(
                job.id, job.file_id, JobStatus.ERROR, error=f"enqueue failed: {exc}"
            )
        except (StoreError, JobStateError) as store_exc:
            logger.warning(
                "Could not mark unqueued job as error job_id=%s error=%r", job.id, store_exc
            )
        logger.error("Job not enqueued job_id=%s error=%r", job.id, exc)
