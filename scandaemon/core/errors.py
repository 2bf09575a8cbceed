"""Exception taxonomy for the scan daemon.

Admission errors are raised synchronously to the submitting caller and mean
no job was created.  Engine errors never escape a scanner adapter; they are
recorded on that engine's result.  Queue and store errors are transient
infrastructure failures retried by the orchestrator through the job queue's
backoff policy.
"""

from __future__ import annotations


class ScanDaemonError(Exception):
    """Base class for all scan daemon errors."""


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


class AdmissionError(ScanDaemonError):
    """A submission was rejected by the admission gatekeeper."""


class UnknownTierError(AdmissionError):
    def __init__(self, tier: str) -> None:
        super().__init__(f"Unknown subscription tier: {tier!r}")
        self.tier = tier


class FileTooLargeError(AdmissionError):
    def __init__(self, tier: str, size: int, limit: int) -> None:
        super().__init__(
            f"File size exceeds tier limit for {tier!r}: {size} > {limit} bytes"
        )
        self.tier = tier
        self.size = size
        self.limit = limit


class QuotaExceededError(AdmissionError):
    def __init__(self, caller_id: str, tier: str, limit: int) -> None:
        super().__init__(
            f"Daily scan limit exceeded for caller {caller_id!r} "
            f"(tier {tier!r}, {limit} jobs/day)"
        )
        self.caller_id = caller_id
        self.tier = tier
        self.limit = limit


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


class EngineError(ScanDaemonError):
    """A detection engine failed.  Isolated to the engine's own result."""


class AggregationError(ScanDaemonError):
    """Every engine for a job errored, so no verdict could be reached.

    Not raised across the pipeline; its message is recorded on the
    aggregated result and the job ends in status ``error``.
    """

    def __init__(self, job_id: str, engine_errors: dict[str, str]) -> None:
        detail = ", ".join(f"{k}: {v}" for k, v in engine_errors.items()) or "no engines ran"
        super().__init__(f"All scanners failed for job {job_id}: {detail}")
        self.job_id = job_id
        self.engine_errors = engine_errors


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class QueueError(ScanDaemonError):
    """The job queue backend is unavailable or returned an unexpected reply."""


class StoreError(ScanDaemonError):
    """The result store backend is unavailable or rejected a write."""


class JobStateError(ScanDaemonError):
    """A job status transition would regress a job's lifecycle."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Illegal status transition for job {job_id}: {current} -> {requested}"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobNotFoundError(ScanDaemonError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Scan job not found: {job_id}")
        self.job_id = job_id
