"""Usage and statistics tracking.

Two pieces of shared mutable state live here, each owned by one object and
updated under a single-writer discipline:

* :class:`StatsTracker` — rolling outcome counters and a moving average of
  scan duration, updated once per finished job by whichever orchestrator
  worker finished it.  Counts are mirrored to Prometheus.
* :class:`QuotaCounter` — per-caller, per-UTC-day admitted job counts
  consulted by the admission gatekeeper.  ``try_admit`` checks and
  increments in one atomic step so concurrent submissions can never push a
  caller past the limit.

Redis key format for the quota counter
--------------------------------------
``scandaemon:quota:{caller_id}:{YYYY-MM-DD}`` — an integer with a two-day TTL.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime, timezone

from prometheus_client import Counter, Histogram
from redis.asyncio import Redis
from redis.exceptions import RedisError

from scandaemon.core.errors import QueueError
from scandaemon.core.models import AggregatedResult, EngineStatus, StatsSnapshot

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

#: Finished scans by aggregated outcome.
scans_total = Counter(
    "scandaemon_scans_total",
    "Total number of finished scan jobs",
    ["status"],
)

#: Wall-clock scan time of finished jobs.
scan_duration_seconds = Histogram(
    "scandaemon_scan_duration_seconds",
    "Scan job duration in seconds",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


# ---------------------------------------------------------------------------
# Stats tracker
# ---------------------------------------------------------------------------


class StatsTracker:
    """Rolling counters of scan outcomes.

    The moving average weights the newest sample at one half
    (``avg = (avg + t) / 2``); the first sample seeds it directly.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._total = 0
        self._clean = 0
        self._suspicious = 0
        self._infected = 0
        self._errors = 0
        self._average_ms = 0.0

    async def record(self, result: AggregatedResult) -> StatsSnapshot:
        """Count one finished job and return the updated snapshot."""
        async with self._lock:
            self._total += 1
            if result.status is EngineStatus.CLEAN:
                self._clean += 1
            elif result.status is EngineStatus.SUSPICIOUS:
                self._suspicious += 1
            elif result.status is EngineStatus.INFECTED:
                self._infected += 1
            else:
                self._errors += 1

            if result.scan_time_ms > 0:
                if self._total == 1 or self._average_ms == 0:
                    self._average_ms = float(result.scan_time_ms)
                else:
                    self._average_ms = (self._average_ms + result.scan_time_ms) / 2
            snapshot = self._snapshot_locked()

        scans_total.labels(status=result.status.value).inc()
        scan_duration_seconds.observe(result.scan_time_ms / 1000)
        return snapshot

    async def snapshot(self) -> StatsSnapshot:
        async with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> StatsSnapshot:
        return StatsSnapshot(
            total_scans=self._total,
            clean_files=self._clean,
            suspicious_files=self._suspicious,
            infected_files=self._infected,
            errors=self._errors,
            average_scan_time_ms=round(self._average_ms),
        )


# ---------------------------------------------------------------------------
# Daily quota counter
# ---------------------------------------------------------------------------


class QuotaCounter(abc.ABC):
    """Per-caller daily counter of admitted jobs."""

    @abc.abstractmethod
    async def try_admit(self, caller_id: str, limit: int, day: date | None = None) -> bool:
        """Reserve one admission for *caller_id* on *day*.

        Returns ``True`` and increments the count when the current count is
        below *limit*; returns ``False`` and leaves the count untouched
        otherwise.
        """

    @abc.abstractmethod
    async def release(self, caller_id: str, day: date | None = None) -> None:
        """Give back a reservation whose job was never created."""

    @abc.abstractmethod
    async def count(self, caller_id: str, day: date | None = None) -> int:
        """Return the number of admitted jobs for *caller_id* on *day*."""

    async def close(self) -> None:
        return None


class InMemoryQuotaCounter(QuotaCounter):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counts: dict[tuple[str, date], int] = defaultdict(int)

    async def try_admit(self, caller_id: str, limit: int, day: date | None = None) -> bool:
        key = (caller_id, day or today_utc())
        async with self._lock:
            # Drop counters from earlier days so the dict stays bounded.
            for stale in [k for k in self._counts if k[1] < key[1]]:
                del self._counts[stale]
            if self._counts[key] >= limit:
                return False
            self._counts[key] += 1
            return True

    async def release(self, caller_id: str, day: date | None = None) -> None:
        key = (caller_id, day or today_utc())
        async with self._lock:
            if self._counts.get(key, 0) > 0:
                self._counts[key] -= 1

    async def count(self, caller_id: str, day: date | None = None) -> int:
        async with self._lock:
            return self._counts.get((caller_id, day or today_utc()), 0)


_QUOTA_KEY_PREFIX = "scandaemon:quota"
_QUOTA_TTL_SECONDS = 2 * 86_400


def _quota_key(caller_id: str, day: date) -> str:
    return f"{_QUOTA_KEY_PREFIX}:{caller_id}:{day.isoformat()}"


class RedisQuotaCounter(QuotaCounter):
    """Quota counter shared by every daemon process via Redis.

    ``INCR`` hands each concurrent submission a distinct value; a submission
    whose value exceeds the limit decrements again and is refused.
    """

    def __init__(self, redis_client: Redis) -> None:
        self._redis = redis_client

    async def try_admit(self, caller_id: str, limit: int, day: date | None = None) -> bool:
        key = _quota_key(caller_id, day or today_utc())
        try:
            value = int(await self._redis.incr(key))
            if value == 1:
                await self._redis.expire(key, _QUOTA_TTL_SECONDS)
            if value > limit:
                await self._redis.decr(key)
                return False
            return True
        except RedisError as exc:
            raise QueueError(f"quota counter unavailable: {exc}") from exc

    async def release(self, caller_id: str, day: date | None = None) -> None:
        key = _quota_key(caller_id, day or today_utc())
        try:
            value = int(await self._redis.decr(key))
            if value < 0:
                await self._redis.set(key, 0, ex=_QUOTA_TTL_SECONDS)
        except RedisError as exc:
            logger.warning("Failed to release quota caller_id=%s error=%r", caller_id, exc)

    async def count(self, caller_id: str, day: date | None = None) -> int:
        try:
            raw = await self._redis.get(_quota_key(caller_id, day or today_utc()))
        except RedisError as exc:
            raise QueueError(f"quota counter unavailable: {exc}") from exc
        return int(raw or 0)
