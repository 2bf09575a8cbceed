"""Priority job queue with atomic claim, retry/backoff and cancellation.

Lower priority numbers are claimed first; jobs with equal priority are
claimed in submission order.  :meth:`JobQueue.claim` is the only mutual
exclusion point of the daemon: a job is handed to at most one worker.

**Retry policy**

A worker that hits a transient infrastructure failure calls
:meth:`JobQueue.retry`.  The job is parked in a delayed set and becomes
claimable again after an exponential backoff::

    delay = retry_base_seconds * 2 ** (attempt - 1)     # 2 s, 4 s, ...

Once ``max_attempts`` runs have failed, ``retry`` returns ``False`` and the
caller is expected to :meth:`~JobQueue.fail` the job.

Two implementations are provided:

* :class:`InMemoryJobQueue` — a ``heapq`` guarded by an ``asyncio.Lock``; for
  single-process development and tests.
* :class:`RedisJobQueue` — durable, shared across daemon processes.

Redis key layout (prefix ``scandaemon:queue``)
----------------------------------------------
``:waiting``   sorted set, member job id, score ``priority * 10**12 + seq``
``:delayed``   sorted set, member job id, score = epoch seconds when claimable
``:jobs``      hash job id -> JSON job payload
``:active``    hash job id -> epoch seconds of the claim
``:attempts``  hash job id -> failed attempt count
``:errors``    hash job id -> last error of a failed job
``:priorities`` hash job id -> priority, used when a job is put back on ``:waiting``
``:seq``       FIFO sequence counter
``:completed`` / ``:failed``  counters
"""

from __future__ import annotations

import abc
import asyncio
import heapq
import itertools
import json
import logging
import time
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from scandaemon.core.errors import QueueError
from scandaemon.core.models import QueueStatus, ScanJob

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_SECONDS = 2.0

_KEY_PREFIX = "scandaemon:queue"

# Scores must stay exactly representable as doubles (2**53).
_PRIORITY_STRIDE = 10**12


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Return the delay before retry number *attempt* (1-based)."""
    return base_seconds * (2 ** max(0, attempt - 1))


class JobQueue(abc.ABC):
    """Abstract durable priority queue of :class:`ScanJob` objects."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds

    @abc.abstractmethod
    async def enqueue(self, job: ScanJob) -> None:
        """Add *job* to the waiting set."""

    @abc.abstractmethod
    async def claim(self) -> ScanJob | None:
        """Atomically take the next claimable job, or ``None`` when idle."""

    @abc.abstractmethod
    async def ack(self, job_id: str) -> None:
        """Mark a claimed job as finished."""

    @abc.abstractmethod
    async def retry(self, job_id: str, error: str) -> bool:
        """Schedule a claimed job for another attempt after backoff.

        Returns ``False`` without rescheduling when the attempt ceiling has
        been reached.
        """

    @abc.abstractmethod
    async def fail(self, job_id: str, error: str) -> None:
        """Mark a claimed job as permanently failed."""

    @abc.abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Drop a job that no worker has claimed yet.

        Returns ``True`` when the job was waiting (or delayed) and has been
        removed, ``False`` when it is unknown, active or finished.
        """

    @abc.abstractmethod
    async def status(self) -> QueueStatus:
        """Return waiting / active / completed / failed counts."""

    async def attempts(self, job_id: str) -> int:
        """Return the number of failed attempts recorded for *job_id*."""
        return 0

    async def requeue_stale(self, older_than_seconds: float) -> int:
        """Return jobs claimed longer ago than the threshold to the waiting set."""
        return 0

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

_WAITING = "waiting"
_DELAYED = "delayed"
_ACTIVE = "active"


class InMemoryJobQueue(JobQueue):
    """Process-local queue.  Not durable across restarts."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(max_attempts=max_attempts, retry_base_seconds=retry_base_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._seq = itertools.count()
        self._heap: list[tuple[int, int, str]] = []
        self._jobs: dict[str, ScanJob] = {}
        self._state: dict[str, str] = {}
        self._ready_at: dict[str, float] = {}
        self._attempts: dict[str, int] = {}
        self._claimed_at: dict[str, float] = {}
        self._completed = 0
        self._failed = 0

    async def enqueue(self, job: ScanJob) -> None:
        async with self._lock:
            if job.id in self._state:
                raise QueueError(f"job {job.id} is already queued")
            self._jobs[job.id] = job
            self._push_locked(job)

    def _push_locked(self, job: ScanJob) -> None:
        self._state[job.id] = _WAITING
        heapq.heappush(self._heap, (job.priority, next(self._seq), job.id))

    def _promote_due_locked(self) -> None:
        now = self._clock()
        for job_id in [j for j, ready in self._ready_at.items() if ready <= now]:
            del self._ready_at[job_id]
            self._push_locked(self._jobs[job_id])

    async def claim(self) -> ScanJob | None:
        async with self._lock:
            self._promote_due_locked()
            while self._heap:
                _priority, _seq, job_id = heapq.heappop(self._heap)
                # Entries of cancelled jobs are skipped lazily.
                if self._state.get(job_id) != _WAITING:
                    continue
                self._state[job_id] = _ACTIVE
                self._claimed_at[job_id] = self._clock()
                return self._jobs[job_id]
            return None

    async def ack(self, job_id: str) -> None:
        async with self._lock:
            if self._state.get(job_id) != _ACTIVE:
                logger.warning("ack for job that is not active job_id=%s", job_id)
                return
            self._forget_locked(job_id)
            self._completed += 1

    async def retry(self, job_id: str, error: str) -> bool:
        async with self._lock:
            if self._state.get(job_id) != _ACTIVE:
                raise QueueError(f"cannot retry job {job_id}: not active")
            attempt = self._attempts.get(job_id, 0) + 1
            self._attempts[job_id] = attempt
            if attempt >= self.max_attempts:
                return False
            delay = backoff_delay(attempt, self.retry_base_seconds)
            self._state[job_id] = _DELAYED
            self._claimed_at.pop(job_id, None)
            self._ready_at[job_id] = self._clock() + delay
        logger.warning(
            "Job scheduled for retry job_id=%s attempt=%d/%d delay_s=%.1f error=%s",
            job_id,
            attempt,
            self.max_attempts,
            delay,
            error,
        )
        return True

    async def fail(self, job_id: str, error: str) -> None:
        async with self._lock:
            if job_id not in self._state:
                logger.warning("fail for unknown job job_id=%s", job_id)
                return
            self._forget_locked(job_id)
            self._failed += 1
        logger.error("Job failed permanently job_id=%s error=%s", job_id, error)

    async def cancel(self, job_id: str) -> bool:
        async with self._lock:
            if self._state.get(job_id) not in (_WAITING, _DELAYED):
                return False
            self._forget_locked(job_id)
            return True

    def _forget_locked(self, job_id: str) -> None:
        self._state.pop(job_id, None)
        self._jobs.pop(job_id, None)
        self._ready_at.pop(job_id, None)
        self._attempts.pop(job_id, None)
        self._claimed_at.pop(job_id, None)

    async def status(self) -> QueueStatus:
        async with self._lock:
            states = list(self._state.values())
            return QueueStatus(
                waiting=sum(1 for s in states if s in (_WAITING, _DELAYED)),
                active=sum(1 for s in states if s == _ACTIVE),
                completed=self._completed,
                failed=self._failed,
            )

    async def attempts(self, job_id: str) -> int:
        async with self._lock:
            return self._attempts.get(job_id, 0)

    async def requeue_stale(self, older_than_seconds: float) -> int:
        async with self._lock:
            cutoff = self._clock() - older_than_seconds
            stale = [j for j, claimed in self._claimed_at.items() if claimed <= cutoff]
            for job_id in stale:
                del self._claimed_at[job_id]
                self._push_locked(self._jobs[job_id])
        if stale:
            logger.warning("Requeued %d stale active job(s)", len(stale))
        return len(stale)


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------

# Every state change of the Redis queue is one Lua script, so a move between
# keys (waiting -> active, active -> delayed, ...) is a single atomic Redis
# operation and a worker dying between two commands cannot strand a job.
#
# All scripts share the same KEYS layout (see RedisJobQueue._keys) and the
# helpers below:
#   push(job_id)    add a job to :waiting behind its priority peers
#   forget(job_id)  drop the payload and bookkeeping of a finished job
_LUA_PRELUDE = (
    """
local waiting    = KEYS[1]
local delayed    = KEYS[2]
local jobs       = KEYS[3]
local active     = KEYS[4]
local attempts   = KEYS[5]
local errors     = KEYS[6]
local seq        = KEYS[7]
local completed  = KEYS[8]
local failed     = KEYS[9]
local priorities = KEYS[10]
local stride     = """
    + str(_PRIORITY_STRIDE)
    + """

local function push(job_id)
    local priority = redis.call('HGET', priorities, job_id)
    if not priority then
        return false
    end
    local score = tonumber(priority) * stride + redis.call('INCR', seq)
    redis.call('ZADD', waiting, string.format('%d', score), job_id)
    return true
end

local function forget(job_id)
    redis.call('HDEL', active, job_id)
    redis.call('HDEL', jobs, job_id)
    redis.call('HDEL', attempts, job_id)
    redis.call('HDEL', priorities, job_id)
end
"""
)

# ARGV[1] = job id, ARGV[2] = JSON payload, ARGV[3] = priority
# Returns 1 when queued, 0 when the job id is already known.
_ENQUEUE_LUA = _LUA_PRELUDE + """
if redis.call('HSETNX', jobs, ARGV[1], ARGV[2]) == 0 then
    return 0
end
redis.call('HSET', priorities, ARGV[1], ARGV[3])
push(ARGV[1])
return 1
"""

# ARGV[1] = now (epoch seconds)
# Promotes due delayed jobs, then pops the head of :waiting and marks it
# active.  Returns {dropped, payload}; payload is absent when idle.
_CLAIM_LUA = _LUA_PRELUDE + """
for _, job_id in ipairs(redis.call('ZRANGEBYSCORE', delayed, '-inf', ARGV[1])) do
    redis.call('ZREM', delayed, job_id)
    push(job_id)
end

local dropped = 0
while true do
    local popped = redis.call('ZPOPMIN', waiting, 1)
    if #popped == 0 then
        return {dropped}
    end
    local job_id = popped[1]
    local payload = redis.call('HGET', jobs, job_id)
    if payload then
        redis.call('HSET', active, job_id, ARGV[1])
        return {dropped, payload}
    end
    dropped = dropped + 1
end
"""

# ARGV[1] = job id
# Returns 1 when the active job was completed, 0 when it was not active.
_ACK_LUA = _LUA_PRELUDE + """
if redis.call('HEXISTS', active, ARGV[1]) == 0 then
    return 0
end
forget(ARGV[1])
redis.call('INCR', completed)
return 1
"""

# ARGV[1] = job id, ARGV[2] = max attempts, ARGV[3] = now, ARGV[4] = base seconds
# Returns {-1, 0} when not active, {0, attempt} when attempts are exhausted
# (the job stays active), {1, attempt} when parked in :delayed.
_RETRY_LUA = _LUA_PRELUDE + """
local job_id = ARGV[1]
if redis.call('HEXISTS', active, job_id) == 0 then
    return {-1, 0}
end
local attempt = redis.call('HINCRBY', attempts, job_id, 1)
if attempt >= tonumber(ARGV[2]) then
    return {0, attempt}
end
local ready_at = tonumber(ARGV[3]) + tonumber(ARGV[4]) * 2 ^ (attempt - 1)
redis.call('HDEL', active, job_id)
redis.call('ZADD', delayed, ready_at, job_id)
return {1, attempt}
"""

# ARGV[1] = job id, ARGV[2] = error
# Returns 1 when the job was known and is now failed, 0 otherwise.
_FAIL_LUA = _LUA_PRELUDE + """
local job_id = ARGV[1]
local known = redis.call('HEXISTS', jobs, job_id)
    + redis.call('ZREM', waiting, job_id)
    + redis.call('ZREM', delayed, job_id)
if known == 0 then
    return 0
end
forget(job_id)
redis.call('HSET', errors, job_id, ARGV[2])
redis.call('INCR', failed)
return 1
"""

# ARGV[1] = job id
# Returns 1 when a waiting or delayed job was removed, 0 otherwise.
_CANCEL_LUA = _LUA_PRELUDE + """
local removed = redis.call('ZREM', waiting, ARGV[1]) + redis.call('ZREM', delayed, ARGV[1])
if removed == 0 then
    return 0
end
forget(ARGV[1])
return 1
"""

# ARGV[1] = cutoff (epoch seconds)
# Returns the number of active jobs claimed at or before the cutoff that were
# put back on :waiting.
_REQUEUE_STALE_LUA = _LUA_PRELUDE + """
local cutoff = tonumber(ARGV[1])
local requeued = 0
local claims = redis.call('HGETALL', active)
for i = 1, #claims, 2 do
    local job_id = claims[i]
    if tonumber(claims[i + 1]) <= cutoff then
        redis.call('HDEL', active, job_id)
        if push(job_id) then
            requeued = requeued + 1
        end
    end
end
return requeued
"""


def _text(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisJobQueue(JobQueue):
    """Durable queue backed by Redis sorted sets.

    Each operation runs as one Lua script, so claiming a job (pop from
    ``:waiting`` and mark active) or rescheduling it (active to ``:delayed``)
    happens atomically on the Redis side.  Two workers can never claim the
    same job and a crash between steps cannot lose one.

    Args:
        redis_client: An async Redis client instance.
        key_prefix: Namespace for all queue keys.
        clock: Wall-clock source in epoch seconds (overridable in tests).
    """

    def __init__(
        self,
        redis_client: Redis,
        *,
        key_prefix: str = _KEY_PREFIX,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(max_attempts=max_attempts, retry_base_seconds=retry_base_seconds)
        self._redis = redis_client
        self._clock = clock
        self._k_waiting = f"{key_prefix}:waiting"
        self._k_delayed = f"{key_prefix}:delayed"
        self._k_jobs = f"{key_prefix}:jobs"
        self._k_active = f"{key_prefix}:active"
        self._k_attempts = f"{key_prefix}:attempts"
        self._k_completed = f"{key_prefix}:completed"
        self._k_failed = f"{key_prefix}:failed"
        # Order matches the KEYS[n] assignments in _LUA_PRELUDE.
        self._keys = [
            self._k_waiting,
            self._k_delayed,
            self._k_jobs,
            self._k_active,
            self._k_attempts,
            f"{key_prefix}:errors",
            f"{key_prefix}:seq",
            self._k_completed,
            self._k_failed,
            f"{key_prefix}:priorities",
        ]
        # Pre-register the scripts so each is loaded once per server
        self._enqueue_script = redis_client.register_script(_ENQUEUE_LUA)
        self._claim_script = redis_client.register_script(_CLAIM_LUA)
        self._ack_script = redis_client.register_script(_ACK_LUA)
        self._retry_script = redis_client.register_script(_RETRY_LUA)
        self._fail_script = redis_client.register_script(_FAIL_LUA)
        self._cancel_script = redis_client.register_script(_CANCEL_LUA)
        self._requeue_script = redis_client.register_script(_REQUEUE_STALE_LUA)

    async def enqueue(self, job: ScanJob) -> None:
        try:
            created = await self._enqueue_script(  # type: ignore[misc]
                keys=self._keys,
                args=[job.id, json.dumps(job.to_dict()), job.priority],
            )
        except RedisError as exc:
            raise QueueError(f"enqueue failed for job {job.id}: {exc}") from exc
        if not int(created):
            raise QueueError(f"job {job.id} is already queued")

    async def claim(self) -> ScanJob | None:
        try:
            reply = await self._claim_script(  # type: ignore[misc]
                keys=self._keys, args=[repr(self._clock())]
            )
        except RedisError as exc:
            raise QueueError(f"claim failed: {exc}") from exc
        dropped = int(reply[0])
        if dropped:
            logger.warning("Dropped %d queue entries without payload", dropped)
        if len(reply) < 2:
            return None
        return ScanJob.from_dict(json.loads(_text(reply[1])))

    async def ack(self, job_id: str) -> None:
        try:
            acked = await self._ack_script(keys=self._keys, args=[job_id])  # type: ignore[misc]
        except RedisError as exc:
            raise QueueError(f"ack failed for job {job_id}: {exc}") from exc
        if not int(acked):
            logger.warning("ack for job that is not active job_id=%s", job_id)

    async def retry(self, job_id: str, error: str) -> bool:
        try:
            outcome, attempt = await self._retry_script(  # type: ignore[misc]
                keys=self._keys,
                args=[job_id, self.max_attempts, repr(self._clock()), self.retry_base_seconds],
            )
        except RedisError as exc:
            raise QueueError(f"retry failed for job {job_id}: {exc}") from exc
        if int(outcome) < 0:
            raise QueueError(f"cannot retry job {job_id}: not active")
        if int(outcome) == 0:
            return False
        logger.warning(
            "Job scheduled for retry job_id=%s attempt=%d/%d delay_s=%.1f error=%s",
            job_id,
            int(attempt),
            self.max_attempts,
            backoff_delay(int(attempt), self.retry_base_seconds),
            error,
        )
        return True

    async def fail(self, job_id: str, error: str) -> None:
        try:
            known = await self._fail_script(keys=self._keys, args=[job_id, error])  # type: ignore[misc]
        except RedisError as exc:
            raise QueueError(f"fail failed for job {job_id}: {exc}") from exc
        if not int(known):
            logger.warning("fail for unknown job job_id=%s", job_id)
            return
        logger.error("Job failed permanently job_id=%s error=%s", job_id, error)

    async def cancel(self, job_id: str) -> bool:
        try:
            removed = await self._cancel_script(keys=self._keys, args=[job_id])  # type: ignore[misc]
        except RedisError as exc:
            raise QueueError(f"cancel failed for job {job_id}: {exc}") from exc
        return bool(int(removed))

    async def status(self) -> QueueStatus:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zcard(self._k_waiting)
                pipe.zcard(self._k_delayed)
                pipe.hlen(self._k_active)
                pipe.get(self._k_completed)
                pipe.get(self._k_failed)
                waiting, delayed, active, completed, failed = await pipe.execute()
        except RedisError as exc:
            raise QueueError(f"status failed: {exc}") from exc
        return QueueStatus(
            waiting=int(waiting) + int(delayed),
            active=int(active),
            completed=int(completed or 0),
            failed=int(failed or 0),
        )

    async def attempts(self, job_id: str) -> int:
        try:
            return int(await self._redis.hget(self._k_attempts, job_id) or 0)
        except RedisError as exc:
            raise QueueError(f"attempts lookup failed for job {job_id}: {exc}") from exc

    async def requeue_stale(self, older_than_seconds: float) -> int:
        """Return jobs whose worker vanished mid-scan to the waiting set.

        A job is stale when it has been active for longer than
        *older_than_seconds*.
        """
        cutoff = self._clock() - older_than_seconds
        try:
            requeued = int(
                await self._requeue_script(keys=self._keys, args=[repr(cutoff)])  # type: ignore[misc]
            )
        except RedisError as exc:
            raise QueueError(f"requeue failed: {exc}") from exc
        if requeued:
            logger.warning("Requeued %d stale active job(s)", requeued)
        return requeued
