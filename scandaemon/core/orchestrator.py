"""ScanOrchestrator — per-job state machine with OpenTelemetry instrumentation.

:class:`ScanOrchestrator` takes one claimed job end to end::

    queued --claim--> scanning --all scanners done--> completed | error

1. **check**     — a job whose stored status is already terminal is acked and
   skipped, so a duplicate delivery is harmless.
2. **scanning**  — the transition is persisted before any engine runs.
3. **scan**      — the job's snapshotted scanners run *sequentially*; a
   ``scan_progress`` event is emitted after each one.  A scanner returning
   ``error`` never stops the loop.
4. **aggregate** — :func:`~scandaemon.core.aggregator.aggregate` folds the
   per-engine results into one verdict.
5. **persist**   — result, audit record (best effort), then terminal status.
6. **ack**, update stats, emit ``scan_result``.

Every job runs inside a ``scandaemon.job`` span and every scanner inside a
``scandaemon.scanner.<id>`` child span.

**Retry policy**

Transient infrastructure failures (:data:`_TRANSIENT_EXCEPTIONS`) hand the
job back to the queue via :meth:`JobQueue.retry`, which applies exponential
backoff.  Once the queue reports that retries are exhausted the job is
given up: status ``error`` is persisted (best effort), the queue entry is
failed, stats are updated and a ``scan_result`` event carrying an ``error``
verdict is emitted.  A queue that cannot reschedule the job counts as
exhausted.  A job is never silently dropped.

Once the terminal status is stored the job is finished: a failing ``ack``
is logged and left to stale-claim recovery, and stats and the
``scan_result`` event still go out exactly once.

:class:`WorkerPool` runs a fixed number of claim → process loops.
"""
from __future__ import annotations

import asyncio
import logging
import time

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from scandaemon.core.aggregator import aggregate, failed_result
from scandaemon.core.broadcaster import EventChannel, progress_event, result_event
from scandaemon.core.errors import JobStateError, QueueError, StoreError
from scandaemon.core.job_queue import JobQueue
from scandaemon.core.models import (
    AggregatedResult,
    EngineResult,
    EngineStatus,
    JobStatus,
    ScanJob,
)
from scandaemon.core.store import ResultStore
from scandaemon.core.usage import StatsTracker
from scandaemon.engines.registry import ScannerRegistry
from scandaemon.services.audit import AuditSink

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "scandaemon.orchestrator",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

#: Exception types that send a job back to the queue for another attempt.
_TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    StoreError,
    QueueError,
    ConnectionError,
    TimeoutError,
    OSError,
)


class ScanOrchestrator:
    """Runs claimed jobs through their scanners and records the verdict.

    Args:
        queue: The job queue jobs are claimed from and acked to.
        store: Result store for verdicts and status transitions.
        registry: Scanner adapters keyed by scanner id.
        events: Send-only channel to the notification broadcaster.
        stats: Outcome counters updated once per finished job.
        audit: Optional audit sink; failures are logged, never raised.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        store: ResultStore,
        registry: ScannerRegistry,
        events: EventChannel,
        stats: StatsTracker,
        audit: AuditSink | None = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._registry = registry
        self._events = events
        self._stats = stats
        self._audit = audit

    async def process_next(self) -> bool:
        """Claim and process one job.  Returns ``False`` when the queue is idle."""
        job = await self._queue.claim()
        if job is None:
            return False
        await self.process(job)
        return True

    async def process(self, job: ScanJob) -> AggregatedResult | None:
        """Process a claimed *job*.

        Returns:
            The final verdict, or ``None`` when the job was skipped as a
            duplicate or handed back to the queue for a retry.
        """
        with tracer.start_as_current_span("scandaemon.job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.tier", job.tier)
            span.set_attribute("job.scanners", list(job.scanners))
            try:
                result = await self._process(job)
            except _TRANSIENT_EXCEPTIONS as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                return await self._retry_or_give_up(job, exc)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.exception("Job processing failed job_id=%s", job.id)
                return await self._give_up(job, f"{type(exc).__name__}: {exc}")

            if result is not None:
                span.set_attribute("scan.status", result.status.value)
                span.set_attribute("scan.findings_count", len(result.findings))
                span.set_attribute("scan.duration_ms", result.scan_time_ms)
            return result

    async def _process(self, job: ScanJob) -> AggregatedResult | None:
        current = await self._store.get_job_status(job.id)
        if current is not None and current.status.is_terminal:
            logger.info(
                "Skipping job already in terminal state job_id=%s status=%s",
                job.id,
                current.status.value,
            )
            await self._ack(job)
            return None

        await self._store.put_job_status(job.id, job.file_id, JobStatus.SCANNING)

        start = time.monotonic()
        per_engine = await self._run_scanners(job)
        scan_time_ms = int((time.monotonic() - start) * 1000)

        result = aggregate(job, per_engine, scan_time_ms)
        await self._store.put(result)
        await self._record_audit(result)

        final = JobStatus.ERROR if result.status is EngineStatus.ERROR else JobStatus.COMPLETED
        await self._store.put_job_status(
            job.id, job.file_id, final, result.completed_at, error=result.error
        )
        # The verdict is durable from here on; a queue failure must not
        # trigger a retry that would count or announce the job twice.
        await self._ack(job)
        await self._stats.record(result)
        self._events.send(result_event(job, result))

        logger.info(
            "Job complete job_id=%s status=%s threat_level=%s findings=%d duration_ms=%d",
            job.id,
            result.status.value,
            result.threat_level.value,
            len(result.findings),
            scan_time_ms,
        )
        return result

    async def _run_scanners(self, job: ScanJob) -> dict[str, EngineResult]:
        per_engine: dict[str, EngineResult] = {}
        total = len(job.scanners)
        for index, scanner_id in enumerate(job.scanners, start=1):
            with tracer.start_as_current_span(f"scandaemon.scanner.{scanner_id}") as span:
                span.set_attribute("job.id", job.id)
                adapter = self._registry.get(scanner_id)
                if adapter is None:
                    engine_result = EngineResult(
                        scanner=scanner_id,
                        status=EngineStatus.ERROR,
                        metadata={"error": f"scanner {scanner_id!r} is not registered"},
                    )
                else:
                    engine_result = await adapter.scan(job)
                span.set_attribute("scanner.status", engine_result.status.value)
                span.set_attribute("scanner.findings_count", len(engine_result.findings))
                span.set_attribute("scanner.duration_ms", engine_result.duration_ms)
                if engine_result.status is EngineStatus.ERROR:
                    span.set_status(Status(StatusCode.ERROR, engine_result.error or ""))

            per_engine[scanner_id] = engine_result
            self._events.send(progress_event(job, index * 100 // total))
        return per_engine

    async def _record_audit(self, result: AggregatedResult) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record(result)
        except Exception as exc:
            logger.warning("Audit record failed job_id=%s error=%r", result.job_id, exc)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _retry_or_give_up(self, job: ScanJob, exc: Exception) -> AggregatedResult | None:
        error = f"{type(exc).__name__}: {exc}"
        try:
            if await self._queue.retry(job.id, error):
                return None
        except QueueError as queue_exc:
            logger.error(
                "Could not reschedule job, giving up job_id=%s error=%r queue_error=%r",
                job.id,
                exc,
                queue_exc,
            )
        return await self._give_up(job, error)

    async def _give_up(self, job: ScanJob, error: str) -> AggregatedResult | None:
        try:
            current = await self._store.get_job_status(job.id)
        except StoreError:
            current = None
        if current is not None and current.status.is_terminal:
            # The verdict is already recorded; only the queue entry is left.
            await self._fail_in_queue(job, error)
            return None

        result = failed_result(job, error)
        try:
            await self._store.put(result)
        except StoreError as exc:
            logger.warning("Could not persist failed verdict job_id=%s error=%r", job.id, exc)
        try:
            await self._store.put_job_status(
                job.id, job.file_id, JobStatus.ERROR, result.completed_at, error=error
            )
        except (StoreError, JobStateError) as exc:
            logger.warning("Could not persist error status job_id=%s error=%r", job.id, exc)
        await self._fail_in_queue(job, error)

        await self._stats.record(result)
        self._events.send(result_event(job, result))
        logger.error("Job gave up job_id=%s error=%s", job.id, error)
        return result

    async def _ack(self, job: ScanJob) -> None:
        try:
            await self._queue.ack(job.id)
        except QueueError as exc:
            # Left active; stale-claim recovery redelivers it and the
            # terminal-status check acks it then.
            logger.warning("Could not ack job job_id=%s error=%r", job.id, exc)

    async def _fail_in_queue(self, job: ScanJob, error: str) -> None:
        try:
            await self._queue.fail(job.id, error)
        except QueueError as exc:
            logger.warning("Could not mark job failed in queue job_id=%s error=%r", job.id, exc)


class WorkerPool:
    """A fixed number of asyncio worker loops sharing one orchestrator.

    Each worker claims one job at a time and runs it to completion.  When the
    queue is empty a worker sleeps for ``poll_interval`` seconds, waking early
    when the pool stops.

    Args:
        orchestrator: Processes each claimed job.
        size: Number of concurrent workers.
        poll_interval: Idle sleep between empty claims, in seconds.
    """

    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        size: int,
        poll_interval: float = 0.5,
    ) -> None:
        if size < 1:
            raise ValueError("worker pool size must be >= 1")
        self._orchestrator = orchestrator
        self.size = size
        self._poll_interval = poll_interval
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"scandaemon-worker-{i}")
            for i in range(self.size)
        ]
        logger.info("Worker pool started workers=%d", self.size)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop claiming new jobs and wait for in-flight jobs to finish."""
        self._stopping.set()
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Worker pool cancelled %d busy worker(s)", len(pending))
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _worker(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                claimed = await self._orchestrator.process_next()
            except QueueError as exc:
                logger.warning("Claim failed worker=%d error=%r", index, exc)
                claimed = False
            if not claimed:
                await self._idle()

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass
