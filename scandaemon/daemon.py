"""ScanDaemon — lifecycle owner and public Python API of the scan pipeline.

The daemon wires the components together::

    submit() -> AdmissionGatekeeper -> JobQueue -> WorkerPool/ScanOrchestrator
             -> (ScannerAdapter)* -> aggregate -> ResultStore
                                               + NotificationBroadcaster
                                               + StatsTracker
                                               + AuditSink

All shared mutable state (stats, quota counter, broadcaster subscriber set,
queue) is created when the daemon is constructed and released in
:meth:`ScanDaemon.shutdown`.

Usage::

    daemon = ScanDaemon.from_settings(get_settings())
    await daemon.start()
    receipt = await daemon.submit(
        file_id="f-1",
        file_path="/srv/uploads/f-1.dcm",
        file_name="scan.dcm",
        file_size_bytes=2048,
        file_hash="9f86d0...",
        tier="gold",
        caller_id="user-42",
    )
    ...
    await daemon.shutdown()
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from scandaemon.config import Settings
from scandaemon.core.broadcaster import NotificationBroadcaster, Subscription
from scandaemon.core.errors import JobNotFoundError
from scandaemon.core.event_relay import RedisEventRelay
from scandaemon.core.gatekeeper import AdmissionGatekeeper
from scandaemon.core.job_queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from scandaemon.core.models import (
    AggregatedResult,
    JobStatus,
    JobStatusRecord,
    QueueStatus,
    StatsSnapshot,
    Submission,
    SubmissionReceipt,
)
from scandaemon.core.orchestrator import ScanOrchestrator, WorkerPool
from scandaemon.core.store import ResultStore, SqlResultStore
from scandaemon.core.tiers import TierPolicyTable
from scandaemon.core.usage import (
    InMemoryQuotaCounter,
    QuotaCounter,
    RedisQuotaCounter,
    StatsTracker,
)
from scandaemon.db.base import Base
from scandaemon.db.session import build_engine, build_session_factory
from scandaemon.engines.base import AntivirusEngine, ReputationService
from scandaemon.engines.clamav import ClamAVEngine
from scandaemon.engines.registry import ScannerRegistry, build_registry
from scandaemon.engines.virustotal import VirusTotalReputationService
from scandaemon.services.audit import AuditSink, LoggingAuditSink

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[Any]]

# Claims older than this are considered abandoned by a crashed worker.
_STALE_CLAIM_SECONDS = 15 * 60


class ScanDaemon:
    """Tiered multi-engine file-scanning daemon.

    Args:
        tiers: Tier policy table.
        queue: Job queue shared by gatekeeper and workers.
        quota: Per-caller daily admission counter.
        store: Result store (system of record).
        registry: Scanner adapters.
        audit: Optional audit sink.
        worker_concurrency: Number of worker loops started by :meth:`start`.
        poll_interval: Idle worker sleep in seconds.
        subscriber_queue_size: Per-subscriber event buffer.
        closers: Async callables run by :meth:`shutdown` to release external
            resources (connections, clients, engines).
        db_engine: Engine whose schema is created on :meth:`start` when
            *create_schema* is set.
        create_schema: Create tables on start (development SQLite databases).
        relay: Optional cross-process event relay; local events are forwarded
            to it and remote events are delivered to local subscribers.
    """

    def __init__(
        self,
        *,
        tiers: TierPolicyTable,
        queue: JobQueue,
        quota: QuotaCounter,
        store: ResultStore,
        registry: ScannerRegistry,
        audit: AuditSink | None = None,
        worker_concurrency: int = 4,
        poll_interval: float = 0.5,
        subscriber_queue_size: int = 256,
        closers: list[Closer] | None = None,
        db_engine: AsyncEngine | None = None,
        create_schema: bool = False,
        relay: RedisEventRelay | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.registry = registry
        self.stats = StatsTracker()
        self.relay = relay
        self.broadcaster = NotificationBroadcaster(
            self.stats.snapshot,
            subscriber_queue_size=subscriber_queue_size,
            forward=relay.forward if relay is not None else None,
        )
        self.gatekeeper = AdmissionGatekeeper(tiers, queue, quota, store)
        self.orchestrator = ScanOrchestrator(
            queue=queue,
            store=store,
            registry=registry,
            events=self.broadcaster.channel(),
            stats=self.stats,
            audit=audit,
        )
        self.workers = WorkerPool(self.orchestrator, worker_concurrency, poll_interval)
        self._quota = quota
        self._closers = list(closers or [])
        self._db_engine = db_engine
        self._create_schema = create_schema
        self._pump: asyncio.Task | None = None
        self._relay_listener: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        antivirus: AntivirusEngine | None = None,
        reputation: ReputationService | None = None,
        redis_client: Redis | None = None,
    ) -> "ScanDaemon":
        """Build a daemon from :class:`~scandaemon.config.Settings`.

        Redis backs the queue and quota counter when ``REDIS_URL`` is set (or
        *redis_client* is given); otherwise process-local backends are used.
        ClamAV and VirusTotal collaborators are created when configured and
        not supplied explicitly.
        """
        closers: list[Closer] = []

        if settings.tier_policy_file:
            tiers = TierPolicyTable.from_json(settings.tier_policy_file)
        else:
            tiers = TierPolicyTable.default()

        if redis_client is None and settings.redis_url:
            redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
            closers.append(redis_client.aclose)
        queue: JobQueue
        quota: QuotaCounter
        relay: RedisEventRelay | None = None
        if redis_client is not None:
            queue = RedisJobQueue(
                redis_client,
                max_attempts=settings.queue_max_attempts,
                retry_base_seconds=settings.queue_retry_base_seconds,
            )
            quota = RedisQuotaCounter(redis_client)
            if settings.event_relay_channel:
                relay = RedisEventRelay(redis_client, channel=settings.event_relay_channel)
        else:
            logger.warning("REDIS_URL not set; using in-memory queue and quota counter")
            queue = InMemoryJobQueue(
                max_attempts=settings.queue_max_attempts,
                retry_base_seconds=settings.queue_retry_base_seconds,
            )
            quota = InMemoryQuotaCounter()

        db_engine = build_engine(settings.database_url, echo=settings.debug)
        closers.append(db_engine.dispose)
        store = SqlResultStore(build_session_factory(db_engine))

        if antivirus is None and settings.clamav_host:
            antivirus = ClamAVEngine(
                host=settings.clamav_host,
                port=settings.clamav_port,
                timeout=settings.clamav_timeout,
                stream=settings.clamav_stream,
            )
        if reputation is None and settings.virustotal_api_key:
            reputation = VirusTotalReputationService(
                api_key=settings.virustotal_api_key,
                base_url=settings.virustotal_base_url,
                timeout=settings.reputation_timeout,
            )
        for collaborator in (antivirus, reputation):
            if collaborator is not None:
                closers.append(collaborator.close)

        return cls(
            tiers=tiers,
            queue=queue,
            quota=quota,
            store=store,
            registry=build_registry(settings, antivirus=antivirus, reputation=reputation),
            audit=LoggingAuditSink(settings.audit_signing_key),
            worker_concurrency=settings.worker_concurrency,
            poll_interval=settings.queue_poll_interval_seconds,
            subscriber_queue_size=settings.subscriber_queue_size,
            closers=closers,
            db_engine=db_engine,
            create_schema=settings.database_url.startswith("sqlite"),
            relay=relay,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, workers: bool = True) -> None:
        """Start the broadcaster pump and, unless disabled, the worker pool."""
        if self._create_schema and self._db_engine is not None:
            async with self._db_engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        await self.queue.requeue_stale(_STALE_CLAIM_SECONDS)
        if self._pump is None:
            self._pump = asyncio.create_task(self.broadcaster.run(), name="scandaemon-events")
        if self.relay is not None and self._relay_listener is None:
            self._relay_listener = asyncio.create_task(
                self.relay.listen(self.broadcaster.publish), name="scandaemon-event-relay"
            )
        if workers:
            self.workers.start()
        logger.info("Scan daemon started workers=%d", self.workers.size if workers else 0)

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """Stop workers (letting in-flight jobs finish) and release resources."""
        await self.workers.stop(timeout=timeout)
        if self._pump is not None:
            await self.broadcaster.drain()
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump
            self._pump = None
        if self._relay_listener is not None:
            self._relay_listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._relay_listener
            self._relay_listener = None
        await self.queue.close()
        await self._quota.close()
        await self.store.close()
        self.registry.close()
        for close in reversed(self._closers):
            try:
                await close()
            except Exception as exc:
                logger.warning("Error releasing resource during shutdown: %r", exc)
        self._closers = []
        logger.info("Scan daemon stopped")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        file_id: str,
        file_path: str,
        file_name: str,
        file_size_bytes: int,
        file_hash: str,
        tier: str,
        caller_id: str,
        priority: int | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SubmissionReceipt:
        """Admit a file for scanning.

        Raises:
            UnknownTierError, FileTooLargeError, QuotaExceededError: The
                submission was rejected; no job exists.
            QueueError: The queue is unavailable; no job exists.
        """
        return await self.gatekeeper.submit(
            Submission(
                file_id=file_id,
                file_path=file_path,
                file_name=file_name,
                file_size_bytes=file_size_bytes,
                file_hash=file_hash,
                tier=tier,
                caller_id=caller_id,
                priority=priority,
                metadata=dict(metadata or {}),
            )
        )

    async def get_result(self, job_id: str) -> AggregatedResult | None:
        return await self.store.get(job_id)

    async def get_job_status(self, job_id: str) -> JobStatusRecord | None:
        return await self.store.get_job_status(job_id)

    async def get_file_history(self, file_id: str) -> list[AggregatedResult]:
        return await self.store.list_by_file(file_id)

    async def get_queue_status(self) -> QueueStatus:
        return await self.queue.status()

    async def get_stats(self) -> StatsSnapshot:
        return await self.stats.snapshot()

    async def cancel(self, job_id: str) -> bool:
        """Withdraw a job that no worker has claimed yet.

        Returns:
            ``True`` when the job was removed from the queue and is now
            ``cancelled``; ``False`` when it is already scanning or finished.

        Raises:
            JobNotFoundError: No job with *job_id* exists.
        """
        record = await self.store.get_job_status(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        if record.status is not JobStatus.QUEUED:
            return False
        if not await self.queue.cancel(job_id):
            return False
        await self.store.put_job_status(job_id, record.file_id, JobStatus.CANCELLED)
        logger.info("Job cancelled job_id=%s", job_id)
        return True

    def subscribe(self) -> contextlib.AbstractAsyncContextManager[Subscription]:
        """Subscribe to live events; the first event is a stats snapshot."""
        return self.broadcaster.subscribe()
