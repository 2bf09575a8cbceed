"""Result store: aggregated results and job status transitions.

The store is the system of record; the broadcast stream is best effort.

Contract
--------
* :meth:`ResultStore.put` is an upsert keyed on ``job_id``.  Re-processing a
  job after a crash overwrites its row; the last write wins.
* :meth:`ResultStore.list_by_file` returns results most recent first.
* :meth:`ResultStore.put_job_status` refuses transitions that would regress a
  job's lifecycle (see :meth:`JobStatus.can_transition`) by raising
  :class:`~scandaemon.core.errors.JobStateError`.

Implementations:

* :class:`InMemoryResultStore` — dictionaries behind an ``asyncio.Lock``.
* :class:`SqlResultStore` — SQLAlchemy async ORM over the ``scan_result`` and
  ``scan_job_status`` tables.  Every ``SQLAlchemyError`` is wrapped in
  :class:`~scandaemon.core.errors.StoreError` so the orchestrator can retry.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scandaemon.core.errors import JobStateError, StoreError
from scandaemon.core.models import AggregatedResult, JobStatus, JobStatusRecord, utcnow
from scandaemon.models.job_status import ScanJobStatus
from scandaemon.models.scan_result import ScanResultRecord

logger = logging.getLogger(__name__)


class ResultStore(abc.ABC):
    @abc.abstractmethod
    async def put(self, result: AggregatedResult) -> None:
        """Insert or overwrite the result for ``result.job_id``."""

    @abc.abstractmethod
    async def get(self, job_id: str) -> AggregatedResult | None:
        ...

    @abc.abstractmethod
    async def list_by_file(self, file_id: str) -> list[AggregatedResult]:
        """All results for *file_id*, most recent first."""

    @abc.abstractmethod
    async def put_job_status(
        self,
        job_id: str,
        file_id: str,
        status: JobStatus,
        at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        """Record a status transition.

        Raises:
            JobStateError: If the transition would regress the job.
        """

    @abc.abstractmethod
    async def get_job_status(self, job_id: str) -> JobStatusRecord | None:
        ...

    async def close(self) -> None:
        return None


def _check_transition(job_id: str, current: JobStatus | None, new: JobStatus) -> None:
    if not JobStatus.can_transition(current, new):
        raise JobStateError(job_id, current.value if current else "none", new.value)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryResultStore(ResultStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._results: dict[str, AggregatedResult] = {}
        self._statuses: dict[str, JobStatusRecord] = {}

    async def put(self, result: AggregatedResult) -> None:
        async with self._lock:
            self._results[result.job_id] = result

    async def get(self, job_id: str) -> AggregatedResult | None:
        async with self._lock:
            return self._results.get(job_id)

    async def list_by_file(self, file_id: str) -> list[AggregatedResult]:
        async with self._lock:
            matches = [r for r in self._results.values() if r.file_id == file_id]
        return sorted(matches, key=lambda r: r.completed_at, reverse=True)

    async def put_job_status(
        self,
        job_id: str,
        file_id: str,
        status: JobStatus,
        at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        async with self._lock:
            existing = self._statuses.get(job_id)
            _check_transition(job_id, existing.status if existing else None, status)
            self._statuses[job_id] = JobStatusRecord(
                job_id=job_id,
                file_id=file_id,
                status=status,
                updated_at=at or utcnow(),
                error=error,
            )

    async def get_job_status(self, job_id: str) -> JobStatusRecord | None:
        async with self._lock:
            return self._statuses.get(job_id)


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SqlResultStore(ResultStore):
    """Result store over a SQLAlchemy async session factory.

    Args:
        session_factory: Factory producing :class:`AsyncSession` objects,
            typically from :func:`scandaemon.db.session.build_session_factory`.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def put(self, result: AggregatedResult) -> None:
        record = ScanResultRecord(
            job_id=result.job_id,
            file_id=result.file_id,
            file_path=result.file_path,
            file_hash=result.file_hash,
            tier=result.tier,
            status=result.status.value,
            threat_level=result.threat_level.value,
            confidence=result.confidence,
            scan_engines=result.scan_engines,
            result=result.to_dict(),
            scan_time_ms=result.scan_time_ms,
            error=result.error,
            created_at=result.completed_at,
        )
        try:
            async with self._session_factory() as session, session.begin():
                await session.merge(record)
        except SQLAlchemyError as exc:
            raise StoreError(f"failed to store result for job {result.job_id}: {exc}") from exc

    async def get(self, job_id: str) -> AggregatedResult | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(ScanResultRecord, job_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"failed to load result for job {job_id}: {exc}") from exc
        if record is None:
            return None
        return AggregatedResult.from_dict(record.result)

    async def list_by_file(self, file_id: str) -> list[AggregatedResult]:
        stmt = (
            select(ScanResultRecord)
            .where(ScanResultRecord.file_id == file_id)
            .order_by(ScanResultRecord.created_at.desc(), ScanResultRecord.job_id)
        )
        try:
            async with self._session_factory() as session:
                records = (await session.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"failed to list results for file {file_id}: {exc}") from exc
        return [AggregatedResult.from_dict(r.result) for r in records]

    async def put_job_status(
        self,
        job_id: str,
        file_id: str,
        status: JobStatus,
        at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        at = at or utcnow()
        try:
            async with self._session_factory() as session, session.begin():
                stmt = (
                    select(ScanJobStatus)
                    .where(ScanJobStatus.job_id == job_id)
                    .with_for_update()
                )
                row = (await session.scalars(stmt)).first()
                current = JobStatus(row.status) if row is not None else None
                _check_transition(job_id, current, status)
                if row is None:
                    session.add(
                        ScanJobStatus(
                            job_id=job_id,
                            file_id=file_id,
                            status=status.value,
                            error=error,
                            updated_at=at,
                        )
                    )
                else:
                    row.status = status.value
                    row.error = error
                    row.updated_at = at
        except SQLAlchemyError as exc:
            raise StoreError(f"failed to store status for job {job_id}: {exc}") from exc
        logger.debug("Job status persisted job_id=%s status=%s", job_id, status.value)

    async def get_job_status(self, job_id: str) -> JobStatusRecord | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(ScanJobStatus, job_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"failed to load status for job {job_id}: {exc}") from exc
        if row is None:
            return None
        return JobStatusRecord(
            job_id=row.job_id,
            file_id=row.file_id,
            status=JobStatus(row.status),
            updated_at=_aware(row.updated_at),
            error=row.error,
        )
