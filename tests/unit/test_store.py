"""Unit tests for scandaemon/core/store.py.

Behavioural tests run against both the in-memory store and the SQLAlchemy
store over an in-memory SQLite database (aiosqlite + StaticPool).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

# Ensure all ORM models are registered before schema creation
import scandaemon.models  # noqa: F401
from scandaemon.core.errors import JobStateError, StoreError
from scandaemon.core.models import (
    AggregatedResult,
    EngineResult,
    EngineStatus,
    Finding,
    JobStatus,
    Severity,
    ThreatLevel,
)
from scandaemon.core.store import InMemoryResultStore, SqlResultStore
from scandaemon.db.base import Base
from scandaemon.db.session import build_engine, build_session_factory

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _result(
    job_id: str,
    file_id: str = "file-1",
    status: EngineStatus = EngineStatus.CLEAN,
    completed_at: datetime = T0,
) -> AggregatedResult:
    finding = Finding("rule_match", "Rule matched", Severity.MEDIUM, {"rule": "r"})
    return AggregatedResult(
        job_id=job_id,
        file_id=file_id,
        status=status,
        threat_level=ThreatLevel.CLEAN,
        confidence=100,
        findings=(finding,),
        recommendations=("inspect the content that matched detection rules",),
        scan_time_ms=42,
        per_engine={
            "rules_full": EngineResult(
                "rules_full", EngineStatus.SUSPICIOUS, (finding,), {"bytes_scanned": 10}, 3
            )
        },
        tier="gold",
        file_path=f"/srv/uploads/{file_id}",
        file_hash="0" * 64,
        completed_at=completed_at,
    )


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request):
    if request.param == "memory":
        yield InMemoryResultStore()
        return
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlResultStore(build_session_factory(engine))
    await engine.dispose()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TestResults:
    async def test_put_then_get(self, store) -> None:
        original = _result("job-1")
        await store.put(original)

        loaded = await store.get("job-1")

        assert loaded is not None
        assert loaded.to_dict() == original.to_dict()

    async def test_get_unknown(self, store) -> None:
        assert await store.get("missing") is None

    async def test_put_is_idempotent_upsert(self, store) -> None:
        await store.put(_result("job-1", status=EngineStatus.ERROR))
        await store.put(_result("job-1", status=EngineStatus.CLEAN))

        loaded = await store.get("job-1")

        assert loaded is not None
        assert loaded.status is EngineStatus.CLEAN
        assert len(await store.list_by_file("file-1")) == 1

    async def test_list_by_file_most_recent_first(self, store) -> None:
        await store.put(_result("old", completed_at=T0))
        await store.put(_result("new", completed_at=T0 + timedelta(hours=1)))
        await store.put(_result("other", file_id="file-2"))

        history = await store.list_by_file("file-1")

        assert [r.job_id for r in history] == ["new", "old"]

    async def test_list_by_unknown_file(self, store) -> None:
        assert await store.list_by_file("nobody") == []


# ---------------------------------------------------------------------------
# Job status
# ---------------------------------------------------------------------------


class TestJobStatus:
    async def test_status_lifecycle(self, store) -> None:
        await store.put_job_status("job-1", "file-1", JobStatus.QUEUED, T0)
        await store.put_job_status("job-1", "file-1", JobStatus.SCANNING)
        await store.put_job_status("job-1", "file-1", JobStatus.COMPLETED)

        record = await store.get_job_status("job-1")

        assert record is not None
        assert record.status is JobStatus.COMPLETED
        assert record.file_id == "file-1"
        assert record.updated_at.tzinfo is not None

    async def test_error_message_is_kept(self, store) -> None:
        await store.put_job_status("job-1", "file-1", JobStatus.QUEUED)
        await store.put_job_status("job-1", "file-1", JobStatus.ERROR, error="gave up")

        record = await store.get_job_status("job-1")

        assert record is not None
        assert record.error == "gave up"

    async def test_regression_is_rejected(self, store) -> None:
        await store.put_job_status("job-1", "file-1", JobStatus.QUEUED)
        await store.put_job_status("job-1", "file-1", JobStatus.SCANNING)
        await store.put_job_status("job-1", "file-1", JobStatus.COMPLETED)

        with pytest.raises(JobStateError) as exc_info:
            await store.put_job_status("job-1", "file-1", JobStatus.SCANNING)

        assert exc_info.value.current == "completed"
        record = await store.get_job_status("job-1")
        assert record is not None and record.status is JobStatus.COMPLETED

    async def test_scanning_may_restart(self, store) -> None:
        await store.put_job_status("job-1", "file-1", JobStatus.QUEUED)
        await store.put_job_status("job-1", "file-1", JobStatus.SCANNING)
        await store.put_job_status("job-1", "file-1", JobStatus.SCANNING)

    async def test_cancelled_job_cannot_start(self, store) -> None:
        await store.put_job_status("job-1", "file-1", JobStatus.QUEUED)
        await store.put_job_status("job-1", "file-1", JobStatus.CANCELLED)
        with pytest.raises(JobStateError):
            await store.put_job_status("job-1", "file-1", JobStatus.SCANNING)

    async def test_unknown_job(self, store) -> None:
        assert await store.get_job_status("missing") is None


# ---------------------------------------------------------------------------
# SQL error wrapping
# ---------------------------------------------------------------------------


async def test_sql_errors_become_store_errors() -> None:
    session = MagicMock()
    session.__aenter__.side_effect = OperationalError("SELECT 1", {}, Exception("db down"))
    factory = MagicMock(return_value=session)

    with pytest.raises(StoreError, match="failed to load result"):
        await SqlResultStore(factory).get("job-1")
