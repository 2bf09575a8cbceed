"""Shared pytest configuration and fixtures for scandaemon tests.

Sets required environment variables before any scandaemon module is imported,
so that ``scandaemon.config.get_settings()`` succeeds in the test environment.

Everything runs offline: the antivirus engine and reputation service are
replaced by in-process fakes, queues and stores use their in-memory (or
``fakeredis`` / ``aiosqlite``) backends.
"""
from __future__ import annotations

import asyncio
import hashlib
import os
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

# Set required env vars before any scandaemon module is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")

from scandaemon.config import Settings  # noqa: E402
from scandaemon.core.job_queue import InMemoryJobQueue  # noqa: E402
from scandaemon.core.models import ScanJob  # noqa: E402
from scandaemon.core.store import InMemoryResultStore  # noqa: E402
from scandaemon.core.tiers import TierPolicyTable  # noqa: E402
from scandaemon.core.usage import InMemoryQuotaCounter  # noqa: E402
from scandaemon.daemon import ScanDaemon  # noqa: E402
from scandaemon.engines.base import (  # noqa: E402
    AntivirusEngine,
    AntivirusVerdict,
    ReputationReport,
    ReputationService,
)
from scandaemon.engines.registry import build_registry  # noqa: E402

DICOM_HEADER = b"\x00" * 128 + b"DICM"


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeAntivirusEngine(AntivirusEngine):
    """Antivirus engine returning a configurable verdict."""

    name = "fake-av"

    def __init__(self) -> None:
        self.verdict = AntivirusVerdict(infected=False)
        self.error: Exception | None = None
        self.scanned: list[str] = []
        self.closed = False

    async def scan(self, file_path: str) -> AntivirusVerdict:
        self.scanned.append(file_path)
        if self.error is not None:
            raise self.error
        return self.verdict

    async def close(self) -> None:
        self.closed = True


class FakeReputationService(ReputationService):
    """Reputation service answering from a hash -> report mapping."""

    name = "fake-reputation"

    def __init__(self) -> None:
        self.reports: dict[str, ReputationReport] = {}
        self.error: Exception | None = None
        self.lookups: list[str] = []

    async def lookup(self, file_hash: str) -> ReputationReport | None:
        self.lookups.append(file_hash)
        if self.error is not None:
            raise self.error
        return self.reports.get(file_hash)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="",
        queue_retry_base_seconds=0,
        queue_poll_interval_seconds=0.01,
        worker_concurrency=2,
    )


@pytest.fixture
def fake_antivirus() -> FakeAntivirusEngine:
    return FakeAntivirusEngine()


@pytest.fixture
def fake_reputation() -> FakeReputationService:
    return FakeReputationService()


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[..., tuple[str, str]]:
    """Return a factory writing *content* to a temp file -> ``(path, sha256)``."""

    def _write(content: bytes, name: str = "upload.bin") -> tuple[str, str]:
        path = tmp_path / name
        path.write_bytes(content)
        return str(path), hashlib.sha256(content).hexdigest()

    return _write


@pytest.fixture
def make_job(write_file: Callable[..., tuple[str, str]]) -> Callable[..., ScanJob]:
    """Return a factory building a :class:`ScanJob` over a real temp file."""
    counter = iter(range(1, 1_000_000))

    def _make(
        content: bytes = DICOM_HEADER + b"pixel data",
        *,
        file_name: str = "scan.dcm",
        scanners: tuple[str, ...] = ("basic_validation",),
        **overrides: Any,
    ) -> ScanJob:
        n = next(counter)
        path, digest = write_file(content, f"{n}-{file_name}")
        fields: dict[str, Any] = {
            "id": f"job-{n}",
            "file_id": f"file-{n}",
            "file_path": path,
            "file_name": file_name,
            "file_size_bytes": len(content),
            "file_hash": digest,
            "tier": "gold",
            "caller_id": "user-1",
            "priority": 2,
            "scanners": scanners,
        }
        fields.update(overrides)
        return ScanJob(**fields)

    return _make


@pytest.fixture
def build_daemon(
    settings: Settings,
    fake_antivirus: FakeAntivirusEngine,
    fake_reputation: FakeReputationService,
) -> Callable[..., ScanDaemon]:
    """Return a factory for a fully in-memory :class:`ScanDaemon`."""

    def _build(**overrides: Any) -> ScanDaemon:
        kwargs: dict[str, Any] = {
            "tiers": TierPolicyTable.default(),
            "queue": InMemoryJobQueue(max_attempts=3, retry_base_seconds=0),
            "quota": InMemoryQuotaCounter(),
            "store": InMemoryResultStore(),
            "registry": build_registry(
                settings, antivirus=fake_antivirus, reputation=fake_reputation
            ),
            "worker_concurrency": 2,
            "poll_interval": 0.01,
        }
        kwargs.update(overrides)
        return ScanDaemon(**kwargs)

    return _build


async def _wait_until(
    predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0
) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll an async predicate until it returns ``True`` (or fail after a timeout)."""
    return _wait_until

