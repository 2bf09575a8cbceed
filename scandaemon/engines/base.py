"""Scanner adapter interface and external engine contracts.

Every detection engine is wrapped in a :class:`ScannerAdapter`.  The
orchestrator depends only on :meth:`ScannerAdapter.scan`; it never references
a concrete scanner class.

**Failure isolation:** :meth:`ScannerAdapter.scan` never raises (other than
task cancellation).  A scanner that throws or exceeds its timeout returns an
:class:`~scandaemon.core.models.EngineResult` with ``status="error"`` and the
failure message in ``metadata["error"]``, so one broken engine never aborts
the rest of the job.

**Blocking calls:** a timeout cannot stop a thread that is stuck in a read.
Adapters therefore run blocking work through :meth:`ScannerAdapter.run_blocking`,
which uses the adapter's own pool of at most ``max_threads`` threads.  Hung
calls keep their thread until the read returns, but they never take threads
from the event loop's default executor, and once every thread of an adapter
is stuck its scans fail fast with an ``error`` result instead of piling up.

External collaborators are consumed through two abstract contracts:

* :class:`AntivirusEngine` — ``scan(path) -> AntivirusVerdict``; default
  implementation :class:`~scandaemon.engines.clamav.ClamAVEngine`.
* :class:`ReputationService` — ``lookup(hash) -> ReputationReport | None``;
  default implementation
  :class:`~scandaemon.engines.virustotal.VirusTotalReputationService`.

Example — minimal adapter for unit tests::

    class AlwaysClean(ScannerAdapter):
        async def _scan(self, job: ScanJob) -> EngineResult:
            return self.result(EngineStatus.CLEAN)
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, TypeVar

from scandaemon.core.errors import EngineError
from scandaemon.core.models import EngineResult, EngineStatus, Finding, ScanJob

logger = logging.getLogger(__name__)

#: Read size for streaming file access.
CHUNK_SIZE = 1024 * 1024

T = TypeVar("T")


class ScannerAdapter(ABC):
    """Uniform ``scan(job) -> EngineResult`` capability of one engine.

    Args:
        scanner_id: Registry key the adapter is registered under; copied into
            every result it produces.
        timeout: Upper bound in seconds for a single scan.
    """

    #: Threads available to one adapter for blocking calls.
    max_threads = 4

    def __init__(self, scanner_id: str, timeout: float) -> None:
        if timeout <= 0:
            raise ValueError("scanner timeout must be positive")
        self.scanner_id = scanner_id
        self.timeout = timeout
        self._executor: ThreadPoolExecutor | None = None
        self._threads_lock = threading.Lock()
        self._threads_busy = 0

    async def scan(self, job: ScanJob) -> EngineResult:
        """Run the engine against *job* and always return a result."""
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(self._scan(job), timeout=self.timeout)
        except asyncio.TimeoutError:
            result = self.error_result(f"scanner timed out after {self.timeout:g}s")
        except Exception as exc:
            result = self.error_result(str(exc) or exc.__class__.__name__)

        duration_ms = int((time.monotonic() - start) * 1000)
        if result.status is EngineStatus.ERROR:
            logger.warning(
                "Scanner error scanner=%s job_id=%s error=%s duration_ms=%d",
                self.scanner_id,
                job.id,
                result.error,
                duration_ms,
            )
        else:
            logger.info(
                "Scanner complete scanner=%s job_id=%s status=%s findings=%d duration_ms=%d",
                self.scanner_id,
                job.id,
                result.status.value,
                len(result.findings),
                duration_ms,
            )
        return dataclasses.replace(result, duration_ms=duration_ms)

    @abstractmethod
    async def _scan(self, job: ScanJob) -> EngineResult:
        """Engine-specific detection logic.  May raise; :meth:`scan` isolates it."""

    # ------------------------------------------------------------------
    # Blocking work
    # ------------------------------------------------------------------

    @property
    def threads_busy(self) -> int:
        """Blocking calls still running, including ones whose scan timed out."""
        with self._threads_lock:
            return self._threads_busy

    async def run_blocking(self, fn: Callable[..., T], *args: Any) -> T:
        """Run *fn* in this adapter's thread pool.

        Raises:
            EngineError: Every thread is still busy, e.g. with reads that
                outlived their scan's timeout.
        """
        with self._threads_lock:
            if self._threads_busy >= self.max_threads:
                raise EngineError(
                    f"all {self.max_threads} scanner threads are busy with earlier calls"
                )
            self._threads_busy += 1
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_threads,
                    thread_name_prefix=f"scandaemon-{self.scanner_id}",
                )
            executor = self._executor
        future = executor.submit(fn, *args)
        # Released when the thread finishes, not when the awaiting scan gives up.
        future.add_done_callback(self._release_thread)
        return await asyncio.wrap_future(future)

    def _release_thread(self, _future: Any) -> None:
        with self._threads_lock:
            self._threads_busy -= 1

    def close(self) -> None:
        """Stop the thread pool without waiting for stuck calls."""
        with self._threads_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    def result(
        self,
        status: EngineStatus,
        findings: Iterable[Finding] = (),
        **metadata: Any,
    ) -> EngineResult:
        return EngineResult(
            scanner=self.scanner_id,
            status=status,
            findings=tuple(findings),
            metadata=metadata,
        )

    def verdict(self, findings: Iterable[Finding], **metadata: Any) -> EngineResult:
        """``suspicious`` when there is any finding, ``clean`` otherwise."""
        findings = tuple(findings)
        status = EngineStatus.SUSPICIOUS if findings else EngineStatus.CLEAN
        return self.result(status, findings, **metadata)

    def error_result(self, message: str) -> EngineResult:
        return self.result(EngineStatus.ERROR, error=message)


def read_prefix(path: str, limit: int) -> bytes:
    """Synchronous: return at most *limit* leading bytes of *path*."""
    with open(path, "rb") as fh:
        return fh.read(limit)


# ---------------------------------------------------------------------------
# Antivirus engine contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AntivirusVerdict:
    """Result of an antivirus engine scan.

    Attributes:
        infected: ``True`` when the engine detected at least one threat.
        threats: Threat names as reported by the engine.
    """

    infected: bool
    threats: tuple[str, ...] = ()


class AntivirusEngineError(EngineError):
    """Raised when the antivirus engine is unreachable or cannot scan a file."""


class AntivirusEngine(ABC):
    """Abstract interface for signature-based antivirus engines."""

    name: str = "antivirus"

    @abstractmethod
    async def scan(self, file_path: str) -> AntivirusVerdict:
        """Scan *file_path*.

        Raises:
            AntivirusEngineError: If the engine is unreachable or reports an
                error for the file.
        """

    async def ping(self) -> bool:
        """Return ``True`` if the engine is reachable.  Must never raise."""
        return True

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Reputation service contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReputationReport:
    """Detections of a file hash across a reputation index's engines."""

    positives: int
    total: int
    permalink: str = ""

    @property
    def ratio(self) -> float | None:
        if self.total <= 0:
            return None
        return self.positives / self.total


class ReputationServiceError(EngineError):
    """Raised when the reputation index cannot be queried."""


class ReputationService(ABC):
    name: str = "reputation"

    @abstractmethod
    async def lookup(self, file_hash: str) -> ReputationReport | None:
        """Return the report for *file_hash*, or ``None`` if the hash is unknown.

        Raises:
            ReputationServiceError: On transport or API failures.
        """

    async def close(self) -> None:
        return None
