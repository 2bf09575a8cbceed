"""Result aggregation — folds per-engine results into one verdict.

:func:`aggregate` is a pure function: the same ``per_engine`` mapping always
produces the same status, threat level, confidence, findings and
recommendations, so a replayed job never yields a different verdict.

**Status precedence** (highest wins)::

    infected > suspicious > error > clean

``error`` only wins when *every* engine errored (or no engine ran at all).
A mix of ``clean`` and ``error`` results is ``clean``: one broken engine must
not mask the verdict of the others.

Confidence is a fixed constant per status rather than a weighted average:

* ``infected``   → 95
* ``suspicious`` → 80
* ``error``      → 0
* ``clean``      → 100

Usage::

    from scandaemon.core.aggregator import aggregate

    result = aggregate(job, per_engine, scan_time_ms=1250)
    print(result.status, result.recommendations)
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Iterable, Mapping

from scandaemon.core.errors import AggregationError
from scandaemon.core.models import (
    AggregatedResult,
    EngineResult,
    EngineStatus,
    Finding,
    ScanJob,
    ThreatLevel,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lookup tables
# ---------------------------------------------------------------------------

THREAT_LEVELS: Mapping[EngineStatus, ThreatLevel] = MappingProxyType(
    {
        EngineStatus.INFECTED: ThreatLevel.HIGH,
        EngineStatus.SUSPICIOUS: ThreatLevel.MEDIUM,
        EngineStatus.ERROR: ThreatLevel.UNKNOWN,
        EngineStatus.CLEAN: ThreatLevel.CLEAN,
    }
)

CONFIDENCE: Mapping[EngineStatus, int] = MappingProxyType(
    {
        EngineStatus.INFECTED: 95,
        EngineStatus.SUSPICIOUS: 80,
        EngineStatus.ERROR: 0,
        EngineStatus.CLEAN: 100,
    }
)

STATUS_RECOMMENDATIONS: Mapping[EngineStatus, tuple[str, ...]] = MappingProxyType(
    {
        EngineStatus.INFECTED: (
            "quarantine immediately",
            "do not open or share the file",
            "notify the security team",
        ),
        EngineStatus.SUSPICIOUS: (
            "review the file manually before use",
            "run additional scanning",
            "monitor systems that accessed the file",
        ),
        EngineStatus.ERROR: ("re-submit the file once the scanning engines are available",),
        EngineStatus.CLEAN: (),
    }
)

FINDING_RECOMMENDATIONS: Mapping[str, str] = MappingProxyType(
    {
        "hash_mismatch": "verify integrity and re-submit",
        "file_type_mismatch": "confirm the file content matches its extension",
        "malware": "quarantine immediately",
        "rule_match": "inspect the content that matched detection rules",
        "high_entropy": "file may be encrypted or packed; verify its origin",
        "embedded_executable": "extract and analyse the embedded executable",
    }
)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _overall_status(results: Iterable[EngineResult]) -> EngineStatus:
    statuses = [r.status for r in results]
    if EngineStatus.INFECTED in statuses:
        return EngineStatus.INFECTED
    if EngineStatus.SUSPICIOUS in statuses:
        return EngineStatus.SUSPICIOUS
    if not statuses or all(s is EngineStatus.ERROR for s in statuses):
        return EngineStatus.ERROR
    return EngineStatus.CLEAN


def build_recommendations(status: EngineStatus, findings: Iterable[Finding]) -> tuple[str, ...]:
    """Status boilerplate followed by per-finding advice, deduplicated in order."""
    ordered = list(STATUS_RECOMMENDATIONS[status])
    ordered.extend(
        FINDING_RECOMMENDATIONS[f.type] for f in findings if f.type in FINDING_RECOMMENDATIONS
    )
    return tuple(dict.fromkeys(ordered))


def aggregate(
    job: ScanJob,
    per_engine: Mapping[str, EngineResult],
    scan_time_ms: int,
) -> AggregatedResult:
    """Compute the single verdict for *job* from its per-engine results.

    Args:
        job: The job whose scanners produced *per_engine*.
        per_engine: Engine results keyed by scanner id, in execution order.
        scan_time_ms: Total wall-clock time spent scanning the job.

    Returns:
        The :class:`AggregatedResult`.  When every engine errored the result
        has status ``error`` and ``error`` holds the
        :class:`~scandaemon.core.errors.AggregationError` message listing the
        per-engine failures.
    """
    engines = dict(per_engine)
    status = _overall_status(engines.values())
    findings = tuple(f for r in engines.values() for f in r.findings)

    error: str | None = None
    if status is EngineStatus.ERROR:
        exc = AggregationError(
            job.id, {name: r.error or "unknown error" for name, r in engines.items()}
        )
        error = str(exc)
        logger.warning("Aggregation without verdict job_id=%s error=%s", job.id, error)

    return AggregatedResult(
        job_id=job.id,
        file_id=job.file_id,
        status=status,
        threat_level=THREAT_LEVELS[status],
        confidence=CONFIDENCE[status],
        findings=findings,
        recommendations=build_recommendations(status, findings),
        scan_time_ms=scan_time_ms,
        per_engine=engines,
        tier=job.tier,
        file_path=job.file_path,
        file_hash=job.file_hash,
        error=error,
    )


def failed_result(
    job: ScanJob,
    error: str,
    per_engine: Mapping[str, EngineResult] | None = None,
    scan_time_ms: int = 0,
) -> AggregatedResult:
    """Build the ``error`` verdict for a job the infrastructure gave up on."""
    return AggregatedResult(
        job_id=job.id,
        file_id=job.file_id,
        status=EngineStatus.ERROR,
        threat_level=ThreatLevel.UNKNOWN,
        confidence=CONFIDENCE[EngineStatus.ERROR],
        findings=(),
        recommendations=STATUS_RECOMMENDATIONS[EngineStatus.ERROR],
        scan_time_ms=scan_time_ms,
        per_engine=dict(per_engine or {}),
        tier=job.tier,
        file_path=job.file_path,
        file_hash=job.file_hash,
        error=error,
    )
