"""Core data model shared by every stage of the scan daemon.

All records are dataclasses.  Jobs, engine results and aggregated results are
frozen: a :class:`ScanJob` never changes after the gatekeeper creates it (only
its separately stored :class:`JobStatus` advances), and an
:class:`EngineResult` is immutable once returned to the orchestrator.

Each record converts to and from plain JSON-compatible dicts so it can cross
the durable queue, the result store and the websocket stream unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class ScannerID(str, Enum):
    """Registry keys for the detection engines a tier may enable."""

    BASIC_VALIDATION = "basic_validation"
    SIGNATURE = "signature"
    RULES_REDUCED = "rules_reduced"
    RULES_FULL = "rules_full"
    REPUTATION = "reputation"
    HEURISTIC = "heuristic"


class EngineStatus(str, Enum):
    """Verdict of a single engine, and of the aggregate."""

    CLEAN = "clean"
    SUSPICIOUS = "suspicious"
    INFECTED = "infected"
    ERROR = "error"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThreatLevel(str, Enum):
    CLEAN = "clean"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


class JobStatus(str, Enum):
    """Lifecycle of a scan job.

    ``queued -> scanning -> {completed, error}``, plus ``queued -> cancelled``
    for jobs withdrawn before a worker claimed them.  ``scanning -> scanning``
    is permitted so a job re-claimed after a crash can be restarted.
    """

    QUEUED = "queued"
    SCANNING = "scanning"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @staticmethod
    def can_transition(current: "JobStatus | None", new: "JobStatus") -> bool:
        if current is None:
            return True
        return new in _ALLOWED_TRANSITIONS[current]


_TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED})

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset(
        {JobStatus.QUEUED, JobStatus.SCANNING, JobStatus.CANCELLED, JobStatus.ERROR}
    ),
    JobStatus.SCANNING: frozenset({JobStatus.SCANNING, JobStatus.COMPLETED, JobStatus.ERROR}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ERROR: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


# ---------------------------------------------------------------------------
# Findings and engine results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Finding:
    """A single piece of evidence produced by one scanner.

    Attributes:
        type: Machine-readable finding kind (``"hash_mismatch"``,
            ``"malware"``, ``"rule_match"``, ...).  Recommendations are keyed
            on this value.
        message: Human-readable description.
        severity: Assessed severity.
        details: Engine-specific extra data (threat name, rule name, ...).
    """

    type: str
    message: str
    severity: Severity
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "severity": self.severity.value,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Finding":
        return cls(
            type=data["type"],
            message=data.get("message", ""),
            severity=Severity(data["severity"]),
            details=dict(data.get("details") or {}),
        )


@dataclass(frozen=True)
class EngineResult:
    """Outcome of running one scanner against one job."""

    scanner: str
    status: EngineStatus
    findings: tuple[Finding, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def error(self) -> str | None:
        return self.metadata.get("error") if self.status is EngineStatus.ERROR else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanner": self.scanner,
            "status": self.status.value,
            "findings": [f.to_dict() for f in self.findings],
            "metadata": dict(self.metadata),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineResult":
        return cls(
            scanner=data["scanner"],
            status=EngineStatus(data["status"]),
            findings=tuple(Finding.from_dict(f) for f in data.get("findings", [])),
            metadata=dict(data.get("metadata") or {}),
            duration_ms=int(data.get("duration_ms", 0)),
        )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Submission:
    """An incoming request to scan an uploaded file."""

    file_id: str
    file_path: str
    file_name: str
    file_size_bytes: int
    file_hash: str
    tier: str
    caller_id: str
    priority: int | str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScanJob:
    """A unit of work created by the gatekeeper and consumed once by a worker.

    ``scanners`` is the tier's scanner set captured at submission time; later
    changes to the tier policy table never affect an existing job.
    """

    id: str
    file_id: str
    file_path: str
    file_name: str
    file_size_bytes: int
    file_hash: str
    tier: str
    caller_id: str
    priority: int
    scanners: tuple[str, ...]
    submitted_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "file_path": self.file_path,
            "file_name": self.file_name,
            "file_size_bytes": self.file_size_bytes,
            "file_hash": self.file_hash,
            "tier": self.tier,
            "caller_id": self.caller_id,
            "priority": self.priority,
            "scanners": list(self.scanners),
            "submitted_at": self.submitted_at.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScanJob":
        return cls(
            id=data["id"],
            file_id=data["file_id"],
            file_path=data["file_path"],
            file_name=data["file_name"],
            file_size_bytes=int(data["file_size_bytes"]),
            file_hash=data["file_hash"],
            tier=data["tier"],
            caller_id=data["caller_id"],
            priority=int(data["priority"]),
            scanners=tuple(data["scanners"]),
            submitted_at=_parse_dt(data.get("submitted_at")) or utcnow(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SubmissionReceipt:
    job_id: str
    status: str
    estimated_time: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "estimated_time": self.estimated_time,
        }


# ---------------------------------------------------------------------------
# Aggregated result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregatedResult:
    """The single verdict for a job: the unit persisted and broadcast.

    ``per_engine`` preserves scanner execution order.  ``error`` is set only
    when the job could not reach a verdict (every engine failed, or the
    infrastructure gave up on the job).
    """

    job_id: str
    file_id: str
    status: EngineStatus
    threat_level: ThreatLevel
    confidence: int
    findings: tuple[Finding, ...]
    recommendations: tuple[str, ...]
    scan_time_ms: int
    per_engine: dict[str, EngineResult]
    tier: str = ""
    file_path: str = ""
    file_hash: str = ""
    completed_at: datetime = field(default_factory=utcnow)
    error: str | None = None

    @property
    def scan_engines(self) -> list[str]:
        return list(self.per_engine)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "file_id": self.file_id,
            "status": self.status.value,
            "threat_level": self.threat_level.value,
            "confidence": self.confidence,
            "findings": [f.to_dict() for f in self.findings],
            "recommendations": list(self.recommendations),
            "scan_time_ms": self.scan_time_ms,
            "per_engine": {k: v.to_dict() for k, v in self.per_engine.items()},
            "tier": self.tier,
            "file_path": self.file_path,
            "file_hash": self.file_hash,
            "completed_at": self.completed_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AggregatedResult":
        return cls(
            job_id=data["job_id"],
            file_id=data["file_id"],
            status=EngineStatus(data["status"]),
            threat_level=ThreatLevel(data["threat_level"]),
            confidence=int(data["confidence"]),
            findings=tuple(Finding.from_dict(f) for f in data.get("findings", [])),
            recommendations=tuple(data.get("recommendations", [])),
            scan_time_ms=int(data.get("scan_time_ms", 0)),
            per_engine={
                k: EngineResult.from_dict(v) for k, v in (data.get("per_engine") or {}).items()
            },
            tier=data.get("tier", ""),
            file_path=data.get("file_path", ""),
            file_hash=data.get("file_hash", ""),
            completed_at=_parse_dt(data.get("completed_at")) or utcnow(),
            error=data.get("error"),
        )


# ---------------------------------------------------------------------------
# Status / stats views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueueStatus:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class StatsSnapshot:
    total_scans: int = 0
    clean_files: int = 0
    suspicious_files: int = 0
    infected_files: int = 0
    errors: int = 0
    average_scan_time_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_scans": self.total_scans,
            "clean_files": self.clean_files,
            "suspicious_files": self.suspicious_files,
            "infected_files": self.infected_files,
            "errors": self.errors,
            "average_scan_time_ms": self.average_scan_time_ms,
        }


@dataclass(frozen=True)
class JobStatusRecord:
    job_id: str
    file_id: str
    status: JobStatus
    updated_at: datetime
    error: str | None = None
