"""Reputation scanner: file-hash lookup against a reputation index.

The detection ratio ``positives / total`` decides the verdict:

=================  ============  ========
ratio              status        severity
=================  ============  ========
>= 0.3             infected      critical
>= 0.1             suspicious    high
> 0 positives      suspicious    medium
none / unknown     clean         -
=================  ============  ========

A report with positives but ``total == 0`` cannot produce a ratio and is
treated as the lowest suspicious band.
"""
from __future__ import annotations

from scandaemon.core.errors import EngineError
from scandaemon.core.models import EngineResult, EngineStatus, Finding, ScanJob, Severity
from scandaemon.engines.base import ReputationReport, ReputationService, ScannerAdapter

INFECTED_RATIO = 0.3
SUSPICIOUS_RATIO = 0.1


def classify(report: ReputationReport) -> tuple[EngineStatus, Severity | None]:
    if report.positives <= 0:
        return EngineStatus.CLEAN, None
    ratio = report.ratio
    if ratio is not None and ratio >= INFECTED_RATIO:
        return EngineStatus.INFECTED, Severity.CRITICAL
    if ratio is not None and ratio >= SUSPICIOUS_RATIO:
        return EngineStatus.SUSPICIOUS, Severity.HIGH
    return EngineStatus.SUSPICIOUS, Severity.MEDIUM


class ReputationScanner(ScannerAdapter):
    def __init__(
        self, scanner_id: str, timeout: float, service: ReputationService | None
    ) -> None:
        super().__init__(scanner_id, timeout)
        self._service = service

    async def _scan(self, job: ScanJob) -> EngineResult:
        if self._service is None:
            raise EngineError("reputation service not configured")

        report = await self._service.lookup(job.file_hash)
        if report is None:
            return self.result(EngineStatus.CLEAN, known=False)

        status, severity = classify(report)
        metadata = {
            "known": True,
            "positives": report.positives,
            "total": report.total,
            "ratio": report.ratio,
            "permalink": report.permalink,
        }
        if severity is None:
            return self.result(status, **metadata)

        finding = Finding(
            type="reputation_detection",
            message=f"Detected by {report.positives}/{report.total} reputation engines",
            severity=severity,
            details={"positives": report.positives, "total": report.total},
        )
        return self.result(status, [finding], **metadata)
