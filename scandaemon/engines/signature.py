"""Signature scanner: delegates to an external antivirus engine."""
from __future__ import annotations

from scandaemon.core.errors import EngineError
from scandaemon.core.models import EngineResult, EngineStatus, Finding, ScanJob, Severity
from scandaemon.engines.base import AntivirusEngine, ScannerAdapter


class SignatureScanner(ScannerAdapter):
    """Maps an :class:`AntivirusVerdict` onto an engine result.

    An infected verdict yields one ``malware`` finding of severity
    ``critical`` per reported threat name.
    """

    def __init__(self, scanner_id: str, timeout: float, engine: AntivirusEngine | None) -> None:
        super().__init__(scanner_id, timeout)
        self._engine = engine

    async def _scan(self, job: ScanJob) -> EngineResult:
        if self._engine is None:
            raise EngineError("antivirus engine not configured")

        verdict = await self._engine.scan(job.file_path)
        if not verdict.infected:
            return self.result(EngineStatus.CLEAN, engine=self._engine.name, threats=[])

        threats = verdict.threats or ("unnamed threat",)
        findings = [
            Finding(
                type="malware",
                message=f"Malware detected: {threat}",
                severity=Severity.CRITICAL,
                details={"threat": threat, "engine": self._engine.name},
            )
            for threat in threats
        ]
        return self.result(
            EngineStatus.INFECTED,
            findings,
            engine=self._engine.name,
            threats=list(threats),
        )
