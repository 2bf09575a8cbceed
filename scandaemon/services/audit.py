"""Audit sink — tamper-evident record of every final verdict.

:class:`AuditSink` is the collaborator contract the orchestrator calls once per
finished job.  Recording is best effort: the orchestrator logs and suppresses
audit failures because the result store, not the audit trail, is the system of
record.

:class:`LoggingAuditSink` writes one structured JSON log entry per verdict to
the ``scandaemon.audit`` logger.  When a signing key is configured, each entry
carries an HMAC-SHA256 signature over its canonical immutable fields::

    {"completed_at": ..., "file_hash": ..., "job_id": ..., "status": ...}

serialised with ``sort_keys=True`` and compact separators, so a log shipper
or SIEM can verify entries offline with :meth:`LoggingAuditSink.verify`.
"""

from __future__ import annotations

import abc
import hashlib
import hmac
import json
import logging
from typing import Any

from scandaemon.core.models import AggregatedResult

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("scandaemon.audit")

# Fields included in HMAC computation.
_HMAC_FIELDS = ("job_id", "file_hash", "status", "completed_at")


class AuditSink(abc.ABC):
    @abc.abstractmethod
    async def record(self, result: AggregatedResult) -> None:
        """Record the final verdict *result*."""


class LoggingAuditSink(AuditSink):
    """Audit sink writing signed JSON lines to the ``scandaemon.audit`` logger.

    Args:
        signing_key: HMAC secret.  Empty or ``None`` disables signing.
    """

    def __init__(self, signing_key: str | None = None) -> None:
        self._key: bytes | None = signing_key.encode("utf-8") if signing_key else None

    def entry(self, result: AggregatedResult) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event": "scan_verdict",
            "job_id": result.job_id,
            "file_id": result.file_id,
            "file_hash": result.file_hash,
            "tier": result.tier,
            "status": result.status.value,
            "threat_level": result.threat_level.value,
            "confidence": result.confidence,
            "scan_engines": result.scan_engines,
            "findings": len(result.findings),
            "scan_time_ms": result.scan_time_ms,
            "completed_at": result.completed_at.isoformat(),
        }
        if result.error:
            payload["error"] = result.error
        if self._key is not None:
            payload["hmac_signature"] = self.sign(payload)
        return payload

    def sign(self, payload: dict[str, Any]) -> str:
        if self._key is None:
            raise ValueError("audit signing key not configured")
        canonical = json.dumps(
            {name: payload[name] for name in _HMAC_FIELDS},
            separators=(",", ":"),
            sort_keys=True,
        )
        return hmac.new(self._key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, payload: dict[str, Any]) -> bool:
        """Return ``True`` if *payload* carries a valid signature."""
        signature = payload.get("hmac_signature")
        if self._key is None or not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    async def record(self, result: AggregatedResult) -> None:
        audit_logger.info(json.dumps(self.entry(result)))
