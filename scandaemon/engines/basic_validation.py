"""Basic validation scanner: content hash and magic-number checks.

Two checks run against the stored file:

* The SHA-256 of the file content is compared (case-insensitively) with the
  hash supplied at submission.  A mismatch means the file changed after
  upload, or the caller lied about it, and yields a ``hash_mismatch``
  finding of severity ``high``.
* Files whose extension appears in :data:`MAGIC_NUMBERS` must carry the
  expected signature bytes at the expected offset, otherwise a
  ``file_type_mismatch`` finding of severity ``medium`` is produced.

A missing or unreadable file is an engine error, not a finding.
"""
from __future__ import annotations

import hashlib
import os
from types import MappingProxyType
from typing import Mapping

from scandaemon.core.models import EngineResult, Finding, ScanJob, Severity
from scandaemon.engines.base import CHUNK_SIZE, ScannerAdapter

#: extension -> (offset, expected bytes)
MAGIC_NUMBERS: Mapping[str, tuple[int, bytes]] = MappingProxyType(
    {
        ".pdf": (0, b"%PDF"),
        ".dcm": (128, b"DICM"),
        ".nii": (344, b"n+1\x00"),
        ".png": (0, b"\x89PNG\r\n\x1a\n"),
        ".jpg": (0, b"\xff\xd8\xff"),
        ".jpeg": (0, b"\xff\xd8\xff"),
        ".zip": (0, b"PK\x03\x04"),
    }
)

_HEADER_BYTES = 512


def _digest_and_header(path: str) -> tuple[str, int, bytes]:
    """Synchronous: return ``(sha256 hex, size, leading bytes)`` of *path*."""
    sha256 = hashlib.sha256()
    size = 0
    header = b""
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(CHUNK_SIZE)
            if not chunk:
                break
            if len(header) < _HEADER_BYTES:
                header += chunk[: _HEADER_BYTES - len(header)]
            sha256.update(chunk)
            size += len(chunk)
    return sha256.hexdigest(), size, header


def check_magic(file_name: str, header: bytes) -> Finding | None:
    """Return a ``file_type_mismatch`` finding if *header* contradicts the extension."""
    extension = os.path.splitext(file_name)[1].lower()
    expected = MAGIC_NUMBERS.get(extension)
    if expected is None:
        return None
    offset, magic = expected
    if header[offset : offset + len(magic)] == magic:
        return None
    return Finding(
        type="file_type_mismatch",
        message=f"File content does not match the {extension} file type",
        severity=Severity.MEDIUM,
        details={"extension": extension, "offset": offset, "expected": magic.hex()},
    )


class BasicValidationScanner(ScannerAdapter):
    async def _scan(self, job: ScanJob) -> EngineResult:
        actual_hash, actual_size, header = await self.run_blocking(
            _digest_and_header, job.file_path
        )

        findings: list[Finding] = []
        if job.file_hash and actual_hash != job.file_hash.strip().lower():
            findings.append(
                Finding(
                    type="hash_mismatch",
                    message="File hash does not match the submitted hash",
                    severity=Severity.HIGH,
                    details={"expected": job.file_hash, "actual": actual_hash},
                )
            )

        mismatch = check_magic(job.file_name or job.file_path, header)
        if mismatch is not None:
            findings.append(mismatch)

        return self.verdict(findings, actual_size=actual_size, actual_hash=actual_hash)
