"""Heuristic scanner: byte entropy and embedded executable headers.

* Shannon entropy above :data:`ENTROPY_THRESHOLD` bits per byte suggests
  encrypted or packed content (``high_entropy``, severity ``medium``).
* A DOS ``MZ`` header found past :data:`EXECUTABLE_OFFSET` suggests an
  executable appended to or embedded in another file
  (``embedded_executable``, severity ``high``).  An ``MZ`` at the very start
  of a file is an ordinary executable and is left to the other engines.
"""
from __future__ import annotations

import math
from collections import Counter

from scandaemon.core.models import EngineResult, Finding, ScanJob, Severity
from scandaemon.engines.base import CHUNK_SIZE, ScannerAdapter

ENTROPY_THRESHOLD = 7.5
EXECUTABLE_OFFSET = 1000
EXECUTABLE_HEADER = b"MZ"


def shannon_entropy(counts: Counter, total: int) -> float:
    if total == 0:
        return 0.0
    entropy = 0.0
    for count in counts.values():
        p = count / total
        entropy -= p * math.log2(p)
    return entropy


def _analyse(path: str) -> tuple[float, int, int | None]:
    """Synchronous: return ``(entropy, size, offset of embedded MZ or None)``."""
    counts: Counter = Counter()
    total = 0
    tail = b""
    exe_offset = None
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(CHUNK_SIZE)
            if not chunk:
                break
            counts.update(chunk)
            if exe_offset is None:
                # Carry one byte over so a header split across chunks is found.
                window = tail + chunk
                window_start = total - len(tail)
                index = window.find(
                    EXECUTABLE_HEADER, max(0, EXECUTABLE_OFFSET + 1 - window_start)
                )
                if index != -1:
                    exe_offset = window_start + index
                tail = chunk[-(len(EXECUTABLE_HEADER) - 1) :]
            total += len(chunk)
    return shannon_entropy(counts, total), total, exe_offset


class HeuristicScanner(ScannerAdapter):
    async def _scan(self, job: ScanJob) -> EngineResult:
        entropy, size, exe_offset = await self.run_blocking(_analyse, job.file_path)

        findings = []
        if entropy > ENTROPY_THRESHOLD:
            findings.append(
                Finding(
                    type="high_entropy",
                    message=f"High entropy content ({entropy:.2f} bits/byte)",
                    severity=Severity.MEDIUM,
                    details={"entropy": round(entropy, 4)},
                )
            )
        if exe_offset is not None:
            findings.append(
                Finding(
                    type="embedded_executable",
                    message=f"Executable header found at offset {exe_offset}",
                    severity=Severity.HIGH,
                    details={"offset": exe_offset},
                )
            )
        return self.verdict(findings, entropy=round(entropy, 4), size=size)
