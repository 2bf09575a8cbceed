"""Rule scanner: content-pattern rules over a bounded file prefix.

Rules are compiled byte regular expressions evaluated against the first
:data:`PREFIX_BYTES` bytes of the file.  Two presets exist:

``REDUCED_RULES``
    ``executable_in_document`` and ``script_injection``.
``FULL_RULES``
    The reduced set plus ``network_indicator`` and ``embedded_key_material``.

Every matching rule produces one ``rule_match`` finding (severity
``medium``) and the engine status becomes ``suspicious``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from scandaemon.core.models import EngineResult, Finding, ScanJob, Severity
from scandaemon.engines.base import ScannerAdapter, read_prefix

PREFIX_BYTES = 10_000

# Matched excerpts reported per rule
_MAX_MATCHES = 5
_MAX_EXCERPT = 64


@dataclass(frozen=True)
class Rule:
    name: str
    pattern: re.Pattern[bytes]
    description: str

    def find(self, data: bytes) -> list[str]:
        excerpts = []
        for match in self.pattern.finditer(data):
            excerpts.append(match.group(0)[:_MAX_EXCERPT].decode("latin-1"))
            if len(excerpts) >= _MAX_MATCHES:
                break
        return excerpts


EXECUTABLE_IN_DOCUMENT = Rule(
    name="executable_in_document",
    pattern=re.compile(rb"MZ[\x00-\xff]{58}PE"),
    description="Windows executable header inside a document",
)

SCRIPT_INJECTION = Rule(
    name="script_injection",
    pattern=re.compile(rb"<script|javascript|eval\(", re.IGNORECASE),
    description="Script content embedded in the file",
)

NETWORK_INDICATOR = Rule(
    name="network_indicator",
    pattern=re.compile(rb"(?:https?|ftp)://\S+"),
    description="Network address embedded in the file",
)

EMBEDDED_KEY_MATERIAL = Rule(
    name="embedded_key_material",
    pattern=re.compile(rb"-----BEGIN [A-Z ]+-----"),
    description="PEM-encoded key or certificate block",
)

REDUCED_RULES: tuple[Rule, ...] = (EXECUTABLE_IN_DOCUMENT, SCRIPT_INJECTION)
FULL_RULES: tuple[Rule, ...] = REDUCED_RULES + (NETWORK_INDICATOR, EMBEDDED_KEY_MATERIAL)


def evaluate_rules(rules: Sequence[Rule], data: bytes) -> list[Finding]:
    findings = []
    for rule in rules:
        matches = rule.find(data)
        if matches:
            findings.append(
                Finding(
                    type="rule_match",
                    message=f"Rule {rule.name} matched: {rule.description}",
                    severity=Severity.MEDIUM,
                    details={"rule": rule.name, "matches": matches},
                )
            )
    return findings


class RuleScanner(ScannerAdapter):
    def __init__(
        self,
        scanner_id: str,
        timeout: float,
        rules: Sequence[Rule],
        prefix_bytes: int = PREFIX_BYTES,
    ) -> None:
        super().__init__(scanner_id, timeout)
        self.rules = tuple(rules)
        self.prefix_bytes = prefix_bytes

    async def _scan(self, job: ScanJob) -> EngineResult:
        data = await self.run_blocking(read_prefix, job.file_path, self.prefix_bytes)
        findings = evaluate_rules(self.rules, data)
        return self.verdict(
            findings,
            rules_evaluated=[r.name for r in self.rules],
            bytes_scanned=len(data),
        )
