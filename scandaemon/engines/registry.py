"""Scanner registry: ``ScannerID -> ScannerAdapter``, resolved once at start.

The orchestrator looks scanners up by the ids snapshotted into each job; it
never branches on scanner names itself.
"""
from __future__ import annotations

import logging
from typing import Iterator, Mapping

from scandaemon.config import Settings
from scandaemon.core.models import ScannerID
from scandaemon.engines.base import AntivirusEngine, ReputationService, ScannerAdapter
from scandaemon.engines.basic_validation import BasicValidationScanner
from scandaemon.engines.heuristic import HeuristicScanner
from scandaemon.engines.reputation import ReputationScanner
from scandaemon.engines.rules import FULL_RULES, REDUCED_RULES, RuleScanner
from scandaemon.engines.signature import SignatureScanner

logger = logging.getLogger(__name__)


class ScannerRegistry:
    def __init__(self, adapters: Mapping[str, ScannerAdapter]) -> None:
        self._adapters = dict(adapters)

    def get(self, scanner_id: str) -> ScannerAdapter | None:
        return self._adapters.get(scanner_id)

    def __contains__(self, scanner_id: object) -> bool:
        return scanner_id in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()


def build_registry(
    settings: Settings,
    *,
    antivirus: AntivirusEngine | None = None,
    reputation: ReputationService | None = None,
) -> ScannerRegistry:
    """Register one adapter per :class:`ScannerID`.

    Scanners whose collaborator is ``None`` are still registered; they report
    an ``error`` result ("not configured") so jobs keep flowing.
    """
    if antivirus is None:
        logger.warning("No antivirus engine configured; signature scans will error")
    if reputation is None:
        logger.warning("No reputation service configured; reputation scans will error")

    adapters: dict[str, ScannerAdapter] = {
        ScannerID.BASIC_VALIDATION.value: BasicValidationScanner(
            ScannerID.BASIC_VALIDATION.value, settings.basic_validation_timeout
        ),
        ScannerID.SIGNATURE.value: SignatureScanner(
            ScannerID.SIGNATURE.value, settings.signature_timeout, antivirus
        ),
        ScannerID.RULES_REDUCED.value: RuleScanner(
            ScannerID.RULES_REDUCED.value, settings.rules_timeout, REDUCED_RULES
        ),
        ScannerID.RULES_FULL.value: RuleScanner(
            ScannerID.RULES_FULL.value, settings.rules_timeout, FULL_RULES
        ),
        ScannerID.REPUTATION.value: ReputationScanner(
            ScannerID.REPUTATION.value, settings.reputation_timeout, reputation
        ),
        ScannerID.HEURISTIC.value: HeuristicScanner(
            ScannerID.HEURISTIC.value, settings.heuristic_timeout
        ),
    }
    return ScannerRegistry(adapters)
