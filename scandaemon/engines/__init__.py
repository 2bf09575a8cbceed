"""Detection engines for the scan daemon.

Public re-exports for the engines package::

    from scandaemon.engines import ScannerAdapter, build_registry
"""

from scandaemon.engines.base import (
    AntivirusEngine,
    AntivirusEngineError,
    AntivirusVerdict,
    ReputationReport,
    ReputationService,
    ReputationServiceError,
    ScannerAdapter,
)
from scandaemon.engines.registry import ScannerRegistry, build_registry

__all__ = [
    "AntivirusEngine",
    "AntivirusEngineError",
    "AntivirusVerdict",
    "ReputationReport",
    "ReputationService",
    "ReputationServiceError",
    "ScannerAdapter",
    "ScannerRegistry",
    "build_registry",
]
