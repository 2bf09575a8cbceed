"""ORM model registry - import all models so Alembic autogenerate can detect them."""

from scandaemon.models.job_status import ScanJobStatus
from scandaemon.models.scan_result import ScanResultRecord

__all__ = [
    "ScanJobStatus",
    "ScanResultRecord",
]
