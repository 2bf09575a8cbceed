from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from scandaemon.db.base import Base


class ScanJobStatus(Base):
    """Current lifecycle status of a scan job.  Updated in place, never regressed."""

    __tablename__ = "scan_job_status"
    __table_args__ = (Index("ix_scan_job_status_file_id", "file_id"),)

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    file_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
