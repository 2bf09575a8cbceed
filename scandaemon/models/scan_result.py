from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from scandaemon.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ScanResultRecord(Base):
    """Aggregated verdict of one scan job.

    One row per job id: re-processing a job overwrites its row.  ``result``
    holds the full serialised :class:`~scandaemon.core.models.AggregatedResult`;
    the other columns are denormalised for querying.
    """

    __tablename__ = "scan_result"
    __table_args__ = (
        Index("ix_scan_result_file_id_created_at", "file_id", "created_at"),
        Index("ix_scan_result_file_hash", "file_hash"),
    )

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    file_id: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_hash: Mapped[str] = mapped_column(Text, nullable=False)
    tier: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    threat_level: Mapped[str] = mapped_column(String(16), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    scan_engines: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    result: Mapped[dict] = mapped_column(JSONType, nullable=False)
    scan_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
