"""Pydantic schemas for the scan HTTP API.

Request models validate submissions before they reach the admission
gatekeeper; response models mirror the ``to_dict`` form of the core
dataclasses so the HTTP and websocket payloads share one shape.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class RescanRequest(BaseModel):
    """File data needed to scan an already known file again."""

    file_path: str = Field(..., min_length=1, description="Path readable by the scanners")
    file_name: str = Field(..., min_length=1)
    file_size_bytes: int = Field(..., ge=0)
    file_hash: str = Field(..., description="Hex SHA-256 of the file content")
    tier: str = Field(..., min_length=1)
    caller_id: str = Field(..., min_length=1)
    priority: int | str | None = Field(
        default=None,
        description="Numeric priority (>= 1) or one of urgent, high, normal, low",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("file_hash")
    @classmethod
    def validate_file_hash(cls, v: str) -> str:
        v = v.strip().lower()
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("file_hash must be a 64-character hex SHA-256 digest")
        return v

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: int | str | None) -> int | str | None:
        if isinstance(v, int) and v < 1:
            raise ValueError("priority must be >= 1")
        return v


class ScanSubmissionRequest(RescanRequest):
    file_id: str = Field(..., min_length=1)


class SubmissionReceiptOut(BaseModel):
    job_id: str
    status: Literal["queued"]
    estimated_time: int = Field(..., description="Estimated scan time in seconds")


class FindingOut(BaseModel):
    type: str
    message: str
    severity: Literal["low", "medium", "high", "critical"]
    details: dict[str, Any] = Field(default_factory=dict)


class EngineResultOut(BaseModel):
    scanner: str
    status: Literal["clean", "suspicious", "infected", "error"]
    findings: list[FindingOut]
    metadata: dict[str, Any]
    duration_ms: int


class ScanResultOut(BaseModel):
    job_id: str
    file_id: str
    status: Literal["clean", "suspicious", "infected", "error"]
    threat_level: Literal["clean", "medium", "high", "unknown"]
    confidence: int = Field(..., ge=0, le=100)
    findings: list[FindingOut]
    recommendations: list[str]
    scan_time_ms: int
    per_engine: dict[str, EngineResultOut]
    tier: str
    file_path: str
    file_hash: str
    completed_at: datetime
    error: str | None = None


class JobStatusOut(BaseModel):
    """Returned for jobs that have no verdict yet (or were cancelled)."""

    job_id: str
    file_id: str
    status: Literal["queued", "scanning", "completed", "error", "cancelled"]
    updated_at: datetime
    error: str | None = None


class FileHistoryOut(BaseModel):
    file_id: str
    results: list[ScanResultOut]


class QueueStatusOut(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int


class StatsOut(BaseModel):
    total_scans: int
    clean_files: int
    suspicious_files: int
    infected_files: int
    errors: int
    average_scan_time_ms: int


class CancelOut(BaseModel):
    job_id: str
    status: Literal["cancelled"]
