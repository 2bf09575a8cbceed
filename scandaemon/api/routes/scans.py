"""API routes for scan submission and queries.

Endpoints
---------
POST   /v1/scans
    Submit a file for scanning.  Returns ``202 Accepted`` with the job id and
    an estimated scan time.
GET    /v1/scans/{job_id}
    The aggregated verdict, or the job's current status while it is still
    queued or scanning.
DELETE /v1/scans/{job_id}
    Cancel a job that no worker has claimed yet.
GET    /v1/files/{file_id}/scans
    Every verdict recorded for a file, most recent first.
POST   /v1/files/{file_id}/rescan
    Submit an already known file again.
GET    /v1/queue
    Waiting / active / completed / failed job counts.
GET    /v1/stats
    Rolling scan outcome counters.

Error mapping
-------------
=========================  ======
UnknownTierError           404
FileTooLargeError          413
QuotaExceededError         429
QueueError / StoreError    503
=========================  ======
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, status
from starlette.requests import Request

from scandaemon.core.errors import (
    FileTooLargeError,
    JobNotFoundError,
    QueueError,
    QuotaExceededError,
    ScanDaemonError,
    StoreError,
    UnknownTierError,
)
from scandaemon.daemon import ScanDaemon
from scandaemon.schemas.scan import (
    CancelOut,
    FileHistoryOut,
    JobStatusOut,
    QueueStatusOut,
    RescanRequest,
    ScanResultOut,
    ScanSubmissionRequest,
    StatsOut,
    SubmissionReceiptOut,
)

router = APIRouter(prefix="/v1", tags=["scans"])

_ERROR_STATUS: tuple[tuple[type[ScanDaemonError], int], ...] = (
    (UnknownTierError, status.HTTP_404_NOT_FOUND),
    (FileTooLargeError, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (QuotaExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
    (QueueError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _daemon(request: Request) -> ScanDaemon:
    daemon = getattr(request.app.state, "daemon", None)
    if daemon is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scan daemon not running")
    return daemon


def _http_error(exc: ScanDaemonError) -> HTTPException:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


async def _submit(daemon: ScanDaemon, file_id: str, body: RescanRequest) -> dict[str, Any]:
    try:
        receipt = await daemon.submit(
            file_id=file_id,
            file_path=body.file_path,
            file_name=body.file_name,
            file_size_bytes=body.file_size_bytes,
            file_hash=body.file_hash,
            tier=body.tier,
            caller_id=body.caller_id,
            priority=body.priority,
            metadata=body.metadata,
        )
    except ScanDaemonError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return receipt.to_dict()


@router.post(
    "/scans",
    response_model=SubmissionReceiptOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a file for scanning",
)
async def submit_scan(body: ScanSubmissionRequest, request: Request) -> dict[str, Any]:
    return await _submit(_daemon(request), body.file_id, body)


@router.get(
    "/scans/{job_id}",
    response_model=ScanResultOut | JobStatusOut,
    summary="Get a scan verdict or the job's current status",
)
async def get_scan(job_id: str, request: Request) -> dict[str, Any]:
    daemon = _daemon(request)
    try:
        result = await daemon.get_result(job_id)
        if result is not None:
            return result.to_dict()
        record = await daemon.get_job_status(job_id)
    except ScanDaemonError as exc:
        raise _http_error(exc) from exc
    if record is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Scan job not found: {job_id}")
    return {
        "job_id": record.job_id,
        "file_id": record.file_id,
        "status": record.status.value,
        "updated_at": record.updated_at,
        "error": record.error,
    }


@router.delete(
    "/scans/{job_id}",
    response_model=CancelOut,
    summary="Cancel a queued scan job",
)
async def cancel_scan(job_id: str, request: Request) -> dict[str, Any]:
    try:
        cancelled = await _daemon(request).cancel(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ScanDaemonError as exc:
        raise _http_error(exc) from exc
    if not cancelled:
        raise HTTPException(
            status.HTTP_409_CONFLICT,
            detail="Scan job is already scanning or finished and cannot be cancelled",
        )
    return {"job_id": job_id, "status": "cancelled"}


@router.get(
    "/files/{file_id}/scans",
    response_model=FileHistoryOut,
    summary="List verdicts for a file, most recent first",
)
async def file_history(file_id: str, request: Request) -> dict[str, Any]:
    try:
        results = await _daemon(request).get_file_history(file_id)
    except ScanDaemonError as exc:
        raise _http_error(exc) from exc
    return {"file_id": file_id, "results": [r.to_dict() for r in results]}


@router.post(
    "/files/{file_id}/rescan",
    response_model=SubmissionReceiptOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Scan a known file again",
)
async def rescan_file(file_id: str, body: RescanRequest, request: Request) -> dict[str, Any]:
    return await _submit(_daemon(request), file_id, body)


@router.get("/queue", response_model=QueueStatusOut, summary="Job queue counts")
async def queue_status(request: Request) -> dict[str, int]:
    try:
        snapshot = await _daemon(request).get_queue_status()
    except ScanDaemonError as exc:
        raise _http_error(exc) from exc
    return snapshot.to_dict()


@router.get("/stats", response_model=StatsOut, summary="Scan outcome counters")
async def scan_stats(request: Request) -> dict[str, int]:
    snapshot = await _daemon(request).get_stats()
    return snapshot.to_dict()
