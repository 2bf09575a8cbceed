"""Structured JSON request logging middleware for the scan daemon API.

Every HTTP request produces one JSON log entry once the response is ready::

    {
      "event": "http_request",
      "correlation_id": "550e8400-e29b-41d4-a716-446655440000",
      "method": "DELETE",
      "path": "/v1/scans/7c1f...",
      "job_id": "7c1f...",
      "status_code": 409,
      "client": "10.0.0.7",
      "duration_ms": 4.2
    }

The correlation ID comes from ``X-Correlation-ID`` (or ``X-Request-ID``) and
is generated as a UUID v4 otherwise.  It is kept on
``request.state.correlation_id`` and returned in the ``X-Correlation-ID``
response header.  ``job_id`` / ``file_id`` are copied from the route's path
parameters when present so a job's requests can be grepped together.

Server errors are logged at ``WARNING``; health probes at ``DEBUG``.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_CORRELATION_HEADERS: tuple[str, ...] = ("x-correlation-id", "x-request-id")
_PATH_CONTEXT: tuple[str, ...] = ("job_id", "file_id")
_QUIET_PATHS = frozenset({"/healthz"})


def _level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.WARNING
    if path in _QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = self._extract_correlation_id(request)
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = round((time.monotonic() - start) * 1000, 2)

        path = request.url.path
        entry: dict[str, Any] = {
            "event": "http_request",
            "correlation_id": correlation_id,
            "method": request.method,
            "path": path,
        }
        # path_params is filled in by the router once the request was routed
        for name in _PATH_CONTEXT:
            value = request.path_params.get(name)
            if value is not None:
                entry[name] = value
        entry["status_code"] = response.status_code
        entry["client"] = request.client.host if request.client else None
        entry["duration_ms"] = elapsed_ms
        logger.log(_level(path, response.status_code), json.dumps(entry))

        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @staticmethod
    def _extract_correlation_id(request: Request) -> str:
        for header in _CORRELATION_HEADERS:
            value = request.headers.get(header, "").strip()
            if value:
                return value
        return str(uuid.uuid4())
