"""VirusTotal reputation service (API v3 file reports).

Looks up a SHA-256 hash with ``GET {base_url}/files/{hash}`` and reads
``data.attributes.last_analysis_stats``:

* ``positives`` is the ``malicious`` count.
* ``total`` is the sum of every verdict count in the stats object.

A ``404`` means VirusTotal has never seen the file and maps to ``None``
(unknown, treated as clean by the reputation scanner).

Retry policy
------------
Rate limiting (``429``) and server errors are retried up to ``max_retries``
times with exponential back-off::

    delay = retry_base_delay * 2 ** attempt

Every failed request increments ``scandaemon_reputation_errors_total``.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from prometheus_client import Counter

from scandaemon.engines.base import ReputationReport, ReputationService, ReputationServiceError

logger = logging.getLogger(__name__)

#: Failed reputation lookups, by ``error_type`` ("http_error" | "network_error").
reputation_errors_total = Counter(
    "scandaemon_reputation_errors_total",
    "Total number of failed reputation lookups",
    ["error_type"],
)

_RETRYABLE_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504})

_GUI_URL = "https://www.virustotal.com/gui/file/{}"


def parse_file_report(file_hash: str, body: dict) -> ReputationReport:
    try:
        stats = body["data"]["attributes"]["last_analysis_stats"]
    except (KeyError, TypeError) as exc:
        raise ReputationServiceError("malformed VirusTotal file report") from exc
    return ReputationReport(
        positives=int(stats.get("malicious", 0)),
        total=sum(int(v) for v in stats.values()),
        permalink=_GUI_URL.format(file_hash),
    )


class VirusTotalReputationService(ReputationService):
    """Reputation lookups against the VirusTotal v3 REST API.

    Args:
        api_key: VirusTotal API key, sent as the ``x-apikey`` header.
        base_url: API root.  Defaults to the public v3 endpoint.
        timeout: Per-request timeout in seconds.
        max_retries: Additional attempts after a retryable failure.
        retry_base_delay: Base back-off delay in seconds.
        http_client: Optional shared :class:`httpx.AsyncClient`; one is
            created (and owned) when omitted.
    """

    name = "virustotal"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://www.virustotal.com/api/v3",
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"x-apikey": api_key, "accept": "application/json"}
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def lookup(self, file_hash: str) -> ReputationReport | None:
        url = f"{self._base_url}/files/{file_hash.lower()}"
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = await self._client.get(url, headers=self._headers)
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return parse_file_report(file_hash, response.json())
            except httpx.HTTPStatusError as exc:
                reputation_errors_total.labels(error_type="http_error").inc()
                status_code = exc.response.status_code
                if status_code not in _RETRYABLE_HTTP_STATUSES:
                    raise ReputationServiceError(
                        f"VirusTotal lookup failed with HTTP {status_code}"
                    ) from exc
                last_error = exc
            except httpx.RequestError as exc:
                reputation_errors_total.labels(error_type="network_error").inc()
                last_error = exc

            logger.warning(
                "VirusTotal lookup failed hash=%s attempt=%d/%d error=%s",
                file_hash,
                attempt + 1,
                self._max_retries + 1,
                last_error,
            )
            if attempt < self._max_retries:
                await asyncio.sleep(self._retry_base_delay * (2**attempt))

        raise ReputationServiceError(f"VirusTotal lookup failed: {last_error}")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
