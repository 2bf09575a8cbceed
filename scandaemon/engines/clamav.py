"""ClamAV clamd socket engine for the signature scanner.

Implements :class:`~scandaemon.engines.base.AntivirusEngine` by delegating
scans to a running ``clamd`` daemon over TCP.

Unlike a pass/fail gateway, this engine raises
:class:`~scandaemon.engines.base.AntivirusEngineError` on connection failures
and on clamd ``ERROR`` replies.  The signature scanner adapter turns that
exception into an ``error`` engine result, so an unreachable clamd never
reports a file as clean.

**Async compatibility:** the ``clamd`` library is synchronous.  All blocking
calls are dispatched to :func:`asyncio.to_thread` so the event loop is never
blocked during I/O with the clamd daemon.  Every clamd socket carries
``timeout``, so a silent daemon releases its thread instead of holding it.

Usage example::

    from scandaemon.engines.clamav import ClamAVEngine

    engine = ClamAVEngine(host="clamav", port=3310)
    verdict = await engine.scan("/srv/uploads/abc123.dcm")
    if verdict.infected:
        print(verdict.threats)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import clamd

from scandaemon.engines.base import AntivirusEngine, AntivirusEngineError, AntivirusVerdict

logger = logging.getLogger(__name__)


def parse_clamd_response(response: dict[str, tuple[str, str | None]]) -> AntivirusVerdict:
    """Convert a clamd scan response into an :class:`AntivirusVerdict`.

    The clamd library returns a dict mapping scanned paths (or ``"stream"``
    for ``instream``) to a ``(result_code, detail)`` tuple:

    * ``("OK", None)``        – file is clean.
    * ``("FOUND", name)``     – threat *name* was detected.
    * ``("ERROR", message)``  – the engine could not scan the item.

    Raises:
        AntivirusEngineError: On any ``ERROR`` entry or an unknown result code.
    """
    threats: list[str] = []
    for path, (result_code, detail) in response.items():
        if result_code == "FOUND":
            threats.append(detail or "unnamed threat")
        elif result_code == "ERROR":
            raise AntivirusEngineError(f"clamd could not scan {path}: {detail}")
        elif result_code != "OK":
            raise AntivirusEngineError(f"unexpected clamd result {result_code!r} for {path}")
    return AntivirusVerdict(infected=bool(threats), threats=tuple(threats))


class ClamAVEngine(AntivirusEngine):
    """Antivirus engine that communicates with a clamd daemon via TCP socket.

    Each scan opens a new TCP connection to clamd; the ``clamd`` library does
    not support concurrent requests on a single connection.

    Args:
        host: Hostname or IP address of the clamd daemon.
        port: TCP port on which clamd listens.  Defaults to ``3310``.
        timeout: Socket timeout in seconds for clamd connections.
        stream: Send the file content with ``INSTREAM`` instead of asking
            clamd to read the path itself.  Required when clamd does not
            share a filesystem with the daemon.
    """

    name = "clamav"

    def __init__(
        self,
        host: str = "clamav",
        port: int = 3310,
        timeout: float = 60.0,
        stream: bool = False,
    ) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout
        self._stream = stream

    async def scan(self, file_path: str) -> AntivirusVerdict:
        start = time.monotonic()
        scan_fn = self._sync_scan_stream if self._stream else self._sync_scan_path
        try:
            response = await asyncio.to_thread(scan_fn, file_path)
        except (clamd.ConnectionError, OSError) as exc:
            raise AntivirusEngineError(f"clamd unavailable: {exc}") from exc
        if not response:
            raise AntivirusEngineError("empty response from clamd")

        verdict = parse_clamd_response(response)
        logger.info(
            "ClamAV scan complete path=%s infected=%s threats=%d duration_ms=%d",
            file_path,
            verdict.infected,
            len(verdict.threats),
            int((time.monotonic() - start) * 1000),
        )
        return verdict

    async def ping(self) -> bool:
        """Return ``True`` if clamd answers ``PING`` with ``PONG``."""
        try:
            response: str = await asyncio.to_thread(self._sync_ping)
            return response == "PONG"
        except Exception as exc:
            logger.warning("ClamAV ping failed: %r", exc)
            return False

    # ------------------------------------------------------------------
    # Synchronous helpers (run inside asyncio.to_thread)
    # ------------------------------------------------------------------

    def _get_client(self) -> clamd.ClamdNetworkSocket:
        return clamd.ClamdNetworkSocket(
            host=self._host,
            port=self._port,
            timeout=self._timeout,
        )

    def _sync_scan_path(self, file_path: str) -> dict[str, tuple[str, Any]]:
        return self._get_client().scan(file_path)  # type: ignore[return-value]

    def _sync_scan_stream(self, file_path: str) -> dict[str, tuple[str, Any]]:
        with open(file_path, "rb") as fh:
            return self._get_client().instream(fh)  # type: ignore[return-value]

    def _sync_ping(self) -> str:
        return self._get_client().ping()  # type: ignore[return-value]
