"""Unit tests for the ClamAV clamd socket engine.

All tests are fully offline.  The ``clamd.ClamdNetworkSocket`` client is
replaced by :mod:`unittest.mock` patches so no live clamd daemon is required.

Coverage areas:

* ``parse_clamd_response`` — clamd response dict → :class:`AntivirusVerdict`,
  including the ``ERROR`` and unknown-code failure paths.
* ``ClamAVEngine.scan`` — path and ``INSTREAM`` modes, connection failures
  and empty replies.
* ``ClamAVEngine.ping`` — healthy, failing and unexpected replies.
"""

from __future__ import annotations

import socket
from pathlib import Path
from unittest.mock import MagicMock, patch

import clamd
import pytest

from scandaemon.engines.base import AntivirusEngineError, AntivirusVerdict
from scandaemon.engines.clamav import ClamAVEngine, parse_clamd_response

_SOCKET = "scandaemon.engines.clamav.clamd.ClamdNetworkSocket"


# ---------------------------------------------------------------------------
# parse_clamd_response
# ---------------------------------------------------------------------------


def test_parse_ok_response_is_clean() -> None:
    verdict = parse_clamd_response({"/tmp/file.pdf": ("OK", None)})
    assert verdict == AntivirusVerdict(infected=False, threats=())


def test_parse_found_response_collects_threats() -> None:
    verdict = parse_clamd_response({"/tmp/eicar.txt": ("FOUND", "Win.Test.EICAR_HDB-1")})
    assert verdict.infected is True
    assert verdict.threats == ("Win.Test.EICAR_HDB-1",)


def test_parse_found_without_name() -> None:
    verdict = parse_clamd_response({"stream": ("FOUND", None)})
    assert verdict.threats == ("unnamed threat",)


def test_parse_error_response_raises() -> None:
    with pytest.raises(AntivirusEngineError, match="could not scan"):
        parse_clamd_response({"/tmp/file.pdf": ("ERROR", "Permission denied")})


def test_parse_unknown_code_raises() -> None:
    with pytest.raises(AntivirusEngineError, match="unexpected clamd result"):
        parse_clamd_response({"/tmp/file.pdf": ("MAYBE", None)})


# ---------------------------------------------------------------------------
# ClamAVEngine.scan
# ---------------------------------------------------------------------------


class TestScan:
    async def test_scan_path_mode(self) -> None:
        client = MagicMock()
        client.scan.return_value = {"/srv/f": ("OK", None)}
        with patch(_SOCKET, return_value=client) as socket_cls:
            verdict = await ClamAVEngine(host="clamd", port=3310, timeout=5).scan("/srv/f")

        assert verdict.infected is False
        client.scan.assert_called_once_with("/srv/f")
        socket_cls.assert_called_once_with(host="clamd", port=3310, timeout=5)

    async def test_scan_stream_mode_sends_file_bytes(self, tmp_path: Path) -> None:
        target = tmp_path / "upload.bin"
        target.write_bytes(b"payload")
        client = MagicMock()
        client.instream.return_value = {"stream": ("FOUND", "Eicar-Test-Signature")}

        with patch(_SOCKET, return_value=client):
            verdict = await ClamAVEngine(stream=True).scan(str(target))

        assert verdict.threats == ("Eicar-Test-Signature",)
        client.instream.assert_called_once()
        client.scan.assert_not_called()

    async def test_connection_refused_raises_engine_error(self) -> None:
        client = MagicMock()
        client.scan.side_effect = clamd.ConnectionError("Connection refused")
        with patch(_SOCKET, return_value=client):
            with pytest.raises(AntivirusEngineError, match="clamd unavailable"):
                await ClamAVEngine().scan("/srv/f")

    async def test_socket_timeout_raises_engine_error(self) -> None:
        client = MagicMock()
        client.scan.side_effect = socket.timeout("timed out")
        with patch(_SOCKET, return_value=client):
            with pytest.raises(AntivirusEngineError):
                await ClamAVEngine().scan("/srv/f")

    async def test_empty_response_raises_engine_error(self) -> None:
        client = MagicMock()
        client.scan.return_value = None
        with patch(_SOCKET, return_value=client):
            with pytest.raises(AntivirusEngineError, match="empty response"):
                await ClamAVEngine().scan("/srv/f")


# ---------------------------------------------------------------------------
# ClamAVEngine.ping
# ---------------------------------------------------------------------------


class TestPing:
    async def test_pong_is_healthy(self) -> None:
        client = MagicMock()
        client.ping.return_value = "PONG"
        with patch(_SOCKET, return_value=client):
            assert await ClamAVEngine().ping() is True

    async def test_unexpected_reply_is_unhealthy(self) -> None:
        client = MagicMock()
        client.ping.return_value = "NOPE"
        with patch(_SOCKET, return_value=client):
            assert await ClamAVEngine().ping() is False

    async def test_connection_error_is_unhealthy(self) -> None:
        client = MagicMock()
        client.ping.side_effect = clamd.ConnectionError("refused")
        with patch(_SOCKET, return_value=client):
            assert await ClamAVEngine().ping() is False
