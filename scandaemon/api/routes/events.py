"""Websocket event stream.

``WS /v1/events`` forwards every broadcaster event to the client, starting
with a ``stats`` snapshot.  The client may also send requests:

* ``{"type": "get_stats"}`` → ``{"type": "stats", "data": {...}}``
* ``{"type": "get_queue_status"}`` → ``{"type": "queue_status", "data": {...}}``

Anything else is answered with ``{"type": "error", "detail": ...}``.

When the API runs with ``--no-workers`` the scans happen in other processes;
their progress and result events arrive through the Redis event relay
(``EVENT_RELAY_CHANNEL``).  Without Redis, or with the relay disabled, only
events produced in this process are streamed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from scandaemon.core.broadcaster import Subscription, stats_event
from scandaemon.core.errors import QueueError
from scandaemon.daemon import ScanDaemon

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event)


async def answer(daemon: ScanDaemon, raw: str) -> dict[str, Any]:
    """Build the reply to one client message."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        return {"type": "error", "detail": "message must be a JSON object"}
    kind = message.get("type") if isinstance(message, dict) else None

    if kind == "get_stats":
        return stats_event(await daemon.get_stats())
    if kind == "get_queue_status":
        try:
            queue_status = await daemon.get_queue_status()
        except QueueError as exc:
            return {"type": "error", "detail": str(exc)}
        return {"type": "queue_status", "data": queue_status.to_dict()}
    return {"type": "error", "detail": f"unknown message type: {kind!r}"}


@router.websocket("/v1/events")
async def event_stream(websocket: WebSocket) -> None:
    daemon: ScanDaemon | None = getattr(websocket.app.state, "daemon", None)
    if daemon is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    async with daemon.subscribe() as subscription:
        forwarder = asyncio.create_task(_forward(websocket, subscription))
        try:
            while True:
                raw = await websocket.receive_text()
                await websocket.send_json(await answer(daemon, raw))
        except WebSocketDisconnect:
            logger.debug("Event stream client disconnected")
        finally:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await forwarder
