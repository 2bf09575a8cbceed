"""Redis pub/sub relay for broadcaster events across daemon processes.

Workers emit events into their own process's
:class:`~scandaemon.core.broadcaster.NotificationBroadcaster`.  When the API
runs as ``serve --no-workers`` next to separate ``worker`` processes, its
websocket subscribers would otherwise never see ``scan_progress`` or
``scan_result``.  The relay closes that gap:

* :meth:`RedisEventRelay.forward` publishes every local event on one Redis
  channel, tagged with this process's ``source_node``.
* :meth:`RedisEventRelay.listen` subscribes to the channel and hands events
  from *other* nodes to a local deliver callback (normally
  :meth:`NotificationBroadcaster.publish`).

Delivery keeps the broadcaster's contract: best effort, at most once.  A
Redis failure is logged and the event is lost for remote subscribers only.

Message format::

    {"source_node": "3f2a...", "event": {"type": "scan_result", ...}}
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from scandaemon.core.broadcaster import Event

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "scandaemon:events"


class RedisEventRelay:
    """Shares broadcaster events between processes through Redis pub/sub.

    Args:
        redis_client: An async Redis client instance.
        channel: Pub/sub channel name.
        node_id: Identity of this process; events it published itself are
            not delivered back to it.
        reconnect_delay: Seconds to wait before resubscribing after a
            Redis error.
    """

    def __init__(
        self,
        redis_client: Redis,
        *,
        channel: str = DEFAULT_CHANNEL,
        node_id: str | None = None,
        reconnect_delay: float = 1.0,
    ) -> None:
        self._redis = redis_client
        self.channel = channel
        self.node_id = node_id or uuid.uuid4().hex
        self._reconnect_delay = reconnect_delay

    async def forward(self, event: Event) -> bool:
        """Publish *event* for other processes; ``False`` when Redis failed."""
        message = json.dumps({"source_node": self.node_id, "event": event})
        try:
            await self._redis.publish(self.channel, message)
        except RedisError as exc:
            logger.warning(
                "Event relay publish failed type=%s error=%r", event.get("type"), exc
            )
            return False
        return True

    def _decode(self, data: bytes | str) -> Event | None:
        try:
            message = json.loads(data)
        except ValueError:
            logger.warning("Ignoring malformed relay message channel=%s", self.channel)
            return None
        if not isinstance(message, dict) or not isinstance(message.get("event"), dict):
            logger.warning("Ignoring malformed relay message channel=%s", self.channel)
            return None
        if message.get("source_node") == self.node_id:
            return None
        return message["event"]

    async def listen(self, deliver: Callable[[Event], object]) -> None:
        """Deliver events published by other nodes until cancelled."""
        while True:
            pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(self.channel)
                logger.info("Event relay subscribed channel=%s node=%s", self.channel, self.node_id)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    event = self._decode(message["data"])
                    if event is not None:
                        deliver(event)
            except RedisError as exc:
                logger.warning(
                    "Event relay connection lost channel=%s error=%r; retrying in %.1fs",
                    self.channel,
                    exc,
                    self._reconnect_delay,
                )
            finally:
                await pubsub.aclose()
            await asyncio.sleep(self._reconnect_delay)
