"""Notification broadcaster: progress and result events to observers.

The orchestrator never touches subscriber state.  It only holds an
:class:`EventChannel`, a send-only handle onto an unbounded queue.  The
:class:`NotificationBroadcaster` owns that queue, pumps it in
:meth:`~NotificationBroadcaster.run`, and fans each event out to the
per-subscriber queues.

Delivery is best effort and at most once: each subscriber has a bounded
queue, and an event that does not fit is dropped for that subscriber only.
The result store, not this stream, is the system of record.

Events are process-local unless a ``forward`` hook is given; with Redis the
daemon wires in :class:`~scandaemon.core.event_relay.RedisEventRelay` so API
and worker processes see each other's events.

Event shapes::

    {"type": "scan_progress", "job_id": ..., "file_id": ..., "percent": 40}
    {"type": "scan_result", "job_id": ..., "file_id": ..., "file_name": ..., "result": {...}}
    {"type": "stats", "data": {...}}

Usage::

    broadcaster = NotificationBroadcaster(stats_provider=tracker.snapshot)
    task = asyncio.create_task(broadcaster.run())

    async with broadcaster.subscribe() as events:
        async for event in events:
            print(event["type"])
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from scandaemon.core.models import AggregatedResult, ScanJob, StatsSnapshot

logger = logging.getLogger(__name__)

Event = dict[str, Any]


def progress_event(job: ScanJob, percent: int) -> Event:
    return {
        "type": "scan_progress",
        "job_id": job.id,
        "file_id": job.file_id,
        "percent": percent,
    }


def result_event(job: ScanJob, result: AggregatedResult) -> Event:
    return {
        "type": "scan_result",
        "job_id": job.id,
        "file_id": job.file_id,
        "file_name": job.file_name,
        "result": result.to_dict(),
    }


def stats_event(snapshot: StatsSnapshot) -> Event:
    return {"type": "stats", "data": snapshot.to_dict()}


class EventChannel:
    """Send-only handle given to event producers."""

    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue

    def send(self, event: Event) -> None:
        self._queue.put_nowait(event)


class Subscription:
    """Async iterator over the events delivered to one subscriber."""

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: Event) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def get(self) -> Event:
        return await self._queue.get()

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        return await self._queue.get()


class NotificationBroadcaster:
    """Fans events from the orchestrator's channel out to subscribers.

    Args:
        stats_provider: Coroutine function returning the current
            :class:`StatsSnapshot`; sent to every new subscriber first.
        subscriber_queue_size: Capacity of each subscriber's buffer.
        forward: Optional coroutine function also given every event from the
            channel, e.g. :meth:`RedisEventRelay.forward`.
    """

    def __init__(
        self,
        stats_provider: Callable[[], Awaitable[StatsSnapshot]],
        subscriber_queue_size: int = 256,
        forward: Callable[[Event], Awaitable[object]] | None = None,
    ) -> None:
        self._stats_provider = stats_provider
        self._subscriber_queue_size = subscriber_queue_size
        self._forward = forward
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._subscribers: set[Subscription] = set()

    def channel(self) -> EventChannel:
        return EventChannel(self._inbox)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Event) -> int:
        """Deliver *event* to every subscriber now; returns the delivered count."""
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription.offer(event):
                delivered += 1
            else:
                logger.debug(
                    "Dropped event for slow subscriber type=%s dropped=%d",
                    event.get("type"),
                    subscription.dropped,
                )
        return delivered

    async def run(self) -> None:
        """Pump the channel until cancelled."""
        while True:
            await self._dispatch(await self._inbox.get())

    async def drain(self) -> None:
        """Publish everything currently waiting in the channel."""
        while not self._inbox.empty():
            await self._dispatch(self._inbox.get_nowait())

    async def _dispatch(self, event: Event) -> None:
        self.publish(event)
        if self._forward is not None:
            await self._forward(event)

    @contextlib.asynccontextmanager
    async def subscribe(self) -> AsyncIterator[Subscription]:
        """Register a subscriber whose first event is a stats snapshot."""
        subscription = Subscription(self._subscriber_queue_size)
        subscription.offer(stats_event(await self._stats_provider()))
        self._subscribers.add(subscription)
        logger.info("Subscriber added subscribers=%d", len(self._subscribers))
        try:
            yield subscription
        finally:
            self._subscribers.discard(subscription)
            logger.info("Subscriber removed subscribers=%d", len(self._subscribers))
