"""Unit tests for the notification broadcaster."""

from __future__ import annotations

import asyncio
import contextlib

import pytest

from scandaemon.core.broadcaster import (
    NotificationBroadcaster,
    progress_event,
    result_event,
    stats_event,
)
from scandaemon.core.aggregator import aggregate
from scandaemon.core.models import StatsSnapshot


async def _stats() -> StatsSnapshot:
    return StatsSnapshot(total_scans=7, clean_files=7, average_scan_time_ms=30)


@pytest.fixture
def broadcaster() -> NotificationBroadcaster:
    return NotificationBroadcaster(_stats, subscriber_queue_size=3)


class TestSubscribe:
    async def test_first_event_is_stats_snapshot(self, broadcaster) -> None:
        async with broadcaster.subscribe() as subscription:
            first = await subscription.get()

        assert first == {"type": "stats", "data": (await _stats()).to_dict()}

    async def test_subscriber_removed_on_exit(self, broadcaster) -> None:
        async with broadcaster.subscribe():
            assert broadcaster.subscriber_count == 1
        assert broadcaster.subscriber_count == 0

    async def test_publish_reaches_every_subscriber(self, broadcaster) -> None:
        async with broadcaster.subscribe() as a, broadcaster.subscribe() as b:
            delivered = broadcaster.publish({"type": "scan_progress", "percent": 50})

            assert delivered == 2
            for subscription in (a, b):
                await subscription.get()  # stats
                assert (await subscription.get())["percent"] == 50


class TestSlowSubscriber:
    async def test_overflow_drops_events_for_that_subscriber_only(self, broadcaster) -> None:
        async with broadcaster.subscribe() as slow, broadcaster.subscribe() as fast:
            for percent in (10, 20, 30):
                broadcaster.publish({"type": "scan_progress", "percent": percent})
                if percent != 30:
                    await fast.get()

            # slow: stats + 2 events fill its buffer of 3, the third is dropped
            assert slow.dropped == 1
            assert fast.dropped == 0

    async def test_publish_never_blocks(self, broadcaster) -> None:
        async with broadcaster.subscribe():
            for i in range(100):
                broadcaster.publish({"type": "scan_progress", "percent": i})


class TestChannel:
    async def test_run_pumps_channel_to_subscribers(self, broadcaster) -> None:
        channel = broadcaster.channel()
        pump = asyncio.create_task(broadcaster.run())
        try:
            async with broadcaster.subscribe() as subscription:
                await subscription.get()
                channel.send({"type": "scan_progress", "percent": 100})
                event = await asyncio.wait_for(subscription.get(), timeout=1)
        finally:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

        assert event["percent"] == 100

    async def test_drain_publishes_pending_events(self, broadcaster) -> None:
        async with broadcaster.subscribe() as subscription:
            broadcaster.channel().send({"type": "scan_progress", "percent": 1})
            await broadcaster.drain()

            await subscription.get()
            assert (await subscription.get())["percent"] == 1


def test_event_shapes(make_job) -> None:
    job = make_job()
    result = aggregate(job, {}, 0)

    assert progress_event(job, 40) == {
        "type": "scan_progress",
        "job_id": job.id,
        "file_id": job.file_id,
        "percent": 40,
    }
    event = result_event(job, result)
    assert event["type"] == "scan_result"
    assert event["file_name"] == job.file_name
    assert event["result"]["status"] == "error"
    assert stats_event(StatsSnapshot())["data"]["total_scans"] == 0
