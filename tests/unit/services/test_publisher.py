"""
Unit tests for the Job Status Publisher.

Tests fan-out, filtering, per-subscriber throttling, ordering,
cancellation and the Redis pub/sub bridge.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from scanpipe.domain.jobs.events import (
    JobCompletedEvent,
    JobFailedEvent,
    JobProgressEvent,
    JobStartedEvent,
)
from scanpipe.services.events.publisher import JobStatusPublisher


def started(job_id="job-1", queue="wallet-scan", sequence=1):
    return JobStartedEvent(
        job_id=job_id, queue_name=queue, job_name="scan", sequence=sequence
    )


def progress(value, job_id="job-1", queue="wallet-scan", sequence=2):
    return JobProgressEvent(
        job_id=job_id,
        queue_name=queue,
        job_name="scan",
        sequence=sequence,
        progress=value,
    )


def completed(job_id="job-1", queue="wallet-scan", sequence=9):
    return JobCompletedEvent(
        job_id=job_id, queue_name=queue, job_name="scan", sequence=sequence, result={}
    )


def drain(subscription):
    events = []
    while True:
        event = subscription.get_nowait()
        if event is None:
            return events
        events.append(event)


class TestJobStatusPublisher:
    """Test JobStatusPublisher."""

    @pytest.fixture
    def publisher(self, clock):
        return JobStatusPublisher(default_update_frequency_ms=1000, clock=clock)

    @pytest.mark.asyncio
    async def test_fan_out(self, publisher):
        """Test every matching subscriber receives the event."""
        first = publisher.subscribe()
        second = publisher.subscribe()

        assert publisher.publish(started()) == 2
        assert (await first.get(timeout=1)).job_id == "job-1"
        assert (await second.get(timeout=1)).job_id == "job-1"

    @pytest.mark.asyncio
    async def test_topic_and_job_filters(self, publisher):
        """Test queue topics and job id filters."""
        quick_only = publisher.subscribe(topic="quick-scan")
        one_job = publisher.subscribe(job_ids=["job-2"])

        publisher.publish(started("job-1", "wallet-scan"))
        publisher.publish(started("job-2", "quick-scan"))

        assert [e.job_id for e in drain(quick_only)] == ["job-2"]
        assert [e.job_id for e in drain(one_job)] == ["job-2"]

    @pytest.mark.asyncio
    async def test_progress_throttled_per_subscriber(self, publisher, clock):
        """Test progress is rate limited by each subscriber's frequency."""
        slow = publisher.subscribe(update_frequency_ms=1000)
        fast = publisher.subscribe(update_frequency_ms=0)

        publisher.publish(progress(10, sequence=2))
        clock.advance(0.5)
        publisher.publish(progress(20, sequence=3))
        clock.advance(0.6)
        publisher.publish(progress(30, sequence=4))

        assert [e.progress for e in drain(slow)] == [10, 30]
        assert [e.progress for e in drain(fast)] == [10, 20, 30]
        assert slow.throttled == 1
        assert publisher.get_stats()["throttled"] == 1

    @pytest.mark.asyncio
    async def test_throttle_is_per_job(self, publisher):
        """Test progress for different jobs is throttled independently."""
        subscription = publisher.subscribe()

        publisher.publish(progress(10, job_id="job-1"))
        publisher.publish(progress(10, job_id="job-2"))

        assert len(drain(subscription)) == 2

    @pytest.mark.asyncio
    async def test_final_and_terminal_events_never_dropped(self, publisher):
        """Test 100% progress and terminal events bypass throttling."""
        subscription = publisher.subscribe(update_frequency_ms=60000)

        publisher.publish(progress(10, sequence=2))
        publisher.publish(progress(50, sequence=3))
        publisher.publish(progress(100, sequence=4))
        publisher.publish(completed(sequence=5))
        publisher.publish(
            JobFailedEvent(
                job_id="job-2",
                queue_name="wallet-scan",
                job_name="scan",
                sequence=2,
                error="boom",
            )
        )

        events = drain(subscription)
        assert [e.type for e in events] == [
            "job_progress",
            "job_progress",
            "job_completed",
            "job_failed",
        ]
        assert events[1].progress == 100

    @pytest.mark.asyncio
    async def test_events_delivered_in_publish_order(self, publisher):
        """Test causal order per job."""
        subscription = publisher.subscribe(update_frequency_ms=0)
        events = [started(), progress(50), completed()]
        for event in events:
            publisher.publish(event)

        assert [e.sequence for e in drain(subscription)] == [1, 2, 9]

    @pytest.mark.asyncio
    async def test_cancel(self, publisher):
        """Test cancelled subscriptions stop receiving and end iteration."""
        subscription = publisher.subscribe()
        publisher.publish(started())
        subscription.cancel()
        subscription.cancel()

        assert publisher.subscriber_count == 0
        assert publisher.publish(completed()) == 0
        assert subscription.pending == 1

        received = [event async for event in subscription]
        assert [e.type for e in received] == ["job_started"]
        assert await subscription.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_get_timeout(self, publisher):
        """Test get returns None when nothing arrives."""
        subscription = publisher.subscribe()
        assert await subscription.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_rejects_negative_frequency(self, publisher):
        """Test subscription validation."""
        with pytest.raises(ValueError):
            publisher.subscribe(update_frequency_ms=-1)

    @pytest.mark.asyncio
    async def test_redis_bridge(self, clock):
        """Test events are mirrored to per-job channels."""
        redis = AsyncMock()
        publisher = JobStatusPublisher(redis=redis, clock=clock)

        publisher.publish(started())
        await publisher.close()

        channel, payload = redis.publish.call_args.args
        assert channel == "jobs:wallet-scan:job-1"
        assert '"type":"job_started"' in payload

    @pytest.mark.asyncio
    async def test_redis_bridge_errors_are_contained(self, clock):
        """Test bridge failures do not affect local delivery."""
        redis = AsyncMock()
        redis.publish.side_effect = RedisConnectionError("down")
        publisher = JobStatusPublisher(redis=redis, clock=clock)
        subscription = publisher.subscribe()

        assert publisher.publish(started()) == 1
        await publisher.close()

        assert publisher.get_stats()["bridge_errors"] == 1
        assert drain(subscription)[0].type == "job_started"

    @pytest.mark.asyncio
    async def test_redis_bridge_preserves_order(self, clock):
        """Test a slow publish does not let later events overtake it."""
        mirrored = []

        async def slow_first(channel, payload):
            if not mirrored and '"job_started"' in payload:
                await asyncio.sleep(0.05)
            mirrored.append(json.loads(payload)["type"])

        redis = AsyncMock()
        redis.publish.side_effect = slow_first
        publisher = JobStatusPublisher(redis=redis, clock=clock)

        publisher.publish(started())
        publisher.publish(progress(100))
        publisher.publish(completed())
        assert publisher.get_stats()["bridge_pending"] >= 2
        await publisher.close()

        assert mirrored == ["job_started", "job_progress", "job_completed"]
        assert publisher.get_stats()["bridge_pending"] == 0
