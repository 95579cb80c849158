"""
Job Status Publisher

Fans job lifecycle events out to in-process subscriptions, throttling
progress updates per subscriber. Terminal events and the final progress
update are never dropped. Events can optionally be mirrored to Redis
pub/sub for consumers in other processes.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple
from uuid import uuid4

from opentelemetry import trace
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ...domain.jobs.events import JobEventBase, JobProgressEvent

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Topic matching events from every queue
ALL_JOBS_TOPIC = "jobs"

_CLOSED = object()


class Subscription:
    """
    Handle for one subscriber.

    Delivered events are buffered in FIFO order. Consume with ``get`` or
    ``async for``; call ``cancel`` to stop receiving events.
    """

    def __init__(
        self,
        publisher: "JobStatusPublisher",
        topic: str,
        job_ids: Optional[FrozenSet[str]],
        update_frequency_ms: int,
    ):
        self.id = uuid4().hex
        self.topic = topic
        self.job_ids = job_ids
        self.update_frequency_ms = update_frequency_ms
        self.delivered = 0
        self.throttled = 0
        self._publisher = publisher
        self._queue: asyncio.Queue = asyncio.Queue()
        self._last_progress_at: Dict[Tuple[str, str], float] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Buffered events not yet consumed."""
        return self._queue.qsize() - (1 if self._closed else 0)

    def matches(self, event: JobEventBase) -> bool:
        if self.topic != ALL_JOBS_TOPIC and self.topic != event.queue_name:
            return False
        return self.job_ids is None or event.job_id in self.job_ids

    def _offer(self, event: JobEventBase, now: float) -> bool:
        """Buffer an event unless it is a throttled progress update."""
        job_key = (event.queue_name, event.job_id)

        if isinstance(event, JobProgressEvent) and not event.is_final:
            last = self._last_progress_at.get(job_key)
            if last is not None and (now - last) * 1000 < self.update_frequency_ms:
                self.throttled += 1
                return False
            self._last_progress_at[job_key] = now
        elif event.is_terminal:
            self._last_progress_at.pop(job_key, None)

        self._queue.put_nowait(event)
        self.delivered += 1
        return True

    def cancel(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._publisher._remove(self)
        self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: Optional[float] = None) -> Optional[JobEventBase]:
        """
        Next buffered event.

        Returns:
            The event, or None on timeout or once the subscription is cancelled
            and drained
        """
        if self._closed and self._queue.qsize() <= 1:
            return None
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def get_nowait(self) -> Optional[JobEventBase]:
        """Next buffered event without waiting, or None."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> JobEventBase:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class JobStatusPublisher:
    """
    Event fan-out hub.

    ``publish`` is synchronous: the dispatcher calls it in transition order,
    and each subscription's FIFO buffer preserves that order per job.
    """

    def __init__(
        self,
        default_update_frequency_ms: int = 1000,
        redis: Optional[Redis] = None,
        channel_prefix: str = "jobs",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_update_frequency_ms = default_update_frequency_ms
        self._redis = redis
        self._channel_prefix = channel_prefix
        self._clock = clock
        self._subscriptions: Dict[str, Subscription] = {}
        self._bridge_queue: Optional[asyncio.Queue] = None
        self._bridge_task: Optional[asyncio.Task] = None
        self._stats = {
            "published": 0,
            "delivered": 0,
            "throttled": 0,
            "bridge_errors": 0,
        }

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        topic: str = ALL_JOBS_TOPIC,
        job_ids: Optional[Iterable[str]] = None,
        update_frequency_ms: Optional[int] = None,
    ) -> Subscription:
        """
        Register a subscriber.

        Args:
            topic: ``"jobs"`` for every queue, or a queue name
            job_ids: Restrict delivery to these job ids
            update_frequency_ms: Minimum interval between progress events per job

        Returns:
            Subscription handle with ``cancel()``
        """
        frequency = (
            self.default_update_frequency_ms
            if update_frequency_ms is None
            else update_frequency_ms
        )
        if frequency < 0:
            raise ValueError("update_frequency_ms cannot be negative")

        subscription = Subscription(
            publisher=self,
            topic=topic,
            job_ids=frozenset(job_ids) if job_ids is not None else None,
            update_frequency_ms=frequency,
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            f"Subscription {subscription.id} registered",
            extra={"topic": topic, "update_frequency_ms": frequency},
        )
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    def publish(self, event: JobEventBase) -> int:
        """
        Deliver an event to every matching subscription.

        Returns:
            Number of subscriptions that buffered the event
        """
        self._stats["published"] += 1
        now = self._clock()
        delivered = 0

        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            if subscription._offer(event, now):
                delivered += 1
            else:
                self._stats["throttled"] += 1

        self._stats["delivered"] += delivered

        if self._redis is not None:
            self._enqueue_bridge(event)

        return delivered

    def channel_for(self, event: JobEventBase) -> str:
        return f"{self._channel_prefix}:{event.queue_name}:{event.job_id}"

    def _enqueue_bridge(self, event: JobEventBase) -> None:
        # One drain task per publisher keeps Redis publishes in publish order
        if self._bridge_task is None:
            self._bridge_queue = asyncio.Queue()
            self._bridge_task = asyncio.get_running_loop().create_task(
                self._bridge_loop()
            )
        self._bridge_queue.put_nowait(event)

    async def _bridge_loop(self) -> None:
        while True:
            event = await self._bridge_queue.get()
            if event is _CLOSED:
                return
            await self._bridge(event)

    async def _bridge(self, event: JobEventBase) -> None:
        with tracer.start_as_current_span("job_status_publisher.bridge") as span:
            span.set_attribute("job_id", event.job_id)
            try:
                await self._redis.publish(self.channel_for(event), event.model_dump_json())
            except (RedisError, OSError) as e:
                self._stats["bridge_errors"] += 1
                logger.warning(f"Failed to mirror {event.type} for {event.job_id}: {e}")

    async def close(self) -> None:
        """Cancel every subscription and flush pending bridge publishes."""
        for subscription in list(self._subscriptions.values()):
            subscription.cancel()
        if self._bridge_task is not None:
            self._bridge_queue.put_nowait(_CLOSED)
            await self._bridge_task
            self._bridge_task = None
            self._bridge_queue = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "subscribers": self.subscriber_count,
            "bridge_pending": self._bridge_queue.qsize() if self._bridge_queue else 0,
        }
