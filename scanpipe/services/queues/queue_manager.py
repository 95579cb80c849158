"""
Queue Manager Service

Job registry for named queues. Provides synchronous submission with
deduplication, job lookup, terminal-job retention and queue statistics.
Execution is delegated to one dispatcher per queue.
"""

import itertools
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ...constants import (
    ANALYTICS_STEPS,
    ESTIMATED_DURATION_MS,
    REFRESH_STEPS,
    SCAN_STEPS,
    QueueName,
)
from ...core.config import Settings, get_settings
from ...core.exceptions import JobNotFound, QueueUnavailable, ValidationError
from ...domain.jobs.entities import Job, JobHandle, JobOptions, JobSnapshot, JobStatus
from ...domain.jobs.payloads import decode_payload
from ...domain.jobs.repository_interfaces import JobRepository
from ...domain.jobs.retry import RetryPolicy
from ...infrastructure.repositories.job_repository import InMemoryJobRepository
from ..events.publisher import JobStatusPublisher
from .workers import JobHandler, QueueConfig, QueueDispatcher

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Final snapshots kept per queue for jobs evicted by retention
EVICTED_SNAPSHOT_LIMIT = 100


# Queue catalog: retention, retries, steps and accepted payload kinds per queue
DEFAULT_QUEUE_CONFIGS: Dict[str, QueueConfig] = {
    QueueName.WALLET_SCAN.value: QueueConfig(
        concurrency=5,
        remove_on_complete=50,
        remove_on_fail=20,
        steps=SCAN_STEPS,
        estimated_duration_ms=ESTIMATED_DURATION_MS["scan"],
        accepted_kinds=frozenset({"wallet_scan"}),
        retry=RetryPolicy.exponential(attempts=3, delay_ms=2000),
    ),
    QueueName.QUICK_SCAN.value: QueueConfig(
        concurrency=5,
        remove_on_complete=20,
        remove_on_fail=10,
        steps=SCAN_STEPS,
        estimated_duration_ms=ESTIMATED_DURATION_MS["scan"],
        accepted_kinds=frozenset({"quick_scan"}),
    ),
    QueueName.BULK_SCAN.value: QueueConfig(
        concurrency=2,
        remove_on_complete=10,
        remove_on_fail=5,
        accepted_kinds=frozenset({"bulk_scan"}),
        retry=RetryPolicy.exponential(attempts=2, delay_ms=5000),
    ),
    QueueName.POSITION_REFRESH.value: QueueConfig(
        concurrency=5,
        remove_on_complete=20,
        remove_on_fail=10,
        steps=REFRESH_STEPS,
        estimated_duration_ms=ESTIMATED_DURATION_MS["refresh"],
        accepted_kinds=frozenset({"position_refresh"}),
        retry=RetryPolicy.fixed(attempts=2, delay_ms=5000),
    ),
    QueueName.PORTFOLIO_ANALYTICS.value: QueueConfig(
        concurrency=3,
        remove_on_complete=20,
        remove_on_fail=10,
        steps=ANALYTICS_STEPS,
        estimated_duration_ms=ESTIMATED_DURATION_MS["analytics"],
        accepted_kinds=frozenset({"portfolio_analytics"}),
        retry=RetryPolicy.exponential(attempts=2, delay_ms=5000),
    ),
}


class QueueManager:
    """
    Job registry and dispatcher owner.

    Canonical job state lives in the injected repository. All per-queue
    structures are independent; there is no registry-wide lock.
    """

    def __init__(
        self,
        repository: Optional[JobRepository] = None,
        publisher: Optional[JobStatusPublisher] = None,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository or InMemoryJobRepository()
        self.publisher = publisher
        self.settings = settings or get_settings()
        self._dispatchers: Dict[str, QueueDispatcher] = {}
        self._retained: Dict[str, Dict[JobStatus, "OrderedDict[str, None]"]] = {}
        self._evicted: Dict[str, "OrderedDict[str, JobSnapshot]"] = {}
        self._sequence = itertools.count(1)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_names(self) -> List[str]:
        return list(self._dispatchers)

    def default_config(self, queue_name: str) -> QueueConfig:
        """Catalog config for a queue, or settings-derived defaults."""
        if queue_name in DEFAULT_QUEUE_CONFIGS:
            return DEFAULT_QUEUE_CONFIGS[queue_name]
        return QueueConfig(
            concurrency=self.settings.QUEUE_DEFAULT_CONCURRENCY,
            remove_on_complete=self.settings.QUEUE_REMOVE_ON_COMPLETE,
            remove_on_fail=self.settings.QUEUE_REMOVE_ON_FAIL,
            retry=RetryPolicy.exponential(
                attempts=self.settings.QUEUE_DEFAULT_ATTEMPTS,
                delay_ms=self.settings.QUEUE_DEFAULT_BACKOFF_MS,
            ),
        )

    def register_queue(
        self,
        queue_name: str,
        handler: JobHandler,
        config: Optional[QueueConfig] = None,
    ) -> QueueDispatcher:
        """
        Declare a named queue and its worker function.

        Args:
            queue_name: Queue name
            handler: Coroutine ``handler(payload, context)`` executing jobs
            config: Queue defaults (catalog entry when omitted)

        Raises:
            ValidationError: If the name is empty or already registered, or
                the registry is already running
        """
        if self._running:
            raise ValidationError(
                "Queues must be registered before the registry starts",
                field="queue_name",
                value=queue_name,
            )
        if not queue_name or not queue_name.strip():
            raise ValidationError("Queue name cannot be empty", field="queue_name")
        if queue_name in self._dispatchers:
            raise ValidationError(
                f"Queue '{queue_name}' is already registered",
                field="queue_name",
                value=queue_name,
            )

        dispatcher = QueueDispatcher(
            queue_name=queue_name,
            handler=handler,
            config=config or self.default_config(queue_name),
            repository=self.repository,
            publisher=self.publisher,
            on_terminal=self._on_terminal,
            retry_delay_scale=self.settings.QUEUE_RETRY_DELAY_SCALE,
        )
        self._dispatchers[queue_name] = dispatcher
        self._retained[queue_name] = {
            JobStatus.COMPLETED: OrderedDict(),
            JobStatus.FAILED: OrderedDict(),
        }
        self._evicted[queue_name] = OrderedDict()
        logger.info(f"Registered queue {queue_name}")
        return dispatcher

    async def start(self) -> None:
        """Start every registered dispatcher."""
        if self._running:
            return
        for dispatcher in self._dispatchers.values():
            await dispatcher.start()
        self._running = True
        logger.info(
            "Queue manager started", extra={"queues": list(self._dispatchers)}
        )

    async def stop(self, graceful_timeout: Optional[float] = None) -> None:
        """Stop accepting jobs and stop every dispatcher."""
        if not self._running:
            return
        self._running = False
        timeout = (
            self.settings.QUEUE_SHUTDOWN_TIMEOUT
            if graceful_timeout is None
            else graceful_timeout
        )
        for dispatcher in self._dispatchers.values():
            await dispatcher.stop(graceful_timeout=timeout)
        logger.info("Queue manager stopped")

    def _validate_options(self, options: JobOptions) -> None:
        if not isinstance(options.priority, int) or isinstance(options.priority, bool):
            raise ValidationError(
                "priority must be an integer", field="priority", value=options.priority
            )
        if options.delay_ms < 0:
            raise ValidationError(
                "delay_ms cannot be negative", field="delay_ms", value=options.delay_ms
            )
        for name in ("remove_on_complete", "remove_on_fail"):
            value = getattr(options, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative", field=name, value=value)
        if options.job_id is not None:
            if not options.job_id or any(char.isspace() for char in options.job_id):
                raise ValidationError(
                    "job_id must be a non-empty string without whitespace",
                    field="job_id",
                    value=options.job_id,
                )

    def add_job(
        self,
        queue_name: str,
        job_name: str,
        payload: Any,
        options: Optional[JobOptions] = None,
    ) -> JobHandle:
        """
        Submit a job.

        Completes without awaiting execution. If ``options.job_id`` names a
        queued or running job in the same queue, that job is returned with
        ``deduplicated=True`` and nothing new is created.

        Args:
            queue_name: Registered queue name
            job_name: Job type name recorded on the job and its events
            payload: Payload model or mapping with a ``kind`` discriminator
            options: Priority, dedup id, delay and retention overrides

        Returns:
            Handle of the new or existing job

        Raises:
            QueueUnavailable: If the registry is not running
            ValidationError: If arguments are malformed
        """
        options = options or JobOptions()

        with tracer.start_as_current_span("queue_manager.add_job") as span:
            span.set_attribute("queue_name", queue_name)
            span.set_attribute("job_name", job_name)

            try:
                if not self._running:
                    raise QueueUnavailable(queue_name=queue_name)

                dispatcher = self._dispatchers.get(queue_name)
                if dispatcher is None:
                    raise ValidationError(
                        f"Unknown queue '{queue_name}'",
                        field="queue_name",
                        value=queue_name,
                    )
                if not job_name or not job_name.strip():
                    raise ValidationError("job_name cannot be empty", field="job_name")
                self._validate_options(options)

                decoded = decode_payload(payload, dispatcher.config.accepted_kinds)
            except (QueueUnavailable, ValidationError) as e:
                span.set_status(Status(StatusCode.ERROR, e.message))
                raise

            if options.job_id is not None:
                existing = self.repository.get(queue_name, options.job_id)
                if existing is not None and existing.status.is_active:
                    span.set_attribute("deduplicated", True)
                    logger.debug(
                        f"Deduplicated job {options.job_id} in queue {queue_name}"
                    )
                    return JobHandle(
                        id=existing.id, queue_name=queue_name, deduplicated=True
                    )
                if existing is not None:
                    self._forget(existing)

            sequence = next(self._sequence)
            job = Job(
                id=options.job_id or f"{queue_name}-{sequence}",
                queue_name=queue_name,
                name=job_name,
                payload=decoded,
                priority=options.priority,
                sequence=sequence,
                options=options,
                available_at=time.monotonic() + options.delay_ms / 1000,
            )
            self._evicted[queue_name].pop(job.id, None)
            self.repository.add(job)
            dispatcher.enqueue(job)

            span.set_attribute("job_id", job.id)
            logger.info(
                f"Job {job.id} queued in {queue_name}",
                extra={"priority": job.priority, "delay_ms": options.delay_ms},
            )
            return JobHandle(id=job.id, queue_name=queue_name)

    def get_job(self, queue_name: str, job_id: str) -> Optional[JobSnapshot]:
        """Snapshot of a job, or None if unknown or evicted."""
        job = self.repository.get(queue_name, job_id)
        return job.snapshot() if job is not None else None

    def require_job(self, queue_name: str, job_id: str) -> JobSnapshot:
        """
        Snapshot of a job.

        Raises:
            JobNotFound: If the job is unknown or was evicted
        """
        snapshot = self.get_job(queue_name, job_id)
        if snapshot is None:
            raise JobNotFound(queue_name, job_id)
        return snapshot

    def get_evicted_job(self, queue_name: str, job_id: str) -> Optional[JobSnapshot]:
        """
        Final snapshot of a job removed by retention.

        Lookups through ``get_job`` honour retention; this lets a caller that
        was already waiting on the job still learn how it ended.
        """
        return self._evicted.get(queue_name, {}).get(job_id)

    def _remember_evicted(self, queue_name: str, job_id: str) -> None:
        job = self.repository.get(queue_name, job_id)
        if job is None:
            return
        evicted = self._evicted[queue_name]
        evicted[job_id] = job.snapshot()
        evicted.move_to_end(job_id)
        while len(evicted) > EVICTED_SNAPSHOT_LIMIT:
            evicted.popitem(last=False)

    def _forget(self, job: Job) -> None:
        self.repository.remove(job.queue_name, job.id)
        for retained in self._retained.get(job.queue_name, {}).values():
            retained.pop(job.id, None)

    def _on_terminal(self, job: Job) -> None:
        """Apply retention after a job reached a terminal state."""
        dispatcher = self._dispatchers[job.queue_name]
        if job.status == JobStatus.COMPLETED:
            limit = job.options.remove_on_complete
            default = dispatcher.config.remove_on_complete
        else:
            limit = job.options.remove_on_fail
            default = dispatcher.config.remove_on_fail
        limit = default if limit is None else limit

        retained = self._retained[job.queue_name][job.status]
        retained[job.id] = None
        while len(retained) > limit:
            evicted_id, _ = retained.popitem(last=False)
            self._remember_evicted(job.queue_name, evicted_id)
            self.repository.remove(job.queue_name, evicted_id)
            logger.debug(f"Evicted {job.status.value} job {evicted_id} from {job.queue_name}")

    def get_queue_stats(self, queue_name: str) -> Dict[str, Any]:
        """
        Job counts and dispatcher statistics for one queue.

        Raises:
            ValidationError: If the queue is unknown
        """
        dispatcher = self._dispatchers.get(queue_name)
        if dispatcher is None:
            raise ValidationError(
                f"Unknown queue '{queue_name}'", field="queue_name", value=queue_name
            )

        counts = {status.value: 0 for status in JobStatus}
        delayed = 0
        now = time.monotonic()
        for job in self.repository.list_jobs(queue_name):
            counts[job.status.value] += 1
            if job.status == JobStatus.QUEUED and job.available_at > now:
                delayed += 1

        return {
            "queue_name": queue_name,
            "counts": {**counts, "delayed": delayed},
            "dispatcher": dispatcher.get_stats(),
        }

    def get_all_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.get_queue_stats(name) for name in self._dispatchers}
