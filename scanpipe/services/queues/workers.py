"""
Queue Workers

Per-queue dispatcher running a bounded pool of asyncio workers.
Picks jobs by priority (FIFO among equal priorities), executes the queue's
worker function and publishes lifecycle events in transition order.
"""

import asyncio
import heapq
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ...constants import get_current_timestamp
from ...core.exceptions import JobExecutionFailed
from ...domain.jobs.entities import Job, JobStatus
from ...domain.jobs.events import (
    JobCompletedEvent,
    JobEventBase,
    JobFailedEvent,
    JobProgressEvent,
    JobStartedEvent,
)
from ...domain.jobs.repository_interfaces import JobRepository
from ...domain.jobs.retry import RetryPolicy
from ..events.publisher import JobStatusPublisher

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobHandler = Callable[[Any, "JobContext"], Awaitable[Any]]


@dataclass(frozen=True)
class QueueConfig:
    """
    Named queue defaults.

    ``remove_on_complete`` / ``remove_on_fail`` bound how many terminal jobs
    stay queryable and ``retry`` sets how often a failing worker function is
    re-invoked; per-job options override them.
    """

    concurrency: int = 5
    remove_on_complete: int = 50
    remove_on_fail: int = 20
    steps: Tuple[str, ...] = ()
    estimated_duration_ms: Optional[int] = None
    accepted_kinds: Optional[FrozenSet[str]] = None
    job_timeout_seconds: Optional[float] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.remove_on_complete < 0 or self.remove_on_fail < 0:
            raise ValueError("retention limits cannot be negative")
        if self.job_timeout_seconds is not None and self.job_timeout_seconds <= 0:
            raise ValueError("job_timeout_seconds must be positive")


class JobContext:
    """Handle given to worker functions for reporting progress."""

    def __init__(self, job: Job, dispatcher: "QueueDispatcher"):
        self._job = job
        self._dispatcher = dispatcher

    @property
    def job_id(self) -> str:
        return self._job.id

    @property
    def queue_name(self) -> str:
        return self._job.queue_name

    @property
    def job_name(self) -> str:
        return self._job.name

    @property
    def steps(self) -> List[str]:
        return list(self._job.steps)

    @property
    def progress(self) -> int:
        return self._job.progress

    async def report_progress(
        self,
        progress: float,
        current_step: Optional[str] = None,
        completed_steps: Optional[Sequence[str]] = None,
        remaining_steps: Optional[Sequence[str]] = None,
        estimated_time_remaining_ms: Optional[int] = None,
    ) -> int:
        """
        Record progress and publish a ``job_progress`` event.

        Progress is clamped to 0-100 and never goes backwards.

        Returns:
            Effective progress
        """
        return self._dispatcher.report_progress(
            self._job,
            progress,
            current_step=current_step,
            completed_steps=completed_steps,
            remaining_steps=remaining_steps,
            estimated_time_remaining_ms=estimated_time_remaining_ms,
        )

    async def advance_to(self, step: str) -> int:
        """Mark ``step`` as current, deriving progress from its position."""
        steps = self._job.steps
        if step in steps:
            progress = steps.index(step) * 100 / len(steps)
        else:
            progress = self._job.progress
        return await self.report_progress(progress, current_step=step)


class QueueDispatcher:
    """
    Dispatcher for one named queue.

    ``concurrency`` worker tasks share a priority heap. ``enqueue`` never
    suspends; workers are woken through an event.
    """

    def __init__(
        self,
        queue_name: str,
        handler: JobHandler,
        config: QueueConfig,
        repository: JobRepository,
        publisher: Optional[JobStatusPublisher] = None,
        on_terminal: Optional[Callable[[Job], None]] = None,
        retry_delay_scale: float = 1.0,
    ):
        self.queue_name = queue_name
        self.handler = handler
        self.config = config
        self._repository = repository
        self._publisher = publisher
        self._on_terminal = on_terminal
        self.retry_delay_scale = retry_delay_scale

        self._ready: List[Tuple[int, int, str]] = []
        self._delayed: List[Tuple[float, int, str]] = []
        self._wakeup = asyncio.Event()
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._current_jobs: Set[str] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stats = {
            "jobs_processed": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_retried": 0,
            "start_time": None,
            "last_activity": None,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        return len(self._current_jobs)

    def enqueue(self, job: Job) -> None:
        """Make a queued job eligible for dispatch."""
        if job.available_at > time.monotonic():
            heapq.heappush(self._delayed, (job.available_at, job.sequence, job.id))
        else:
            heapq.heappush(self._ready, (-job.priority, job.sequence, job.id))
        self._wakeup.set()

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            return

        self._running = True
        self._stats["start_time"] = get_current_timestamp()
        self._workers = [
            asyncio.create_task(
                self._worker_loop(index), name=f"{self.queue_name}-worker-{index}"
            )
            for index in range(self.config.concurrency)
        ]
        logger.info(
            f"Started dispatcher for queue {self.queue_name}",
            extra={"concurrency": self.config.concurrency},
        )

    async def stop(self, graceful_timeout: float = 30.0) -> None:
        """
        Stop the worker pool.

        Running jobs get ``graceful_timeout`` seconds to finish; jobs still
        running afterwards are cancelled and recorded as failed.
        """
        if not self._running:
            return

        logger.info(f"Stopping dispatcher for queue {self.queue_name}")
        self._running = False
        self._wakeup.set()

        if self._current_jobs:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=graceful_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Dispatcher {self.queue_name} shutdown timeout, "
                    f"{len(self._current_jobs)} jobs still running"
                )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    def _promote_delayed(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, sequence, job_id = heapq.heappop(self._delayed)
            job = self._repository.get(self.queue_name, job_id)
            if job is not None and job.status == JobStatus.QUEUED:
                heapq.heappush(self._ready, (-job.priority, sequence, job_id))

    def _next_ready_job(self) -> Optional[Job]:
        self._promote_delayed(time.monotonic())
        while self._ready:
            _, sequence, job_id = heapq.heappop(self._ready)
            job = self._repository.get(self.queue_name, job_id)
            # Entries for replaced or already claimed jobs are skipped
            if (
                job is not None
                and job.sequence == sequence
                and job.status == JobStatus.QUEUED
            ):
                return job
        return None

    def _seconds_until_next_delayed(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - time.monotonic())

    async def _worker_loop(self, index: int) -> None:
        while self._running:
            job = self._next_ready_job()
            if job is None:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(
                        self._wakeup.wait(), timeout=self._seconds_until_next_delayed()
                    )
                except asyncio.TimeoutError:
                    pass
                continue

            await self._process_job(job, index)

    async def _process_job(self, job: Job, worker_index: int) -> None:
        self._current_jobs.add(job.id)
        self._idle.clear()
        self._stats["last_activity"] = get_current_timestamp()

        try:
            with tracer.start_as_current_span("queue_dispatcher.process_job") as span:
                span.set_attribute("queue_name", self.queue_name)
                span.set_attribute("job_id", job.id)
                span.set_attribute("job_name", job.name)
                span.set_attribute("worker_index", worker_index)
                await self._execute_job(job, span)
        finally:
            self._current_jobs.discard(job.id)
            self._stats["jobs_processed"] += 1
            if not self._current_jobs:
                self._idle.set()
            if job.is_terminal and self._on_terminal is not None:
                self._on_terminal(job)

    async def _execute_job(self, job: Job, span) -> None:
        job.start(self.config.steps)
        self._publish(
            JobStartedEvent(
                job_id=job.id,
                queue_name=job.queue_name,
                job_name=job.name,
                sequence=job.next_event_sequence(),
                steps=list(job.steps),
                estimated_duration_ms=self.config.estimated_duration_ms,
            )
        )

        context = JobContext(job, self)
        policy = job.options.retry or self.config.retry
        try:
            result = await self._run_attempts(job, context, policy, span)
        except asyncio.CancelledError:
            self._fail(
                job,
                JobExecutionFailed(
                    job.id,
                    self.queue_name,
                    RuntimeError("dispatcher stopped before job finished"),
                    retryable=True,
                ),
            )
            raise
        except JobExecutionFailed as failure:
            logger.error(
                f"Job {job.id} failed in queue {self.queue_name} "
                f"after {job.attempts_made} attempt(s): {failure.message}",
                extra={"job_name": job.name},
            )
            self._fail(job, failure)
            span.set_status(Status(StatusCode.ERROR, failure.message))
        else:
            self._complete(job, result)

    async def _run_attempts(
        self, job: Job, context: JobContext, policy: RetryPolicy, span
    ) -> Any:
        """
        Invoke the worker function until it succeeds or attempts run out.

        The job stays running between attempts, so its status never moves
        backwards and progress keeps its high-water mark.

        Raises:
            JobExecutionFailed: After the last failed attempt
        """
        while True:
            job.attempts_made += 1
            try:
                return await self._invoke(job, context)
            except Exception as e:
                failure = self._wrap_failure(job, e)
                if not (self._running and policy.should_retry(job.attempts_made)):
                    raise failure
                delay_ms = policy.delay_for(job.attempts_made) * self.retry_delay_scale

            self._stats["jobs_retried"] += 1
            span.add_event("retry", {"attempt": job.attempts_made, "delay_ms": delay_ms})
            logger.warning(
                f"Job {job.id} attempt {job.attempts_made}/{policy.attempts} failed "
                f"in queue {self.queue_name}, retrying in {delay_ms:.0f}ms: "
                f"{failure.message}",
                extra={"job_name": job.name},
            )
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)

    async def _invoke(self, job: Job, context: JobContext) -> Any:
        if self.config.job_timeout_seconds is None:
            return await self.handler(job.payload, context)
        return await asyncio.wait_for(
            self.handler(job.payload, context),
            timeout=self.config.job_timeout_seconds,
        )

    def _wrap_failure(self, job: Job, error: Exception) -> JobExecutionFailed:
        if isinstance(error, asyncio.TimeoutError) and self.config.job_timeout_seconds:
            timeout = TimeoutError(
                f"Job timed out after {self.config.job_timeout_seconds}s"
            )
            return JobExecutionFailed(job.id, self.queue_name, timeout, retryable=True)
        return JobExecutionFailed(job.id, self.queue_name, error)

    def report_progress(
        self,
        job: Job,
        progress: float,
        current_step: Optional[str] = None,
        completed_steps: Optional[Sequence[str]] = None,
        remaining_steps: Optional[Sequence[str]] = None,
        estimated_time_remaining_ms: Optional[int] = None,
    ) -> int:
        """Apply a progress update to a running job and publish it."""
        if estimated_time_remaining_ms is None and self.config.estimated_duration_ms:
            estimated_time_remaining_ms = int(
                self.config.estimated_duration_ms * (100 - max(job.progress, progress)) / 100
            )
        effective = job.update_progress(
            progress,
            current_step=current_step,
            completed_steps=completed_steps,
            remaining_steps=remaining_steps,
            estimated_time_remaining_ms=estimated_time_remaining_ms,
        )
        self._publish(self._progress_event(job))
        return effective

    def _progress_event(self, job: Job) -> JobProgressEvent:
        return JobProgressEvent(
            job_id=job.id,
            queue_name=job.queue_name,
            job_name=job.name,
            sequence=job.next_event_sequence(),
            progress=job.progress,
            current_step=job.current_step,
            completed_steps=list(job.completed_steps),
            remaining_steps=list(job.remaining_steps),
            estimated_time_remaining_ms=job.estimated_time_remaining_ms,
        )

    def _complete(self, job: Job, result: Any) -> None:
        if job.progress < 100:
            job.update_progress(
                100,
                completed_steps=job.steps,
                remaining_steps=[],
                estimated_time_remaining_ms=0,
            )
            self._publish(self._progress_event(job))

        job.complete(result)
        self._stats["jobs_completed"] += 1
        self._publish(
            JobCompletedEvent(
                job_id=job.id,
                queue_name=job.queue_name,
                job_name=job.name,
                sequence=job.next_event_sequence(),
                result=result,
                duration_ms=job.duration_ms,
                completed_at=job.completed_at,
            )
        )
        logger.debug(f"Job {job.id} completed in queue {self.queue_name}")

    def _fail(self, job: Job, failure: JobExecutionFailed) -> None:
        job.fail(failure.message)
        self._stats["jobs_failed"] += 1
        self._publish(
            JobFailedEvent(
                job_id=job.id,
                queue_name=job.queue_name,
                job_name=job.name,
                sequence=job.next_event_sequence(),
                error=failure.message,
                code=failure.error_code,
                retryable=failure.retryable,
                duration_ms=job.duration_ms,
                failed_at=job.completed_at,
                attempts=max(1, job.attempts_made),
            )
        )

    def _publish(self, event: JobEventBase) -> None:
        if self._publisher is not None:
            self._publisher.publish(event)

    def get_stats(self) -> Dict[str, Any]:
        """Dispatcher worker statistics."""
        processed = self._stats["jobs_processed"]
        return {
            "queue_name": self.queue_name,
            "running": self._running,
            "concurrency": self.config.concurrency,
            "active_jobs": self.active_count,
            "delayed_jobs": len(self._delayed),
            "jobs_processed": processed,
            "jobs_completed": self._stats["jobs_completed"],
            "jobs_failed": self._stats["jobs_failed"],
            "jobs_retried": self._stats["jobs_retried"],
            "success_rate": (
                self._stats["jobs_completed"] / processed if processed else 0.0
            ),
            "start_time": (
                self._stats["start_time"].isoformat()
                if self._stats["start_time"]
                else None
            ),
            "last_activity": (
                self._stats["last_activity"].isoformat()
                if self._stats["last_activity"]
                else None
            ),
        }
