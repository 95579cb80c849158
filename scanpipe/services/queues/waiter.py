"""
Bounded Job Wait

Client-side helper polling a job at a fixed interval until it finishes or
a time budget runs out. On timeout the caller gets the job handle back and
keeps tracking the job asynchronously; the job itself is never re-dispatched.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ...core.exceptions import JobNotFound, WaitTimeout
from ...domain.jobs.entities import JobHandle, JobSnapshot, JobStatus
from .queue_manager import QueueManager

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_TIMEOUT_MS = 15000


@dataclass(frozen=True)
class WaitOutcome:
    """Result of a bounded wait."""

    handle: JobHandle
    finished: bool
    snapshot: Optional[JobSnapshot]
    waited_ms: int
    timeout_ms: int

    @property
    def succeeded(self) -> bool:
        return self.finished and self.snapshot.status == JobStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.finished and self.snapshot.status == JobStatus.FAILED

    @property
    def result(self) -> Optional[Any]:
        return self.snapshot.result if self.succeeded else None

    @property
    def error(self) -> Optional[str]:
        return self.snapshot.error if self.failed else None

    def raise_for_timeout(self) -> "WaitOutcome":
        """
        Raise if the budget ran out.

        Raises:
            WaitTimeout: If the job did not finish in time
        """
        if not self.finished:
            raise WaitTimeout(self.handle.queue_name, self.handle.id, self.timeout_ms)
        return self


async def wait_for_job(
    manager: QueueManager,
    handle: JobHandle,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> WaitOutcome:
    """
    Poll a job until it is terminal or ``timeout_ms`` elapses.

    Args:
        manager: Registry holding the job
        handle: Job to wait for
        poll_interval_ms: Delay between polls
        timeout_ms: Total wait budget

    Returns:
        Outcome with ``finished=False`` when the budget ran out

    Raises:
        JobNotFound: If the job is unknown and has no evicted final snapshot
        ValueError: If the interval or budget is not positive
    """
    if poll_interval_ms <= 0 or timeout_ms <= 0:
        raise ValueError("poll_interval_ms and timeout_ms must be positive")

    loop = asyncio.get_running_loop()
    started = loop.time()
    deadline = started + timeout_ms / 1000

    while True:
        snapshot = manager.get_job(handle.queue_name, handle.id)
        if snapshot is None:
            # Retention may remove a job in the same step that finished it
            snapshot = manager.get_evicted_job(handle.queue_name, handle.id)
        if snapshot is None:
            raise JobNotFound(handle.queue_name, handle.id)

        now = loop.time()
        waited_ms = int((now - started) * 1000)
        if snapshot.is_terminal:
            return WaitOutcome(handle, True, snapshot, waited_ms, timeout_ms)

        remaining = deadline - now
        if remaining <= 0:
            logger.info(
                f"Job {handle.id} still {snapshot.status.value} after {waited_ms}ms",
                extra={"queue_name": handle.queue_name},
            )
            return WaitOutcome(handle, False, snapshot, waited_ms, timeout_ms)

        await asyncio.sleep(min(poll_interval_ms / 1000, remaining))
