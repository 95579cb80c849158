"""
Job Status Tracker

Subscriber-side state machine projecting job events into per-job views,
active / completed / failed buckets, a bounded history and statistics.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from ...domain.jobs.entities import JobStatus
from ...domain.jobs.events import (
    JobCompletedEvent,
    JobEventBase,
    JobFailedEvent,
    JobProgressEvent,
    JobStartedEvent,
    parse_event,
)
from .publisher import Subscription

logger = logging.getLogger(__name__)

JobKey = Tuple[str, str]


class ClientJobView(BaseModel):
    """Subscriber-local projection of one job."""

    job_id: str
    queue_name: str
    job_name: str
    status: JobStatus
    progress: int = 0
    current_step: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    remaining_steps: List[str] = Field(default_factory=list)
    estimated_time_remaining_ms: Optional[int] = None
    estimated_duration_ms: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    retryable: bool = False
    attempts: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    last_sequence: int = 0

    @property
    def key(self) -> JobKey:
        return (self.queue_name, self.job_id)


@dataclass(frozen=True)
class JobStatistics:
    total: int
    active: int
    completed: int
    failed: int
    success_rate: float
    average_duration_ms: float


class JobStatusTracker:
    """
    Client job state machine.

    Progress for unknown jobs (a subscriber that joined late) and for jobs
    already terminal is ignored; events not newer than the last applied
    sequence for a job are discarded. Terminal views are dropped once they
    fall out of the bounded history, so memory stays proportional to the
    active jobs plus ``max_history_items``.
    """

    def __init__(self, max_history_items: int = 50):
        if max_history_items < 1:
            raise ValueError("max_history_items must be at least 1")
        self.max_history_items = max_history_items
        self._jobs: Dict[JobKey, ClientJobView] = {}
        self._history: List[ClientJobView] = []
        self.active_jobs: List[ClientJobView] = []
        self.completed_jobs: List[ClientJobView] = []
        self.failed_jobs: List[ClientJobView] = []

    def _recompute(self) -> None:
        views = list(self._jobs.values())
        self.active_jobs = [v for v in views if v.status.is_active]
        self.completed_jobs = [v for v in views if v.status == JobStatus.COMPLETED]
        self.failed_jobs = [v for v in views if v.status == JobStatus.FAILED]

    def _record_history(self, view: ClientJobView) -> None:
        self._history = [h for h in self._history if h.key != view.key]
        self._history.insert(0, view)
        evicted = self._history[self.max_history_items :]
        del self._history[self.max_history_items :]

        # Terminal views are only kept while they are in the history
        for old in evicted:
            tracked = self._jobs.get(old.key)
            if tracked is not None and tracked.status.is_terminal:
                del self._jobs[old.key]

    def apply(
        self, event: Union[JobEventBase, Dict[str, Any], str]
    ) -> Optional[ClientJobView]:
        """
        Apply one event.

        Args:
            event: Event model, mapping or JSON string

        Returns:
            Updated view, or None if the event was ignored
        """
        event = parse_event(event)
        key = (event.queue_name, event.job_id)
        current = self._jobs.get(key)

        # A job id reused after its previous run finished starts a new sequence
        restarted = isinstance(event, JobStartedEvent) and (
            current is not None and current.status.is_terminal
        )
        if (
            current is not None
            and not restarted
            and event.sequence <= current.last_sequence
        ):
            logger.debug(
                f"Ignoring stale event {event.type} #{event.sequence} for {event.job_id}"
            )
            return None

        if isinstance(event, JobStartedEvent):
            view = self._on_started(event)
        elif isinstance(event, JobProgressEvent):
            view = self._on_progress(current, event)
        elif isinstance(event, JobCompletedEvent):
            view = self._on_completed(current, event)
        elif isinstance(event, JobFailedEvent):
            view = self._on_failed(current, event)
        else:
            return None

        if view is None:
            return None

        self._jobs[key] = view
        if view.status.is_terminal:
            self._record_history(view)
        self._recompute()
        return view

    def _on_started(self, event: JobStartedEvent) -> ClientJobView:
        return ClientJobView(
            job_id=event.job_id,
            queue_name=event.queue_name,
            job_name=event.job_name,
            status=JobStatus.RUNNING,
            progress=0,
            completed_steps=[],
            remaining_steps=list(event.steps),
            current_step=event.steps[0] if event.steps else None,
            estimated_duration_ms=event.estimated_duration_ms,
            estimated_time_remaining_ms=event.estimated_duration_ms,
            started_at=event.timestamp,
            last_sequence=event.sequence,
        )

    def _on_progress(
        self, current: Optional[ClientJobView], event: JobProgressEvent
    ) -> Optional[ClientJobView]:
        if current is None or current.status.is_terminal:
            return None
        return current.model_copy(
            update={
                "progress": max(current.progress, event.progress),
                "current_step": event.current_step or current.current_step,
                "completed_steps": list(event.completed_steps),
                "remaining_steps": list(event.remaining_steps),
                "estimated_time_remaining_ms": event.estimated_time_remaining_ms,
                "last_sequence": event.sequence,
            }
        )

    def _base_view(
        self, current: Optional[ClientJobView], event: JobEventBase
    ) -> ClientJobView:
        if current is not None:
            return current
        return ClientJobView(
            job_id=event.job_id,
            queue_name=event.queue_name,
            job_name=event.job_name,
            status=JobStatus.RUNNING,
        )

    def _duration(
        self, view: ClientJobView, ended_at: datetime, reported: Optional[int]
    ) -> Optional[int]:
        if reported is not None:
            return reported
        if view.started_at is None:
            return None
        return int((ended_at - view.started_at).total_seconds() * 1000)

    def _on_completed(
        self, current: Optional[ClientJobView], event: JobCompletedEvent
    ) -> Optional[ClientJobView]:
        if current is not None and current.status.is_terminal:
            return None
        view = self._base_view(current, event)
        return view.model_copy(
            update={
                "status": JobStatus.COMPLETED,
                "progress": 100,
                "result": event.result,
                "current_step": None,
                "completed_steps": view.completed_steps + view.remaining_steps,
                "remaining_steps": [],
                "estimated_time_remaining_ms": 0,
                "completed_at": event.completed_at,
                "duration_ms": self._duration(
                    view, event.completed_at, event.duration_ms
                ),
                "last_sequence": event.sequence,
            }
        )

    def _on_failed(
        self, current: Optional[ClientJobView], event: JobFailedEvent
    ) -> Optional[ClientJobView]:
        if current is not None and current.status.is_terminal:
            return None
        view = self._base_view(current, event)
        return view.model_copy(
            update={
                "status": JobStatus.FAILED,
                "error": event.error,
                "retryable": event.retryable,
                "current_step": None,
                "estimated_time_remaining_ms": None,
                "attempts": event.attempts,
                "completed_at": event.failed_at,
                "duration_ms": self._duration(
                    view, event.failed_at, event.duration_ms
                ),
                "last_sequence": event.sequence,
            }
        )

    async def consume(self, subscription: Subscription) -> None:
        """Apply events from a subscription until it is cancelled."""
        async for event in subscription:
            self.apply(event)

    def get_job(self, queue_name: str, job_id: str) -> Optional[ClientJobView]:
        return self._jobs.get((queue_name, job_id))

    def get_jobs_by_type(self, job_name: str) -> List[ClientJobView]:
        return [view for view in self._jobs.values() if view.job_name == job_name]

    def get_history(self) -> List[ClientJobView]:
        """Terminal jobs, most recent first."""
        return list(self._history)

    def remove_job(self, queue_name: str, job_id: str) -> bool:
        removed = self._jobs.pop((queue_name, job_id), None) is not None
        if removed:
            self._recompute()
        return removed

    def _clear_status(self, status: JobStatus) -> int:
        keys = [key for key, view in self._jobs.items() if view.status == status]
        for key in keys:
            del self._jobs[key]
        self._recompute()
        return len(keys)

    def clear_completed_jobs(self) -> int:
        return self._clear_status(JobStatus.COMPLETED)

    def clear_failed_jobs(self) -> int:
        return self._clear_status(JobStatus.FAILED)

    def get_statistics(self) -> JobStatistics:
        """
        Aggregate statistics over tracked jobs.

        ``success_rate`` is completed / (completed + failed) and
        ``average_duration_ms`` averages completed jobs with a known duration;
        both are 0.0 when there is nothing to measure.
        """
        completed = len(self.completed_jobs)
        failed = len(self.failed_jobs)
        finished = completed + failed
        durations = [
            view.duration_ms
            for view in self.completed_jobs
            if view.duration_ms is not None
        ]
        return JobStatistics(
            total=len(self._jobs),
            active=len(self.active_jobs),
            completed=completed,
            failed=failed,
            success_rate=completed / finished if finished else 0.0,
            average_duration_ms=sum(durations) / len(durations) if durations else 0.0,
        )
