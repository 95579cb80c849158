"""
Job Domain Entities

Canonical job state owned by the registry, plus the immutable snapshot
and handle types handed to callers.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ...constants import get_current_timestamp
from ...core.exceptions import InvalidJobTransition
from .retry import RetryPolicy


class JobStatus(str, Enum):
    """Job execution status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.RUNNING)


@dataclass(frozen=True)
class JobOptions:
    """
    Submission options.

    ``job_id`` doubles as the deduplication key: while a job with that id is
    queued or running in the same queue, resubmission returns the existing job.
    ``remove_on_complete`` / ``remove_on_fail`` override the queue's retention
    and ``retry`` overrides its retry policy.
    """

    priority: int = 0
    job_id: Optional[str] = None
    delay_ms: int = 0
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None
    retry: Optional[RetryPolicy] = None


@dataclass(frozen=True)
class JobHandle:
    """Reference returned by ``add_job``."""

    id: str
    queue_name: str
    deduplicated: bool = False


class JobSnapshot(BaseModel):
    """Immutable copy of a job's state at read time."""

    model_config = ConfigDict(frozen=True)

    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    priority: int
    status: JobStatus
    progress: int = Field(ge=0, le=100)
    current_step: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    remaining_steps: List[str] = Field(default_factory=list)
    estimated_time_remaining_ms: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    attempts_made: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class Job:
    """
    Job entity.

    Lifecycle: queued -> running -> completed | failed. The terminal
    transition happens exactly once; progress never decreases.
    """

    id: str
    queue_name: str
    name: str
    payload: Any
    priority: int
    sequence: int
    options: JobOptions = field(default_factory=JobOptions)
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    steps: List[str] = field(default_factory=list)
    current_step: Optional[str] = None
    completed_steps: List[str] = field(default_factory=list)
    remaining_steps: List[str] = field(default_factory=list)
    estimated_time_remaining_ms: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=get_current_timestamp)
    available_at: float = field(default_factory=time.monotonic)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    event_sequence: int = 0
    attempts_made: int = 0

    def _ensure_status(self, attempted: str, *allowed: JobStatus) -> None:
        if self.status not in allowed:
            raise InvalidJobTransition(self.id, self.status.value, attempted)

    def next_event_sequence(self) -> int:
        """Stamp for the next lifecycle event (strictly increasing per job)."""
        self.event_sequence += 1
        return self.event_sequence

    def start(self, steps: Sequence[str] = ()) -> None:
        """Claim the job for execution."""
        self._ensure_status("start", JobStatus.QUEUED)
        self.status = JobStatus.RUNNING
        self.started_at = get_current_timestamp()
        self.steps = list(steps)
        self.completed_steps = []
        self.remaining_steps = list(steps)
        self.current_step = self.steps[0] if self.steps else None

    def update_progress(
        self,
        progress: float,
        current_step: Optional[str] = None,
        completed_steps: Optional[Sequence[str]] = None,
        remaining_steps: Optional[Sequence[str]] = None,
        estimated_time_remaining_ms: Optional[int] = None,
    ) -> int:
        """
        Record progress for a running job.

        Progress is clamped to 0-100 and never decreases. When only the
        current step is given and it is one of the job's steps, the completed
        and remaining lists are derived from its position.

        Returns:
            Effective progress after clamping
        """
        self._ensure_status("update_progress", JobStatus.RUNNING)

        clamped = int(max(0, min(100, round(progress))))
        self.progress = max(self.progress, clamped)

        if current_step is not None:
            self.current_step = current_step
            if (
                completed_steps is None
                and remaining_steps is None
                and current_step in self.steps
            ):
                index = self.steps.index(current_step)
                completed_steps = self.steps[:index]
                remaining_steps = self.steps[index + 1 :]

        if completed_steps is not None:
            self.completed_steps = list(completed_steps)
        if remaining_steps is not None:
            self.remaining_steps = list(remaining_steps)
        if estimated_time_remaining_ms is not None:
            self.estimated_time_remaining_ms = max(0, int(estimated_time_remaining_ms))

        return self.progress

    def complete(self, result: Any) -> None:
        """Record successful completion."""
        self._ensure_status("complete", JobStatus.RUNNING)
        self.status = JobStatus.COMPLETED
        self.progress = 100
        self.result = result
        self.completed_at = get_current_timestamp()
        self.current_step = None
        self.completed_steps = list(self.steps)
        self.remaining_steps = []
        self.estimated_time_remaining_ms = 0

    def fail(self, error: str) -> None:
        """Record failure. A queued job may fail without ever running."""
        self._ensure_status("fail", JobStatus.QUEUED, JobStatus.RUNNING)
        self.status = JobStatus.FAILED
        self.error = error
        self.completed_at = get_current_timestamp()
        self.current_step = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[int]:
        """Execution time from claim to terminal state."""
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def snapshot(self) -> JobSnapshot:
        """Immutable copy for readers outside the registry."""
        payload = (
            self.payload.model_dump()
            if isinstance(self.payload, BaseModel)
            else dict(self.payload or {})
        )
        return JobSnapshot(
            id=self.id,
            queue_name=self.queue_name,
            name=self.name,
            payload=payload,
            priority=self.priority,
            status=self.status,
            progress=self.progress,
            current_step=self.current_step,
            completed_steps=list(self.completed_steps),
            remaining_steps=list(self.remaining_steps),
            estimated_time_remaining_ms=self.estimated_time_remaining_ms,
            result=self.result,
            error=self.error,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration_ms=self.duration_ms,
            attempts_made=self.attempts_made,
        )
