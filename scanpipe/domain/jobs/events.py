"""
Job Lifecycle Events

Status events published for every job transition. Each event carries a
per-job sequence number so consumers can discard stale or duplicate events.
"""

from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ...constants import get_current_timestamp


class JobEventBase(BaseModel):
    """Fields shared by every job event."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    queue_name: str
    job_name: str
    sequence: int = Field(..., ge=1, description="Per-job event sequence")
    timestamp: datetime = Field(default_factory=get_current_timestamp)

    @property
    def is_terminal(self) -> bool:
        return False


class JobStartedEvent(JobEventBase):
    type: Literal["job_started"] = "job_started"
    steps: List[str] = Field(default_factory=list)
    estimated_duration_ms: Optional[int] = None


class JobProgressEvent(JobEventBase):
    type: Literal["job_progress"] = "job_progress"
    progress: int = Field(..., ge=0, le=100)
    current_step: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    remaining_steps: List[str] = Field(default_factory=list)
    estimated_time_remaining_ms: Optional[int] = None

    @property
    def is_final(self) -> bool:
        return self.progress >= 100


class JobCompletedEvent(JobEventBase):
    type: Literal["job_completed"] = "job_completed"
    result: Optional[Any] = None
    duration_ms: Optional[int] = None
    completed_at: datetime = Field(default_factory=get_current_timestamp)

    @property
    def is_terminal(self) -> bool:
        return True


class JobFailedEvent(JobEventBase):
    type: Literal["job_failed"] = "job_failed"
    error: str
    code: str = "job_execution_failed"
    retryable: bool = False
    duration_ms: Optional[int] = None
    failed_at: datetime = Field(default_factory=get_current_timestamp)
    attempts: int = Field(default=1, ge=1, description="Attempts made before failing")

    @property
    def is_terminal(self) -> bool:
        return True


JobEvent = Annotated[
    Union[JobStartedEvent, JobProgressEvent, JobCompletedEvent, JobFailedEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(JobEvent)


def parse_event(raw: Any) -> JobEventBase:
    """Decode an event from a mapping or JSON string.

    Raises:
        pydantic.ValidationError: If the event is malformed
    """
    if isinstance(raw, JobEventBase):
        return raw
    if isinstance(raw, (str, bytes)):
        return _event_adapter.validate_json(raw)
    return _event_adapter.validate_python(raw)
