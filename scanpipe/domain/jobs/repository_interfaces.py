"""
Job Repository Interfaces

Store for canonical job state, injected into the registry so that
storage can be swapped without touching dispatch logic.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from .entities import Job, JobStatus


class JobRepository(ABC):
    """
    Job store partitioned by queue name.

    Methods are synchronous: the registry calls them from ``add_job``,
    which must complete without suspending.
    """

    @abstractmethod
    def add(self, job: Job) -> None:
        """Store a new job, replacing any job with the same id."""

    @abstractmethod
    def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        """Fetch a job or None."""

    @abstractmethod
    def remove(self, queue_name: str, job_id: str) -> bool:
        """Delete a job. Returns True if it existed."""

    @abstractmethod
    def list_jobs(
        self, queue_name: str, statuses: Optional[Iterable[JobStatus]] = None
    ) -> List[Job]:
        """Jobs in a queue, optionally filtered by status, oldest first."""

    @abstractmethod
    def count(self, queue_name: str, status: Optional[JobStatus] = None) -> int:
        """Number of jobs in a queue, optionally with a given status."""
