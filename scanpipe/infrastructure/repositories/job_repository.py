"""
In-Memory Job Repository

Default job store keeping canonical job state in process memory,
partitioned per queue.
"""

from typing import Dict, Iterable, List, Optional

from ...domain.jobs.entities import Job, JobStatus
from ...domain.jobs.repository_interfaces import JobRepository


class InMemoryJobRepository(JobRepository):
    """Dictionary-backed job store. Iteration order is insertion order."""

    def __init__(self):
        self._queues: Dict[str, Dict[str, Job]] = {}

    def add(self, job: Job) -> None:
        jobs = self._queues.setdefault(job.queue_name, {})
        # Re-adding an id moves it to the end so insertion order stays submission order
        jobs.pop(job.id, None)
        jobs[job.id] = job

    def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        return self._queues.get(queue_name, {}).get(job_id)

    def remove(self, queue_name: str, job_id: str) -> bool:
        return self._queues.get(queue_name, {}).pop(job_id, None) is not None

    def list_jobs(
        self, queue_name: str, statuses: Optional[Iterable[JobStatus]] = None
    ) -> List[Job]:
        jobs = self._queues.get(queue_name, {}).values()
        if statuses is None:
            return list(jobs)
        wanted = set(statuses)
        return [job for job in jobs if job.status in wanted]

    def count(self, queue_name: str, status: Optional[JobStatus] = None) -> int:
        jobs = self._queues.get(queue_name, {})
        if status is None:
            return len(jobs)
        return sum(1 for job in jobs.values() if job.status == status)
