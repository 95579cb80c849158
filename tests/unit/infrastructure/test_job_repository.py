"""
Unit tests for the in-memory job store.
"""

import pytest

from scanpipe.domain.jobs.entities import Job, JobStatus
from scanpipe.infrastructure.repositories.job_repository import InMemoryJobRepository


def make_job(job_id, queue_name="wallet-scan", sequence=1):
    return Job(
        id=job_id,
        queue_name=queue_name,
        name="scan",
        payload={},
        priority=0,
        sequence=sequence,
    )


class TestInMemoryJobRepository:
    """Test InMemoryJobRepository."""

    @pytest.fixture
    def repository(self):
        return InMemoryJobRepository()

    def test_add_get_remove(self, repository):
        """Test basic storage."""
        job = make_job("a")
        repository.add(job)

        assert repository.get("wallet-scan", "a") is job
        assert repository.get("quick-scan", "a") is None
        assert repository.remove("wallet-scan", "a")
        assert not repository.remove("wallet-scan", "a")
        assert repository.get("wallet-scan", "a") is None

    def test_readding_moves_job_to_end(self, repository):
        """Test listing order follows the latest submission."""
        repository.add(make_job("a", sequence=1))
        repository.add(make_job("b", sequence=2))
        repository.add(make_job("a", sequence=3))

        assert [job.id for job in repository.list_jobs("wallet-scan")] == ["b", "a"]
        assert repository.get("wallet-scan", "a").sequence == 3

    def test_filters_by_status(self, repository):
        """Test status filters for listing and counting."""
        running = make_job("a")
        running.start()
        repository.add(running)
        repository.add(make_job("b"))
        repository.add(make_job("c", queue_name="bulk-scan"))

        assert [j.id for j in repository.list_jobs("wallet-scan", [JobStatus.QUEUED])] == [
            "b"
        ]
        assert repository.count("wallet-scan") == 2
        assert repository.count("wallet-scan", JobStatus.RUNNING) == 1
        assert repository.count("missing") == 0
