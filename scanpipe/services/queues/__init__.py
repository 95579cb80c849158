"""
Queue Management Services

Job registry with per-queue dispatchers, priority ordering, deduplication
and retention, plus the bounded-wait helper used by the quick scan path.
"""

from .queue_manager import DEFAULT_QUEUE_CONFIGS, QueueManager
from .waiter import WaitOutcome, wait_for_job
from .workers import JobContext, JobHandler, QueueConfig, QueueDispatcher

__all__ = [
    "DEFAULT_QUEUE_CONFIGS",
    "QueueManager",
    "QueueConfig",
    "QueueDispatcher",
    "JobContext",
    "JobHandler",
    "WaitOutcome",
    "wait_for_job",
]
