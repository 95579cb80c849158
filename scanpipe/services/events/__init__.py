"""
Job Status Events

Publisher fan-out, subscriber state machine and SSE streaming.
"""

from .publisher import ALL_JOBS_TOPIC, JobStatusPublisher, Subscription
from .sse import SSEService
from .subscriber import ClientJobView, JobStatistics, JobStatusTracker

__all__ = [
    "ALL_JOBS_TOPIC",
    "JobStatusPublisher",
    "Subscription",
    "SSEService",
    "ClientJobView",
    "JobStatistics",
    "JobStatusTracker",
]
