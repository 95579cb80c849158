"""
Job endpoints.

Job lookup, registry statistics, tracked activity and the SSE status stream.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from ...core.exceptions import ScanPipeError, ValidationError
from ...domain.jobs.entities import JobSnapshot
from ...services.events.publisher import ALL_JOBS_TOPIC, JobStatusPublisher
from ...services.events.sse import SSEService
from ...services.events.subscriber import JobStatusTracker
from ...services.queues.queue_manager import QueueManager
from ..dependencies import (
    get_publisher,
    get_queue_manager,
    get_sse_service,
    get_tracker,
)
from ..errors import ScanPipeHTTPException

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/stats")
async def get_job_stats(
    queue_manager: QueueManager = Depends(get_queue_manager),
    publisher: JobStatusPublisher = Depends(get_publisher),
) -> Dict[str, Any]:
    """Per-queue job counts, dispatcher and publisher statistics."""
    return {
        "queues": queue_manager.get_all_queue_stats(),
        "publisher": publisher.get_stats(),
    }


@router.get("/activity")
async def get_job_activity(
    tracker: JobStatusTracker = Depends(get_tracker),
) -> Dict[str, Any]:
    """Active jobs, recent history and success statistics."""
    return {
        "statistics": asdict(tracker.get_statistics()),
        "active": [view.model_dump(mode="json") for view in tracker.active_jobs],
        "history": [view.model_dump(mode="json") for view in tracker.get_history()],
    }


@router.get("/stream")
async def stream_jobs(
    topic: str = Query(ALL_JOBS_TOPIC, description="'jobs' or a queue name"),
    job_id: Optional[List[str]] = Query(None, description="Job ids to watch"),
    update_frequency_ms: Optional[int] = Query(None, ge=0),
    queue_manager: QueueManager = Depends(get_queue_manager),
    publisher: JobStatusPublisher = Depends(get_publisher),
    sse_service: SSEService = Depends(get_sse_service),
) -> StreamingResponse:
    """
    Stream job status events as Server-Sent Events.

    When ``job_id`` is given the stream ends once every watched job has
    finished.
    """
    if topic != ALL_JOBS_TOPIC and topic not in queue_manager.queue_names:
        raise ScanPipeHTTPException(
            ValidationError(f"Unknown topic '{topic}'", field="topic", value=topic)
        )

    subscription = publisher.subscribe(
        topic=topic, job_ids=job_id, update_frequency_ms=update_frequency_ms
    )
    logger.info(
        "Job stream requested",
        topic=topic,
        job_ids=job_id,
        subscription_id=subscription.id,
    )
    return StreamingResponse(
        sse_service.stream(subscription),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/{queue_name}/{job_id}")
async def get_job(
    queue_name: str,
    job_id: str,
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> JobSnapshot:
    """Current state of a job; 404 once it is unknown or evicted."""
    try:
        return queue_manager.require_job(queue_name, job_id)
    except ScanPipeError as e:
        raise ScanPipeHTTPException(e) from e
