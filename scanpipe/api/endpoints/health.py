"""
Health check endpoints.

Liveness plus dependency status for the durable cache tier and the job registry.
"""

import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...constants import APP_VERSION, get_current_timestamp
from ...core.config import get_settings
from ...infrastructure.redis.connection_factory import RedisConnectionFactory
from ...services.queues.queue_manager import QueueManager
from ..dependencies import get_queue_manager, get_redis_factory

# Track process start time for uptime calculation
PROCESS_START_TIME = time.time()

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/")
async def health_check() -> Dict[str, Any]:
    """Basic health check for load balancers."""
    return {
        "status": "healthy",
        "timestamp": get_current_timestamp().isoformat(),
        "version": APP_VERSION,
        "environment": get_settings().ENVIRONMENT,
        "uptime_seconds": int(time.time() - PROCESS_START_TIME),
    }


@router.get("/ready")
async def readiness_check(
    queue_manager: QueueManager = Depends(get_queue_manager),
    redis_factory: Optional[RedisConnectionFactory] = Depends(get_redis_factory),
) -> JSONResponse:
    """
    Readiness check.

    The durable tier is optional: without Redis the cache serves from the
    fast tier only and the service reports ``degraded``.
    """
    checks: Dict[str, Any] = {
        "queues": {
            "status": "healthy" if queue_manager.is_running else "unhealthy",
            "queues": queue_manager.queue_names,
        }
    }
    if redis_factory is None:
        checks["redis"] = {"status": "disabled"}
    else:
        checks["redis"] = await redis_factory.health_check()

    if not queue_manager.is_running:
        status = "not_ready"
    elif checks["redis"]["status"] in ("healthy", "disabled"):
        status = "ready"
    else:
        status = "degraded"

    return JSONResponse(
        status_code=503 if status == "not_ready" else 200,
        content={
            "status": status,
            "timestamp": get_current_timestamp().isoformat(),
            "checks": checks,
        },
    )
