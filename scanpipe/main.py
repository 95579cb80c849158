"""
ScanPipe - Main FastAPI Application

Wires the tiered cache, the job registry, the status publisher and the scan
workflow into one service:
- Fast in-process tier with an optional Redis durable tier
- Named job queues with bounded concurrency and retention
- Live job progress over Server-Sent Events
- OpenTelemetry spans around cache, queue and Redis operations
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.endpoints.cache import router as cache_router
from .api.endpoints.health import router as health_router
from .api.endpoints.jobs import router as jobs_router
from .api.endpoints.scans import router as scans_router
from .api.errors import status_code_for
from .constants import APP_NAME, APP_VERSION
from .core.config import Settings, get_settings
from .core.exceptions import ScanPipeError
from .core.logging import configure_logging
from .domain.cache.value_objects import CacheStrategies
from .infrastructure.redis.connection_factory import RedisConnectionFactory
from .infrastructure.redis.exceptions import RedisConnectionException
from .infrastructure.repositories.memory_cache_repository import MemoryCacheRepository
from .infrastructure.repositories.redis_cache_repository import RedisCacheRepository
from .services.cache.cache_manager import TieredCacheManager, strategy_from_settings
from .services.cache.invalidation import CacheInvalidationService
from .services.events.publisher import JobStatusPublisher
from .services.events.sse import SSEService
from .services.events.subscriber import JobStatusTracker
from .services.queues.queue_manager import QueueManager
from .services.scanning.scan_service import Scanner, ScanService

logger = structlog.get_logger()


async def _connect_redis(settings: Settings) -> Optional[RedisConnectionFactory]:
    if not settings.REDIS_ENABLED:
        logger.info("Redis disabled, durable cache tier not configured")
        return None

    factory = RedisConnectionFactory(settings)
    try:
        await factory.initialize()
    except RedisConnectionException as e:
        logger.warning(
            "Redis unavailable, continuing with the fast cache tier only",
            error=e.message,
            details=e.details,
        )
        return None
    return factory


def create_app(
    settings: Optional[Settings] = None, scanner: Optional[Scanner] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to cached settings)
        scanner: Scan implementation used by the scan queues

    Returns:
        Configured application; services are created by its lifespan
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        logger.info("Starting ScanPipe API", environment=settings.ENVIRONMENT)

        redis_factory = await _connect_redis(settings)
        redis_client = redis_factory.get_client() if redis_factory else None

        cache_manager = TieredCacheManager(
            fast_tier=MemoryCacheRepository(default_max_size=settings.CACHE_FAST_MAX_SIZE),
            durable_tier=(
                RedisCacheRepository(redis_client, redis_factory.circuit_breaker)
                if redis_client is not None
                else None
            ),
        )
        invalidation = CacheInvalidationService(
            cache_manager,
            [*CacheStrategies.all(), strategy_from_settings(settings)],
        )
        publisher = JobStatusPublisher(
            default_update_frequency_ms=settings.EVENTS_DEFAULT_UPDATE_FREQUENCY_MS,
            redis=redis_client if settings.EVENTS_REDIS_BRIDGE else None,
        )
        queue_manager = QueueManager(publisher=publisher, settings=settings)
        scan_service = ScanService(
            queue_manager, cache_manager, invalidation, scanner=scanner, settings=settings
        )
        scan_service.register_queues()

        tracker = JobStatusTracker(settings.SUBSCRIBER_MAX_HISTORY_ITEMS)
        tracker_subscription = publisher.subscribe()
        tracker_task = asyncio.create_task(tracker.consume(tracker_subscription))

        await queue_manager.start()

        app.state.settings = settings
        app.state.redis_factory = redis_factory
        app.state.cache_manager = cache_manager
        app.state.invalidation = invalidation
        app.state.publisher = publisher
        app.state.queue_manager = queue_manager
        app.state.scan_service = scan_service
        app.state.tracker = tracker
        app.state.sse_service = SSEService(settings.SSE_KEEPALIVE_SECONDS)

        logger.info(
            "ScanPipe API started",
            version=APP_VERSION,
            queues=queue_manager.queue_names,
            durable_tier=redis_client is not None,
        )

        try:
            yield
        finally:
            logger.info("Shutting down ScanPipe API")
            try:
                await queue_manager.stop()
                tracker_subscription.cancel()
                await tracker_task
                await publisher.close()
                await cache_manager.close()
            except Exception as e:
                logger.error("Error during application shutdown", error=str(e))
            finally:
                if redis_factory is not None:
                    await redis_factory.close()
            logger.info("Application shutdown completed")

    app = FastAPI(
        title=f"{APP_NAME} API",
        description="Tiered cache and job pipeline with live progress streaming",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScanPipeError)
    async def scanpipe_error_handler(request: Request, exc: ScanPipeError):
        logger.warning(
            "Request failed",
            path=request.url.path,
            error_code=exc.error_code,
            error=exc.message,
        )
        return JSONResponse(
            status_code=status_code_for(exc),
            content={
                "error": exc.error_code,
                "message": exc.message,
                "details": exc.details,
            },
        )

    app.include_router(health_router)
    app.include_router(scans_router)
    app.include_router(jobs_router)
    app.include_router(cache_router)

    return app


app = create_app()


def run() -> None:
    """Console entry point serving the API with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "scanpipe.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.is_development,
    )


if __name__ == "__main__":
    run()
