"""
API Dependencies

Accessors for the services wired onto ``app.state`` by the application lifespan.
"""

from typing import Optional

from fastapi import Request

from ..infrastructure.redis.connection_factory import RedisConnectionFactory
from ..services.cache.cache_manager import TieredCacheManager
from ..services.cache.invalidation import CacheInvalidationService
from ..services.events.publisher import JobStatusPublisher
from ..services.events.sse import SSEService
from ..services.events.subscriber import JobStatusTracker
from ..services.queues.queue_manager import QueueManager
from ..services.scanning.scan_service import ScanService


def get_scan_service(request: Request) -> ScanService:
    return request.app.state.scan_service


def get_queue_manager(request: Request) -> QueueManager:
    return request.app.state.queue_manager


def get_cache_manager(request: Request) -> TieredCacheManager:
    return request.app.state.cache_manager


def get_invalidation_service(request: Request) -> CacheInvalidationService:
    return request.app.state.invalidation


def get_publisher(request: Request) -> JobStatusPublisher:
    return request.app.state.publisher


def get_sse_service(request: Request) -> SSEService:
    return request.app.state.sse_service


def get_tracker(request: Request) -> JobStatusTracker:
    return request.app.state.tracker


def get_redis_factory(request: Request) -> Optional[RedisConnectionFactory]:
    return request.app.state.redis_factory
