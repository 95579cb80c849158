"""
Redis Connection Factory

Connection management for the durable cache tier and the event bridge.
Provides connection pooling, start-up health checks and a shared circuit breaker.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.redis import RedisInstrumentor
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...core.config import Settings, get_settings
from .circuit_breaker import CircuitBreakerConfig, RedisCircuitBreaker
from .exceptions import RedisConnectionException

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RedisConnectionFactory:
    """
    Factory for the shared Redis connection pool.

    Clients handed out by ``get_client`` return raw bytes; the durable tier
    does its own encoding so compressed payloads survive the round trip.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._circuit_breaker = RedisCircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=self._settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=float(self._settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT),
                operation_timeout=self._settings.REDIS_OPERATION_TIMEOUT,
            )
        )
        self._initialized = False
        self._lock = asyncio.Lock()

        try:
            RedisInstrumentor().instrument()
        except Exception as e:
            logger.warning(f"Failed to enable Redis OpenTelemetry instrumentation: {e}")

    @property
    def circuit_breaker(self) -> RedisCircuitBreaker:
        return self._circuit_breaker

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create the connection pool and verify the server answers."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            with tracer.start_as_current_span("redis.connection_factory.initialize"):
                self._pool = ConnectionPool.from_url(
                    self._settings.REDIS_URL,
                    max_connections=self._settings.REDIS_MAX_CONNECTIONS,
                    socket_connect_timeout=self._settings.REDIS_CONNECTION_TIMEOUT,
                    socket_timeout=self._settings.REDIS_OPERATION_TIMEOUT,
                    decode_responses=False,
                )
                self._client = Redis(connection_pool=self._pool)

                try:
                    await self._test_connection()
                except (RedisError, OSError) as e:
                    await self._pool.disconnect()
                    self._pool = None
                    self._client = None
                    raise RedisConnectionException(
                        message="Redis connection test failed",
                        url=self._settings.REDIS_URL,
                        original_error=e,
                    )

                self._initialized = True
                logger.info(
                    "Redis connection factory initialized",
                    extra={"max_connections": self._settings.REDIS_MAX_CONNECTIONS},
                )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True,
    )
    async def _test_connection(self) -> None:
        await self._client.ping()

    def get_client(self) -> Redis:
        """
        Shared Redis client.

        Raises:
            RedisConnectionException: If the factory is not initialized
        """
        if not self._initialized or self._client is None:
            raise RedisConnectionException("Redis connection factory not initialized")
        return self._client

    async def health_check(self) -> Dict[str, Any]:
        """Ping Redis and report breaker state."""
        status: Dict[str, Any] = {
            "status": "unhealthy",
            "circuit_breaker": self._circuit_breaker.get_status(),
        }
        if not self._initialized:
            status["error"] = "Redis connection factory not initialized"
            return status

        try:
            start = time.perf_counter()
            await self._client.ping()
            status["response_time_ms"] = round((time.perf_counter() - start) * 1000, 2)
            status["status"] = (
                "healthy" if status["circuit_breaker"]["state"] == "closed" else "degraded"
            )
        except (RedisError, OSError) as e:
            status["error"] = str(e)
            logger.error(f"Redis health check failed: {e}")

        return status

    async def close(self) -> None:
        """Close the connection pool."""
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
            if self._pool is not None:
                await self._pool.disconnect()
            self._client = None
            self._pool = None
            self._initialized = False
            logger.info("Redis connection factory closed")
