"""
Redis Infrastructure Exceptions

Low-level failures raised by the Redis connection layer. The durable cache
tier converts them into ``CacheTierUnavailable`` before they reach services.
"""

from typing import Any, Dict, Optional

from ...core.exceptions import ScanPipeError


class RedisException(ScanPipeError):
    """Base exception for the Redis connection layer."""


class RedisConnectionException(RedisException):
    """The Redis server could not be reached during startup or a health check."""

    def __init__(
        self,
        message: str = "Redis connection failed",
        url: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {}
        if url:
            details["url"] = url
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message, "redis_connection_error", details)
        if original_error:
            self.__cause__ = original_error


class RedisCircuitBreakerOpenException(RedisException):
    """A durable tier call was rejected without reaching Redis."""

    def __init__(self, operation: Optional[str] = None, retry_after: float = 0.0):
        super().__init__(
            f"Redis circuit open, retry in {retry_after:.1f}s",
            "redis_circuit_open",
            {"operation": operation, "retry_after_seconds": round(retry_after, 2)},
        )
        self.retry_after = retry_after
