"""
Redis Infrastructure Module

Connection pooling and circuit breaker protection for the durable cache tier.
"""

from .circuit_breaker import CircuitBreakerConfig, CircuitState, RedisCircuitBreaker
from .connection_factory import RedisConnectionFactory
from .exceptions import (
    RedisCircuitBreakerOpenException,
    RedisConnectionException,
    RedisException,
)

__all__ = [
    "CircuitBreakerConfig",
    "CircuitState",
    "RedisCircuitBreaker",
    "RedisConnectionFactory",
    "RedisException",
    "RedisConnectionException",
    "RedisCircuitBreakerOpenException",
]
