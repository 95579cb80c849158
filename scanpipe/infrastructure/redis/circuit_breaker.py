"""
Redis Circuit Breaker

Stops issuing durable tier calls after repeated failures so that a dead
Redis costs one fast rejection instead of a timeout per cache lookup.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .exceptions import RedisCircuitBreakerOpenException

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    operation_timeout: float = 2.0
    failure_exceptions: tuple = (
        RedisConnectionError,
        RedisTimeoutError,
        ConnectionError,
        TimeoutError,
        OSError,
    )


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    timeout_calls: int = 0
    circuit_opens: int = 0

    @property
    def failure_rate(self) -> float:
        attempted = self.successful_calls + self.failed_calls
        return self.failed_calls / attempted if attempted else 0.0


class RedisCircuitBreaker:
    """
    Circuit breaker for Redis coroutine calls.

    State changes happen synchronously between awaits, so no lock is
    needed on a single event loop.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.metrics = CircuitBreakerMetrics()
        self._clock = clock

    def _retry_after(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.opened_at + self.config.recovery_timeout - self._clock())

    def _admit(self, operation: str) -> None:
        if self.state is CircuitState.OPEN:
            if self._retry_after() > 0:
                self.metrics.rejected_calls += 1
                raise RedisCircuitBreakerOpenException(operation, self._retry_after())
            self._transition(CircuitState.HALF_OPEN)

    async def call(
        self, operation: str, func: Callable[..., Awaitable[T]], *args, **kwargs
    ) -> T:
        """
        Await ``func(*args, **kwargs)`` under breaker protection.

        Args:
            operation: Operation name for logs and rejection details
            func: Coroutine function to call

        Raises:
            RedisCircuitBreakerOpenException: If the circuit is open
            asyncio.TimeoutError: If the call exceeds the operation timeout
            Exception: Original exception from the call
        """
        self._admit(operation)
        self.metrics.total_calls += 1

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs), timeout=self.config.operation_timeout
            )
        except asyncio.TimeoutError:
            self.metrics.timeout_calls += 1
            self._record_failure(operation, "timeout")
            raise
        except self.config.failure_exceptions as e:
            self._record_failure(operation, type(e).__name__)
            raise

        self._record_success()
        return result

    def _record_success(self) -> None:
        self.metrics.successful_calls += 1

        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
        elif self.failure_count > 0:
            self.failure_count -= 1

    def _record_failure(self, operation: str, failure_type: str) -> None:
        self.metrics.failed_calls += 1

        if self.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self.state is CircuitState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

        logger.warning(
            f"Redis operation '{operation}' failed ({failure_type})",
            extra={
                "failure_count": self.failure_count,
                "state": self.state.value,
            },
        )

    def _transition(self, state: CircuitState) -> None:
        previous = self.state
        self.state = state

        if state is CircuitState.OPEN:
            self.opened_at = self._clock()
            self.success_count = 0
            self.metrics.circuit_opens += 1
        elif state is CircuitState.HALF_OPEN:
            self.success_count = 0
        elif state is CircuitState.CLOSED:
            self.failure_count = 0
            self.success_count = 0
            self.opened_at = None

        logger.info(
            f"Circuit breaker {previous.value} -> {state.value}",
            extra={"failure_count": self.failure_count},
        )

    def reset(self) -> None:
        """Manually close the circuit."""
        if self.state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def get_status(self) -> Dict[str, Any]:
        """Current breaker status for monitoring."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "retry_after_seconds": round(self._retry_after(), 2),
            "metrics": {
                "total_calls": self.metrics.total_calls,
                "successful_calls": self.metrics.successful_calls,
                "failed_calls": self.metrics.failed_calls,
                "rejected_calls": self.metrics.rejected_calls,
                "timeout_calls": self.metrics.timeout_calls,
                "circuit_opens": self.metrics.circuit_opens,
                "failure_rate": round(self.metrics.failure_rate, 4),
            },
        }
