"""
Job Retry Policy

How many times a worker function is invoked for one job and how long the
dispatcher waits between attempts.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BackoffType(str, Enum):
    """Delay growth between attempts."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class RetryPolicy(BaseModel):
    """
    Retry configuration for a queue or a single job.

    ``attempts`` counts every invocation, so ``attempts=1`` never retries.
    Exponential backoff doubles ``delay_ms`` after each failed attempt.
    """

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=1, ge=1, le=10, description="Total attempts")
    backoff: BackoffType = Field(
        default=BackoffType.EXPONENTIAL, description="Backoff type"
    )
    delay_ms: int = Field(
        default=0, ge=0, le=600_000, description="Delay after the first failure"
    )
    max_delay_ms: int = Field(
        default=300_000, ge=0, le=3_600_000, description="Upper bound for one delay"
    )

    @classmethod
    def exponential(cls, attempts: int, delay_ms: int) -> "RetryPolicy":
        return cls(attempts=attempts, backoff=BackoffType.EXPONENTIAL, delay_ms=delay_ms)

    @classmethod
    def fixed(cls, attempts: int, delay_ms: int) -> "RetryPolicy":
        return cls(attempts=attempts, backoff=BackoffType.FIXED, delay_ms=delay_ms)

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.attempts

    def delay_for(self, attempts_made: int) -> int:
        """
        Milliseconds to wait before the next attempt.

        Args:
            attempts_made: Attempts already executed (1 after the first failure)
        """
        if self.backoff == BackoffType.FIXED:
            delay = self.delay_ms
        else:
            delay = self.delay_ms * 2 ** max(0, attempts_made - 1)
        return min(delay, self.max_delay_ms)


NO_RETRY = RetryPolicy()
