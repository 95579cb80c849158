"""
Pipeline Exceptions

Error taxonomy shared by the cache, queue and status layers.
Every error carries a machine readable code and structured details.
"""

from typing import Any, Dict, Optional


class ScanPipeError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ScanPipeError):
    """Raised synchronously when submission arguments are malformed."""

    def __init__(
        self, message: str, field: Optional[str] = None, value: Optional[Any] = None
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(
            message=message, error_code="validation_error", details=details
        )


class QueueUnavailable(ScanPipeError):
    """Raised when the job registry cannot accept work."""

    def __init__(
        self,
        message: str = "Job registry is not running",
        queue_name: Optional[str] = None,
    ):
        details = {}
        if queue_name:
            details["queue_name"] = queue_name

        super().__init__(
            message=message, error_code="queue_unavailable", details=details
        )


class JobNotFound(ScanPipeError):
    """Raised when a job id is unknown or was evicted by retention."""

    def __init__(self, queue_name: str, job_id: str):
        super().__init__(
            message=f"Job not found: {job_id} (queue: {queue_name})",
            error_code="job_not_found",
            details={"queue_name": queue_name, "job_id": job_id},
        )


class JobExecutionFailed(ScanPipeError):
    """Wraps an exception raised by a worker function.

    Recorded on the job and published as ``job_failed``; never raised
    to the submitter.
    """

    def __init__(
        self,
        job_id: str,
        queue_name: str,
        original_error: Optional[BaseException] = None,
        retryable: bool = False,
    ):
        reason = str(original_error) if original_error else "job execution failed"
        details = {"job_id": job_id, "queue_name": queue_name, "retryable": retryable}
        if original_error:
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=reason, error_code="job_execution_failed", details=details
        )
        self.retryable = retryable
        # Preserve exception context for debugging (exception chaining)
        if original_error:
            self.__cause__ = original_error


class InvalidJobTransition(ScanPipeError):
    """Raised when a job is mutated after reaching a terminal state."""

    def __init__(self, job_id: str, current_status: str, attempted: str):
        super().__init__(
            message=f"Job {job_id} cannot transition from {current_status} via {attempted}",
            error_code="invalid_job_transition",
            details={
                "job_id": job_id,
                "current_status": current_status,
                "attempted": attempted,
            },
        )


class CacheTierUnavailable(ScanPipeError):
    """Raised by a cache tier whose backing store cannot be reached.

    The tiered cache converts this into a miss; it never escapes get/set.
    """

    def __init__(
        self,
        tier: str,
        operation: str,
        key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        details = {"tier": tier, "operation": operation}
        if key:
            details["key"] = key
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=f"Cache tier '{tier}' unavailable during {operation}",
            error_code="cache_tier_unavailable",
            details=details,
        )
        if original_error:
            self.__cause__ = original_error


class WaitTimeout(ScanPipeError):
    """Bounded wait budget elapsed before the job finished."""

    def __init__(self, queue_name: str, job_id: str, timeout_ms: int):
        super().__init__(
            message=f"Job {job_id} did not finish within {timeout_ms}ms",
            error_code="wait_timeout",
            details={
                "queue_name": queue_name,
                "job_id": job_id,
                "timeout_ms": timeout_ms,
            },
        )
