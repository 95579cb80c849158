"""
API Error Mapping

HTTP exception wrapper translating pipeline errors into JSON error bodies.
"""

from fastapi import HTTPException, status

from ..core.exceptions import (
    JobNotFound,
    QueueUnavailable,
    ScanPipeError,
    ValidationError,
    WaitTimeout,
)

STATUS_CODES = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    JobNotFound: status.HTTP_404_NOT_FOUND,
    QueueUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    WaitTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
}


def status_code_for(error: ScanPipeError) -> int:
    for error_type, code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class ScanPipeHTTPException(HTTPException):
    """HTTP exception wrapper for pipeline errors."""

    def __init__(self, error: ScanPipeError, status_code: int = None):
        self.error = error
        super().__init__(
            status_code=status_code or status_code_for(error),
            detail={
                "error": error.error_code,
                "message": error.message,
                "details": error.details,
            },
        )
