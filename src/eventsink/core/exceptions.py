"""
EventSink exception hierarchy.

Each exception carries the HTTP status, a machine-readable error code and
optional details; main.py renders them as JSON error bodies.
"""

from typing import Any, Dict, Optional


class EventSinkException(Exception):
    """Base exception for EventSink service."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}

    @property
    def status(self) -> str:
        """Response status tag: client errors are "failed", server errors "error"."""
        return "failed" if self.status_code < 500 else "error"


class ValidationError(EventSinkException):
    """Raised when request validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_error",
            details=details,
        )


class RateLimitError(EventSinkException):
    """Raised when rate limit is exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
    ) -> None:
        details = {}
        if retry_after is not None:
            details["retry_after"] = retry_after

        super().__init__(
            message=message,
            status_code=429,
            error_code="rate_limit_exceeded",
            details=details,
        )


class QueueClosedError(EventSinkException):
    """Raised when the ingestion queue no longer accepts batches (shutdown in progress)."""

    def __init__(self, message: str = "Ingestion queue is closed") -> None:
        super().__init__(
            message=message,
            status_code=503,
            error_code="queue_closed",
        )


class QueueTimeoutError(EventSinkException):
    """Raised when a batch could not be enqueued before the backpressure timeout."""

    def __init__(self, message: str = "Timed out waiting for ingestion queue space", timeout: Optional[float] = None) -> None:
        super().__init__(
            message=message,
            status_code=503,
            error_code="queue_timeout",
            details={"timeout_seconds": timeout} if timeout is not None else None,
        )


class StorageError(EventSinkException):
    """Raised when persisting a batch to the relational store fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="storage_error",
            details=details,
        )
