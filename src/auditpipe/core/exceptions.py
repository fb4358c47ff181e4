"""
Custom exceptions for the audit pipeline.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses. Transient errors are retried by
the queue; everything else is finalised on first failure.
"""

from typing import Any, Dict, Optional


class AuditPipelineException(Exception):
    """Base exception for the audit pipeline."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class EventValidationError(AuditPipelineException):
    """Raised when an audit event lacks required fields."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_error",
            details=details,
        )


class AuthenticationError(AuditPipelineException):
    """Raised when admin authentication fails."""

    retryable = False

    def __init__(self, message: str = "Invalid or missing authentication token") -> None:
        super().__init__(
            message=message,
            status_code=401,
            error_code="authentication_error",
        )


class NotFoundError(AuditPipelineException):
    """Raised when a requested record does not exist."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=404,
            error_code="not_found",
            details=details,
        )


class TransientError(AuditPipelineException):
    """Base for failures that may succeed on retry."""

    def __init__(
        self,
        message: str,
        error_code: str = "transient_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=503,
            error_code=error_code,
            details=details,
        )


class QueueUnavailableError(TransientError):
    """Raised when the queue journal cannot accept or serve jobs."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, error_code="queue_unavailable", details=details)


class StorageError(TransientError):
    """Raised when the audit store fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, error_code="storage_error", details=details)


class CompressionError(AuditPipelineException):
    """Raised when a payload field cannot be compressed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="compression_error",
            details=details,
        )


class SigningError(AuditPipelineException):
    """Raised when a record cannot be signed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="signing_error",
            details=details,
        )


class DeadLetterError(AuditPipelineException):
    """Raised when a dead-letter record cannot be persisted."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="dead_letter_error",
            details=details,
        )


class InvalidStateError(AuditPipelineException):
    """Raised when an operation does not apply to a record's current status."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=409,
            error_code="invalid_state",
            details=details,
        )
