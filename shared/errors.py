"""
Shared error handling for the Exam Access Layer.

Every failure that leaves a service is rendered as an ``ErrorResponse``
carrying a stable ``code`` so callers can map it to an actionable message.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthorizationError(AccessLayerException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class NotFound(AccessLayerException):
    """Requested entity does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class AccessExpired(AccessLayerException):
    """Access existed but its expiry has passed."""

    status_code = 403

    def __init__(self, message: str = "Access has expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXPIRED", message, details)


class AccessRevoked(AccessLayerException):
    """Access was explicitly revoked by an administrator."""

    status_code = 403

    def __init__(self, message: str = "Access has been revoked", details: Optional[Dict[str, Any]] = None):
        super().__init__("REVOKED", message, details)


class AccessDenied(AccessLayerException):
    """User holds no usable access for the requested exam."""

    status_code = 403

    def __init__(self, message: str = "No access to this exam", details: Optional[Dict[str, Any]] = None):
        super().__init__("ACCESS_DENIED", message, details)


class AttemptsExhausted(AccessLayerException):
    """Attempt limit for an exam has been reached."""

    status_code = 403

    def __init__(self, message: str = "Maximum attempts reached", details: Optional[Dict[str, Any]] = None):
        super().__init__("ATTEMPTS_EXHAUSTED", message, details)


class AttemptClosed(AccessLayerException):
    """Attempt is already in a terminal state."""

    status_code = 409

    def __init__(self, message: str = "Attempt is closed", details: Optional[Dict[str, Any]] = None):
        super().__init__("ATTEMPT_CLOSED", message, details)


class PersistenceUnavailable(AccessLayerException):
    """Backing store could not be reached or timed out."""

    status_code = 503

    def __init__(self, message: str = "Persistence backend unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERSISTENCE_UNAVAILABLE", message, details)


class ConcurrentModification(AccessLayerException):
    """Conditional write lost against a concurrent writer."""

    status_code = 409

    def __init__(self, message: str = "Document was modified concurrently", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONCURRENT_MODIFICATION", message, details)


class MalformedRecord(PersistenceUnavailable):
    """Stored document failed schema validation."""

    def __init__(self, message: str = "Stored record is malformed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "MALFORMED_RECORD"
