"""
Shared error handling for the NPHIES gateway.

Every failure the gateway can report is one of the classes below. The API
surface is the only layer that turns them into HTTP status codes; it reads
``status_code`` from the exception rather than branching on its type.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from shared.logging import get_request_id


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ErrorResponse(BaseModel):
    """Standard error response format."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    error: str
    code: str
    details: Optional[Any] = None
    request_id: Optional[str] = None
    timestamp: str


class GatewayException(Exception):
    """Base exception for gateway errors."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=self.message,
            code=self.code,
            details=self.details or None,
            request_id=get_request_id(),
            timestamp=utc_timestamp(),
        )


class ValidationError(GatewayException):
    """Caller-supplied data failed one or more domain checks."""

    status_code = 400

    def __init__(self, errors: List[str], message: str = "Validation failed"):
        self.errors = list(errors)
        super().__init__("VALIDATION_ERROR", message)

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        response.details = self.errors
        return response


class AuthenticationError(GatewayException):
    """The caller's own session credential is missing, expired or invalid."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "UNAUTHORIZED"):
        super().__init__(code, message, details)


class UpstreamAuthenticationError(GatewayException):
    """The gateway could not obtain a client-credentials token from NPHIES."""

    status_code = 502

    def __init__(self, message: str = "Failed to authenticate with NPHIES",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_AUTH_ERROR", message, details)


class TransientNetworkError(GatewayException):
    """Connection refusal, timeout or name resolution failure talking upstream."""

    status_code = 503

    def __init__(self, message: str = "network error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_UNAVAILABLE", message, details)


class UpstreamBusinessError(GatewayException):
    """NPHIES answered, but rejected the operation."""

    def __init__(self, code: str, message: str, upstream_status: int,
                 details: Optional[Dict[str, Any]] = None):
        self.upstream_status = upstream_status
        super().__init__(code, message, details, status_code=422 if upstream_status < 500 else 502)


class RateLimitError(GatewayException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Too many requests from this IP, please try again later.",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMITED", message, details)


class PayloadTooLargeError(GatewayException):
    """The request body is larger than the configured limit."""

    status_code = 413

    def __init__(self, limit_bytes: int, message: str = "Request body too large"):
        super().__init__("PAYLOAD_TOO_LARGE", message, {"limit_bytes": limit_bytes})


class AIServiceError(GatewayException):
    """The proxied AI completion service is unavailable or not configured."""

    def __init__(self, message: str = "AI assistant unavailable", status_code: int = 502,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("AI_SERVICE_ERROR", message, details, status_code=status_code)
