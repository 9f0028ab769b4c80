"""
Classified errors for Graph API calls.

Every failed call is classified exactly once, at the point where the raw
HTTP status and body are available. Outer layers dispatch on the exception
type (or its ``kind``), never on message text.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Tag identifying which classification an error carries."""
    CREDENTIAL_EXPIRED = "credential_expired"
    RETRYABLE_UPSTREAM = "retryable_upstream"
    PERMANENT_UPSTREAM = "permanent_upstream"
    TRANSPORT = "transport"
    MALFORMED = "malformed"


class GraphAPIError(Exception):
    """Base class for all classified Graph API failures."""

    kind: ErrorKind
    retryable: bool = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            "kind": self.kind.value,
            "status": self.status,
            "message": self.message,
            "retryable": self.retryable,
        }


class CredentialExpiredError(GraphAPIError):
    """Access token is invalid or expired. Callers should re-authenticate."""

    kind = ErrorKind.CREDENTIAL_EXPIRED

    def __init__(self, code: Optional[int] = None, status: Optional[int] = None):
        label = code if code is not None else "unknown"
        super().__init__(f"Facebook token invalid ({label})", status)
        self.code = code


class RetryableUpstreamError(GraphAPIError):
    """Upstream answered 429 or 5xx; the call may succeed later."""

    kind = ErrorKind.RETRYABLE_UPSTREAM
    retryable = True

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(
            f"Facebook API error: {status} - {message or 'Unknown error'}", status
        )
        self.upstream_message = message


class PermanentUpstreamError(GraphAPIError):
    """Upstream rejected the call in a way retrying cannot fix."""

    kind = ErrorKind.PERMANENT_UPSTREAM

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(
            f"Facebook API error: {status} - {message or 'Unknown error'}", status
        )
        self.upstream_message = message


class TransportError(GraphAPIError):
    """
    Network-level failure with no HTTP status.

    A missing response object is not retryable; connection resets, DNS
    failures and timeouts are.
    """

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class MalformedResponseError(GraphAPIError):
    """Response body did not parse as JSON, or lacks a required field. Never retried."""

    kind = ErrorKind.MALFORMED


class RetryExhaustedError(GraphAPIError):
    """
    Retry budget spent on a retryable condition.

    Carries the last classified error; ``kind`` and ``status`` mirror it so
    callers can still branch on the original classification. This class
    does not subclass RetryableUpstreamError or TransportError: test
    ``kind`` (RETRYABLE_UPSTREAM or TRANSPORT) or ``last_error`` instead of
    ``isinstance`` against those classes. ``retryable`` is False because the
    budget is already spent.
    """

    def __init__(self, last_error: GraphAPIError, attempts: int):
        super().__init__(
            f"Facebook API retry attempts exhausted after {attempts} attempts",
            last_error.status,
        )
        self.last_error = last_error
        self.attempts = attempts

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return self.last_error.kind

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = self.attempts
        data["last_error"] = self.last_error.message
        return data


def is_retryable_status(status: int) -> bool:
    """429 and the whole 5xx range are retryable."""
    return status == 429 or 500 <= status <= 599
