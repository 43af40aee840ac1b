"""
riskguard/errors.py
====================
Error Taxonomy — RiskGuard

Responsibility:
    - Define the typed exceptions raised across the analysis pipeline
    - Attach an HTTP status, a stable error code and an error ``kind``
      to every failure so the API layer and the retry loop can act on it
    - Classify arbitrary exceptions (network, timeout, 5xx, ...) into kinds

Terminal errors (never retried):
    ValidationError, SecurityViolation, NotFoundError, RateLimitError,
    CircuitOpenError, InternalError

Retryable errors (via ResilienceGuard):
    UpstreamUnavailable with kind network | timeout | rate_limited | server_error
"""

import asyncio
from typing import Any


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------

KIND_VALIDATION = "validation"
KIND_SECURITY = "security"
KIND_NOT_FOUND = "not_found"
KIND_RATE_LIMITED = "rate_limited"
KIND_NETWORK = "network"
KIND_TIMEOUT = "timeout"
KIND_SERVER_ERROR = "server_error"
KIND_CLIENT_ERROR = "client_error"
KIND_CIRCUIT_OPEN = "circuit_open"
KIND_INTERNAL = "internal"
KIND_UNKNOWN = "unknown"

# HTTP status codes worth retrying on
_RETRYABLE_STATUS_CODES: set[int] = {429, 500, 502, 503, 504}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RiskGuardError(Exception):
    """Base class for every error the service raises on purpose."""

    status_code: int = 500
    error_code: str = "internal_error"
    kind: str = KIND_INTERNAL

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ValidationError(RiskGuardError):
    """Raised when request input fails shape validation."""

    status_code = 400
    error_code = "validation_error"
    kind = KIND_VALIDATION

    def __init__(
        self,
        message: str,
        details: list[dict[str, str]] | None = None,
        error_code: str = "validation_error",
    ):
        self.details = details or []
        self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["details"] = self.details
        return body


class SecurityViolation(RiskGuardError):
    """Raised when the request itself is flagged as an intrusion."""

    status_code = 403
    error_code = "request_blocked"
    kind = KIND_SECURITY

    def __init__(self, message: str, threat_level: str, event_id: str | None = None):
        self.threat_level = threat_level
        self.event_id = event_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["threat_level"] = self.threat_level
        return body


class NotFoundError(RiskGuardError):
    """A legitimate empty result surfaced as 404."""

    status_code = 404
    kind = KIND_NOT_FOUND

    def __init__(self, message: str, error_code: str = "not_found"):
        self.error_code = error_code
        super().__init__(message)


class RateLimitError(RiskGuardError):
    """Raised when a caller exhausts its request window."""

    status_code = 429
    error_code = "rate_limit_exceeded"
    kind = KIND_RATE_LIMITED

    def __init__(self, message: str, retry_after: int):
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class UpstreamUnavailable(RiskGuardError):
    """A collaborator failed in a way that may succeed on retry."""

    status_code = 503
    error_code = "upstream_unavailable"

    def __init__(self, message: str, kind: str = KIND_NETWORK, status: int | None = None):
        self.kind = kind
        self.status = status
        super().__init__(message)


class CircuitOpenError(UpstreamUnavailable):
    """Fast-fail while a breaker is open (or a half-open trial is running)."""

    def __init__(self, name: str, message: str | None = None):
        self.breaker_name = name
        super().__init__(
            message or f"Circuit '{name}' is open", kind=KIND_CIRCUIT_OPEN,
        )


class RetryExhaustedError(UpstreamUnavailable):
    """All retry attempts failed; carries the attempt count and last error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation failed after {attempts} attempts: {last_error}",
            kind=classify_error(last_error),
        )

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["attempts"] = self.attempts
        return body


class InternalError(RiskGuardError):
    """Unexpected failure; logged with stack trace and correlation id."""

    error_code = "analysis_failed"

    def __init__(self, message: str, request_id: str | None = None):
        self.request_id = request_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.request_id is not None:
            body["request_id"] = self.request_id
        return body


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_error(exc: BaseException) -> str:
    """
    Map any exception to an error kind.

    Our own errors carry their kind. Third-party errors are matched by
    type name (openai / aiohttp / httpx) and finally by status code.
    """
    if isinstance(exc, RiskGuardError):
        return exc.kind

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return KIND_TIMEOUT

    exc_type = type(exc).__name__
    if exc_type in ("APITimeoutError", "ReadTimeout", "ConnectTimeout", "ServerTimeoutError"):
        return KIND_TIMEOUT
    if exc_type == "RateLimitError":
        return KIND_RATE_LIMITED
    if exc_type in (
        "APIConnectionError", "ClientConnectionError", "ClientConnectorError",
        "ServerDisconnectedError", "ConnectError",
    ):
        return KIND_NETWORK
    if isinstance(exc, ConnectionError):
        return KIND_NETWORK

    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int):
        if status == 429:
            return KIND_RATE_LIMITED
        if status in _RETRYABLE_STATUS_CODES:
            return KIND_SERVER_ERROR
        if 400 <= status < 500:
            return KIND_CLIENT_ERROR

    return KIND_UNKNOWN
