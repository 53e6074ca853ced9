"""Structured errors for the outbound proxy.

Custom exception hierarchy plus the ``ErrorKind`` taxonomy used in outcome
events and synthesized responses.  Only ``UpstreamFailureError`` (and its
timeout subclass) counts against a host's circuit breaker.
"""

import enum
import math

from pydantic import BaseModel


class ErrorKind(str, enum.Enum):
    """Error taxonomy for proxied calls."""

    UNKNOWN_HOST = "UNKNOWN_HOST"
    RATE_LIMITED = "RATE_LIMITED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    UPSTREAM_CLIENT_ERROR = "UPSTREAM_CLIENT_ERROR"
    STATE_STORE_UNAVAILABLE = "STATE_STORE_UNAVAILABLE"


class OutboundProxyError(Exception):
    """Base exception for all outbound-proxy errors."""

    kind: ErrorKind | None = None
    status_code: int = 500


class UnknownHostError(OutboundProxyError):
    """Raised when a request names a host that is not configured."""

    kind = ErrorKind.UNKNOWN_HOST
    status_code = 404

    def __init__(self, host_key: str) -> None:
        self.host_key = host_key
        super().__init__(f"Unknown proxy host: {host_key!r}")


class RateLimitedError(OutboundProxyError):
    """Raised when a host's token bucket is empty."""

    kind = ErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(self, host_key: str, retry_after: float) -> None:
        self.host_key = host_key
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Rate limit exceeded for '{host_key}' — retry after {self.retry_after:.1f}s")


class CircuitOpenError(OutboundProxyError):
    """Raised when a circuit breaker is open and the call is rejected.

    Also used for HALF_OPEN hosts whose single probe slot is taken.
    """

    kind = ErrorKind.CIRCUIT_OPEN
    status_code = 503

    def __init__(self, host_key: str, retry_after: float) -> None:
        self.host_key = host_key
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit open for '{host_key}' — retry after {self.retry_after:.1f}s")


class UpstreamFailureError(OutboundProxyError):
    """Raised when the upstream connection fails outright."""

    kind = ErrorKind.UPSTREAM_FAILURE
    status_code = 502

    def __init__(self, host_key: str, detail: str = "") -> None:
        self.host_key = host_key
        self.detail = detail
        msg = f"Upstream failure: {host_key}"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


class UpstreamTimeoutError(UpstreamFailureError):
    """Raised when the upstream call exceeds its time budget."""

    status_code = 504

    def __init__(self, host_key: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(host_key, f"timed out after {timeout_seconds:.3f}s")


class StateStoreUnavailableError(OutboundProxyError):
    """Raised when the durable state store cannot answer and no cached state exists."""

    kind = ErrorKind.STATE_STORE_UNAVAILABLE
    status_code = 503

    def __init__(self, key: str, detail: str = "") -> None:
        self.key = key
        self.detail = detail
        msg = f"State store unavailable for '{key}'"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


def retry_after_header(seconds: float) -> str:
    """Render a ``Retry-After`` value: whole seconds, rounded up, at least 1."""
    return str(max(1, math.ceil(seconds)))


class StructuredErrorResponse(BaseModel):
    """Structured error body for synthesized responses.

    Returns ``{"error": str, "code": str, "request_id": str}`` — no stack traces.
    """

    error: str
    code: str
    request_id: str

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> "StructuredErrorResponse":
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, OutboundProxyError) and exc.kind is not None:
            return cls(error=str(exc), code=exc.kind.value, request_id=request_id)
        if isinstance(exc, OutboundProxyError):
            return cls(error=str(exc), code="PROXY_ERROR", request_id=request_id)
        # Unhandled — never expose internal details
        return cls(
            error="An internal error occurred",
            code="INTERNAL_ERROR",
            request_id=request_id,
        )
