"""Structured error tests.

Covers the error hierarchy, the ErrorKind taxonomy, Retry-After rendering
and structured error responses (no stack traces).
"""

import pytest

from src.core.errors import (
    CircuitOpenError,
    ErrorKind,
    OutboundProxyError,
    RateLimitedError,
    StateStoreUnavailableError,
    StructuredErrorResponse,
    UnknownHostError,
    UpstreamFailureError,
    UpstreamTimeoutError,
    retry_after_header,
)


# ── Error hierarchy ─────────────────────────────────────────────────────


class TestErrorHierarchy:
    """All custom errors inherit from OutboundProxyError."""

    @pytest.mark.parametrize(
        "error_cls",
        [UnknownHostError, RateLimitedError, CircuitOpenError, UpstreamFailureError, StateStoreUnavailableError],
    )
    def test_inherits_base(self, error_cls) -> None:
        assert issubclass(error_cls, OutboundProxyError)

    def test_timeout_is_an_upstream_failure(self) -> None:
        assert issubclass(UpstreamTimeoutError, UpstreamFailureError)
        err = UpstreamTimeoutError("hmrc", 2.0)
        assert err.kind == ErrorKind.UPSTREAM_FAILURE
        assert err.status_code == 504
        assert err.timeout_seconds == 2.0

    @pytest.mark.parametrize(
        "err, status, kind",
        [
            (UnknownHostError("x"), 404, ErrorKind.UNKNOWN_HOST),
            (RateLimitedError("x", 1.0), 429, ErrorKind.RATE_LIMITED),
            (CircuitOpenError("x", 1.0), 503, ErrorKind.CIRCUIT_OPEN),
            (UpstreamFailureError("x"), 502, ErrorKind.UPSTREAM_FAILURE),
            (StateStoreUnavailableError("k"), 503, ErrorKind.STATE_STORE_UNAVAILABLE),
        ],
    )
    def test_status_and_kind(self, err, status, kind) -> None:
        assert err.status_code == status
        assert err.kind == kind

    def test_circuit_open_message(self) -> None:
        err = CircuitOpenError("hmrc", 42.5)
        assert "hmrc" in str(err)
        assert err.host_key == "hmrc"
        assert err.retry_after == 42.5

    def test_negative_retry_after_clamped(self) -> None:
        assert CircuitOpenError("hmrc", -3).retry_after == 0.0
        assert RateLimitedError("hmrc", -0.1).retry_after == 0.0

    def test_state_store_message(self) -> None:
        err = StateStoreUnavailableError("proxy-state:breaker:hmrc", "connection refused")
        assert "proxy-state:breaker:hmrc" in str(err)
        assert err.detail == "connection refused"


class TestRetryAfterHeader:
    @pytest.mark.parametrize("seconds, expected", [(0, "1"), (0.2, "1"), (1.0, "1"), (1.01, "2"), (59.3, "60")])
    def test_rounds_up_to_whole_seconds(self, seconds, expected) -> None:
        assert retry_after_header(seconds) == expected


# ── StructuredErrorResponse ─────────────────────────────────────────────


class TestStructuredErrorResponse:
    def test_has_required_fields(self) -> None:
        resp = StructuredErrorResponse(error="Something went wrong", code="INTERNAL_ERROR", request_id="req-123")
        assert resp.model_dump() == {
            "error": "Something went wrong",
            "code": "INTERNAL_ERROR",
            "request_id": "req-123",
        }

    def test_from_proxy_error_uses_kind(self) -> None:
        resp = StructuredErrorResponse.from_exception(RateLimitedError("hmrc", 0.5), "req-1")
        assert resp.code == "RATE_LIMITED"
        assert "hmrc" in resp.error

    def test_from_base_error(self) -> None:
        resp = StructuredErrorResponse.from_exception(OutboundProxyError("boom"), "req-2")
        assert resp.code == "PROXY_ERROR"

    def test_unhandled_exception_hides_details(self) -> None:
        resp = StructuredErrorResponse.from_exception(KeyError("secret_internal_key"), "req-3")
        assert resp.code == "INTERNAL_ERROR"
        assert "secret_internal_key" not in resp.error
