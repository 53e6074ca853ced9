"""ProxyHandler — stateless outbound request entry point.

For each inbound call:

    1. resolve the ``HostConfig`` (unknown host → 404, nothing touched)
    2. take a token from the host's bucket (empty → 429, breaker untouched)
    3. ask the host's circuit breaker for admission (denied → 503)
    4. forward to ``egress_base_url`` + the path with ``mapped_path_prefix``
       stripped, bounded by min(latency threshold, caller deadline)
    5. classify the result and record it on the breaker
    6. return the upstream response unchanged, or the synthesized rejection

Upstream calls are never retried here; retry policy belongs to the caller.
The only retries are the bounded CAS retries inside the breaker and limiter.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field

import httpx

from src.core.config import HostConfig
from src.core.errors import (
    CircuitOpenError,
    ErrorKind,
    OutboundProxyError,
    RateLimitedError,
    StructuredErrorResponse,
    UnknownHostError,
    UpstreamFailureError,
    UpstreamTimeoutError,
    retry_after_header,
)
from src.host_registry import HostRegistry
from src.observability.outcomes import LoggingOutcomeEmitter, Outcome, OutcomeEvent
from src.resilience.circuit_breaker import CircuitBreaker, classify_status
from src.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

PROXY_ROUTE_PREFIX = "/proxy"

# Headers that describe the inbound hop and must not be forwarded upstream
_STRIPPED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "connection",
        "keep-alive",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "content-length",
        "x-forwarded-for",
        "x-forwarded-proto",
        "x-forwarded-port",
        "x-proxy-host",
        "x-request-deadline-ms",
    }
)

# httpx hands back a decoded body, so framing/encoding headers no longer apply
_STRIPPED_RESPONSE_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "transfer-encoding",
        "content-encoding",
        "content-length",
    }
)


# ── Data classes ────────────────────────────────────────────────────────


@dataclass
class ProxyRequest:
    """One inbound call to be proxied.

    Attributes:
        host_key:   Configured upstream host identifier.
        method:     HTTP method.
        path:       Inbound path, including the host's mapped prefix.
        headers:    Inbound headers.
        body:       Raw request body.
        query:      Raw query string (without ``?``).
        deadline:   Absolute ``time.monotonic()`` deadline, or ``None``.
        request_id: Correlation id for logs and outcome events.
    """

    host_key: str
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    query: str = ""
    deadline: float | None = None
    request_id: str = ""


@dataclass
class ProxyResponse:
    """Response returned to the caller.

    Attributes:
        status_code: Upstream status, or the synthesized rejection status.
        headers:     Response headers as ordered (name, value) pairs; repeated
                     headers such as ``Set-Cookie`` stay separate.
        body:        Raw response body.
        outcome:     Classified outcome of the call.
        kind:        Error taxonomy entry, ``None`` for a 2xx/3xx pass-through.
        elapsed_ms:  Upstream round-trip time (0 when short-circuited).
    """

    status_code: int
    headers: list[tuple[str, str]]
    body: bytes
    outcome: Outcome
    kind: ErrorKind | None = None
    elapsed_ms: float = 0.0

    def header(self, name: str) -> str | None:
        """First value of header *name* (case-insensitive), or ``None``."""
        name = name.lower()
        return next((v for k, v in self.headers if k.lower() == name), None)

    def header_values(self, name: str) -> list[str]:
        name = name.lower()
        return [v for k, v in self.headers if k.lower() == name]


# ── URL helpers ─────────────────────────────────────────────────────────


def _has_prefix(path: str, prefix: str) -> bool:
    return prefix != "/" and (path == prefix or path.startswith(prefix + "/"))


def strip_mapped_prefix(path: str, prefix: str) -> str:
    """Remove *prefix* from *path* on a segment boundary."""
    if _has_prefix(path, prefix):
        path = path[len(prefix) :]
    if not path.startswith("/"):
        path = "/" + path
    return path


def upstream_path(config: HostConfig, path: str) -> str:
    """Path to request upstream for an inbound *path*.

    The host's ``mapped_path_prefix`` is stripped when present; otherwise the
    generic ``/proxy/{host_key}`` route prefix is.
    """
    route_prefix = f"{PROXY_ROUTE_PREFIX}/{config.host_key}"
    for prefix in (config.mapped_path_prefix, route_prefix):
        if _has_prefix(path, prefix):
            return strip_mapped_prefix(path, prefix)
    return strip_mapped_prefix(path, "/")


def build_upstream_url(config: HostConfig, path: str, query: str = "") -> str:
    url = f"{config.egress_base_url}{upstream_path(config, path)}"
    if query:
        url += f"?{query}"
    return url


# ── Handler ─────────────────────────────────────────────────────────────


class ProxyHandler:
    """Admit, forward and record outbound calls for every configured host.

    Args:
        hosts:        Registry of configured upstream hosts.
        rate_limiter: Store-backed per-host token bucket.
        breaker:      Store-backed per-host circuit breaker.
        emitter:      Outcome event sink (best-effort).
        client:       Shared ``httpx.AsyncClient``; created if omitted.
    """

    def __init__(
        self,
        hosts: HostRegistry,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        emitter: LoggingOutcomeEmitter | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.hosts = hosts
        self._rate_limiter = rate_limiter
        self._breaker = breaker
        self._emitter = emitter or LoggingOutcomeEmitter()
        self._client = client or httpx.AsyncClient(follow_redirects=False)

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        """Run one request through limiter, breaker and upstream."""
        config = self.hosts.get(request.host_key)
        if config is None:
            logger.warning("Unknown proxy host %r (request_id=%s)", request.host_key, request.request_id)
            response = self._synthesize(UnknownHostError(request.host_key), request, Outcome.UNKNOWN_HOST)
            self._emit(request, response, breaker_state=None)
            return response

        if request.deadline is not None and request.deadline <= time.monotonic():
            response = self._synthesize(UpstreamTimeoutError(config.host_key, 0.0), request, Outcome.TIMEOUT)
            self._emit(request, response, breaker_state=None)
            return response

        rate = await self._rate_limiter.try_acquire(config)
        if not rate.allowed:
            logger.warning("Rate limit exceeded for %s (request_id=%s)", config.host_key, request.request_id)
            response = self._synthesize(
                RateLimitedError(config.host_key, rate.retry_after),
                request,
                Outcome.RATE_LIMITED,
                extra_headers={
                    "X-RateLimit-Limit": str(math.floor(config.burst_capacity)),
                    "X-RateLimit-Remaining": str(math.floor(rate.tokens_remaining)),
                },
            )
            self._emit(request, response, breaker_state=None)
            return response

        admission = await self._breaker.allow(config)
        if not admission.allowed:
            logger.warning(
                "Circuit %s for %s — short-circuiting (request_id=%s)",
                admission.state.value,
                config.host_key,
                request.request_id,
            )
            response = self._synthesize(
                CircuitOpenError(config.host_key, admission.retry_after),
                request,
                Outcome.CIRCUIT_OPEN,
            )
            self._emit(request, response, breaker_state=admission.state.value)
            return response

        try:
            response, success = await self._forward(config, request)
        except (Exception, asyncio.CancelledError):
            if admission.probe:
                # Hand the HALF_OPEN slot back as a failed probe
                await asyncio.shield(self._breaker.record_outcome(config, False, was_probe=True))
            raise
        breaker_state = await self._breaker.record_outcome(config, success, was_probe=admission.probe)
        self._emit(request, response, breaker_state=breaker_state.value if breaker_state else None)
        return response

    # ── Upstream call ───────────────────────────────────────────────

    def call_timeout(self, config: HostConfig, deadline: float | None) -> float:
        """Smaller of the host's latency threshold and the caller's remaining budget."""
        timeout = config.latency_threshold_seconds
        if deadline is not None:
            timeout = min(timeout, deadline - time.monotonic())
        return max(timeout, 0.001)

    async def _forward(self, config: HostConfig, request: ProxyRequest) -> tuple[ProxyResponse, bool]:
        """Send the request upstream; return the response and breaker success flag."""
        url = build_upstream_url(config, request.path, request.query)
        timeout = self.call_timeout(config, request.deadline)
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _STRIPPED_REQUEST_HEADERS}

        start = time.monotonic()
        try:
            upstream = await asyncio.wait_for(
                self._client.request(
                    request.method,
                    url,
                    headers=headers,
                    content=request.body or None,
                    timeout=httpx.Timeout(timeout),
                ),
                timeout,
            )
        except (TimeoutError, httpx.TimeoutException):
            logger.error("Upstream %s timed out after %.3fs (request_id=%s)", url, timeout, request.request_id)
            exc = UpstreamTimeoutError(config.host_key, timeout)
            return self._synthesize(exc, request, Outcome.TIMEOUT, started_at=start), False
        except httpx.RequestError as err:
            logger.error("Upstream %s failed: %s (request_id=%s)", url, err, request.request_id)
            exc = UpstreamFailureError(config.host_key, "Connection failed")
            return self._synthesize(exc, request, Outcome.UPSTREAM_FAILURE, started_at=start), False

        elapsed_ms = round((time.monotonic() - start) * 1000, 2)
        success = classify_status(upstream.status_code)
        kind = None
        if not success:
            outcome, kind = Outcome.UPSTREAM_FAILURE, ErrorKind.UPSTREAM_FAILURE
        elif upstream.status_code >= 400:
            outcome, kind = Outcome.CLIENT_ERROR, ErrorKind.UPSTREAM_CLIENT_ERROR
        else:
            outcome = Outcome.SUCCESS

        logger.info(
            "Proxied %s %s → %d in %.1fms (request_id=%s)",
            request.method,
            url,
            upstream.status_code,
            elapsed_ms,
            request.request_id,
        )
        response_headers = [
            (k, v) for k, v in upstream.headers.multi_items() if k.lower() not in _STRIPPED_RESPONSE_HEADERS
        ]
        response_headers.append(("x-proxy-latency-ms", str(elapsed_ms)))
        return (
            ProxyResponse(
                status_code=upstream.status_code,
                headers=response_headers,
                body=upstream.content,
                outcome=outcome,
                kind=kind,
                elapsed_ms=elapsed_ms,
            ),
            success,
        )

    # ── Responses and events ────────────────────────────────────────

    @staticmethod
    def _synthesize(
        exc: OutboundProxyError,
        request: ProxyRequest,
        outcome: Outcome,
        extra_headers: dict[str, str] | None = None,
        started_at: float | None = None,
    ) -> ProxyResponse:
        body = StructuredErrorResponse.from_exception(exc, request.request_id)
        headers = [("content-type", "application/json")]
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers.append(("Retry-After", retry_after_header(retry_after)))
        if extra_headers:
            headers.extend(extra_headers.items())
        elapsed_ms = round((time.monotonic() - started_at) * 1000, 2) if started_at is not None else 0.0
        return ProxyResponse(
            status_code=exc.status_code,
            headers=headers,
            body=body.model_dump_json().encode(),
            outcome=outcome,
            kind=exc.kind,
            elapsed_ms=elapsed_ms,
        )

    def _emit(self, request: ProxyRequest, response: ProxyResponse, breaker_state: str | None) -> None:
        event = OutcomeEvent(
            host_key=request.host_key,
            outcome=response.outcome,
            http_status=response.status_code,
            latency_ms=response.elapsed_ms,
            breaker_state=breaker_state,
            request_id=request.request_id,
            error_kind=response.kind.value if response.kind else None,
        )
        try:
            self._emitter.emit(event)
        except Exception:
            logger.warning("Outcome emission failed for %s", request.host_key, exc_info=True)

    async def close(self) -> None:
        """Close the pooled httpx client."""
        await self._client.aclose()
