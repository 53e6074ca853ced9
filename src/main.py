"""FastAPI application entrypoint.

Wires the state store, rate limiter, circuit breaker, proxy handler and
reconciler together and exposes:

    GET  /health                      service health
    GET  /breakers                    breaker/bucket status per host
    POST /breakers/{host_key}/reset   administrative reset
    *    /proxy/{host_key}/{path}     outbound proxy (or X-Proxy-Host header)
    *    {mapped_path_prefix}/{path}  outbound proxy for hosts mapped outside /proxy
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from src.core.clock import Clock
from src.core.config import Settings
from src.core.errors import StateStoreUnavailableError, StructuredErrorResponse, UnknownHostError
from src.host_registry import HostRegistry
from src.models.schemas import BreakerStatus, BreakerStatusList, HealthResponse
from src.models.state import HostBreakerState
from src.observability.outcomes import JsonlOutcomeEmitter, LoggingOutcomeEmitter
from src.proxy_handler import PROXY_ROUTE_PREFIX, ProxyHandler, ProxyRequest
from src.resilience.circuit_breaker import CircuitBreaker
from src.resilience.rate_limiter import RateLimiter
from src.resilience.reconciler import Reconciler
from src.resilience.state_store import InMemoryStateStore, RedisStateStore, StateStore, StateStoreClient

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).parent.parent

_PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _build_state_store(settings: Settings) -> StateStore:
    if settings.STATE_BACKEND == "memory":
        logger.warning("Using in-memory state store — breaker state is not shared between workers")
        return InMemoryStateStore()

    import redis.asyncio as aioredis

    return RedisStateStore(aioredis.from_url(settings.REDIS_URL))


def _resolve_hosts_path(settings: Settings) -> Path:
    path = Path(settings.HOSTS_CONFIG_PATH)
    if not path.is_absolute() and not path.exists():
        path = _REPO_ROOT / path
    return path


def _status_entry(state: HostBreakerState, stale: bool, tokens: float | None) -> BreakerStatus:
    return BreakerStatus(
        host_key=state.host_key,
        state=state.state.value,
        consecutive_failures=state.consecutive_failures,
        last_failure_at=state.last_failure_at,
        last_state_change_at=state.last_state_change_at,
        half_open_probe_in_flight=state.half_open_probe_in_flight,
        total_failures=state.total_failures,
        tokens_remaining=tokens,
        stale=stale,
    )


def _error_response(exc: Exception, request: Request, status_code: int) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "")
    body = StructuredErrorResponse.from_exception(exc, request_id)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    settings: Settings | None = None,
    *,
    hosts: HostRegistry | None = None,
    store: StateStore | None = None,
    client: httpx.AsyncClient | None = None,
    emitter: LoggingOutcomeEmitter | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the application; every collaborator can be injected for tests."""
    settings = settings or Settings()
    hosts = hosts or HostRegistry.from_yaml(_resolve_hosts_path(settings))
    store_client = StateStoreClient(
        store or _build_state_store(settings),
        key_prefix=settings.STATE_KEY_PREFIX,
        timeout_seconds=settings.STATE_STORE_TIMEOUT_SECONDS,
        write_retries=settings.STATE_STORE_WRITE_RETRIES,
    )
    if emitter is None:
        emitter = JsonlOutcomeEmitter(settings.OUTCOME_LOG_PATH) if settings.OUTCOME_LOG_PATH else LoggingOutcomeEmitter()

    rate_limiter = RateLimiter(store_client, clock, cas_retries=settings.CAS_MAX_RETRIES)
    breaker = CircuitBreaker(store_client, clock, cas_retries=settings.CAS_MAX_RETRIES)
    handler = ProxyHandler(hosts, rate_limiter, breaker, emitter, client)
    reconciler = Reconciler(hosts, breaker, emitter, interval_seconds=settings.RECONCILE_INTERVAL_SECONDS)
    start_time = time.monotonic()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if settings.RECONCILER_ENABLED:
            reconciler.start()
        logger.info("%s serving %d upstream host(s)", settings.SERVICE_NAME, hosts.host_count)
        yield
        reconciler.stop()
        await emitter.drain()
        await handler.close()
        await store_client.close()

    app = FastAPI(title=settings.SERVICE_NAME, version=settings.SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.hosts = hosts
    app.state.handler = handler
    app.state.breaker = breaker
    app.state.rate_limiter = rate_limiter
    app.state.reconciler = reconciler

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Return service health with name, version, status, and uptime."""
        return HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status="healthy",
            uptime_seconds=round(time.monotonic() - start_time, 2),
            hosts=hosts.host_count,
        )

    @app.get("/breakers", response_model=BreakerStatusList)
    async def breakers() -> BreakerStatusList:
        """Breaker and token bucket status for every configured host."""
        entries = []
        for config in hosts.list_all():
            try:
                state, stale = await breaker.status(config.host_key)
            except StateStoreUnavailableError:
                unknown = _status_entry(HostBreakerState(host_key=config.host_key), True, None)
                entries.append(unknown.model_copy(update={"state": "UNKNOWN"}))
                continue
            entries.append(_status_entry(state, stale, await rate_limiter.peek(config)))
        return BreakerStatusList(breakers=entries)

    @app.post("/breakers/{host_key}/reset", response_model=BreakerStatus)
    async def reset_breaker(host_key: str, request: Request):
        """Administrative reset of one host's breaker to CLOSED."""
        if hosts.get(host_key) is None:
            return _error_response(UnknownHostError(host_key), request, 404)
        try:
            fresh = await breaker.reset(host_key)
        except StateStoreUnavailableError as exc:
            return _error_response(exc, request, 503)
        if fresh is None:
            return JSONResponse(
                status_code=409,
                content={"error": f"Reset of '{host_key}' lost to concurrent writers", "code": "CONFLICT"},
            )
        return _status_entry(fresh, False, None)

    async def proxy(request: Request) -> Response:
        """Forward any method to the upstream host selected by header or path."""
        path = request.url.path
        header_host = request.headers.get("X-Proxy-Host")
        if header_host:
            host_key = header_host
            if path.startswith(PROXY_ROUTE_PREFIX + "/"):
                path = path[len(PROXY_ROUTE_PREFIX) :]
        else:
            matched = hosts.match_path(path)
            host_key = matched.host_key if matched else _route_host_key(path)

        result = await handler.handle(
            ProxyRequest(
                host_key=host_key,
                method=request.method,
                path=path,
                headers=dict(request.headers),
                body=await request.body(),
                query=request.url.query,
                deadline=_deadline_from(request, settings),
                request_id=getattr(request.state, "request_id", ""),
            )
        )
        response = Response(content=result.body, status_code=result.status_code)
        for name, value in result.headers:
            response.headers.append(name, value)
        return response

    app.add_api_route(f"{PROXY_ROUTE_PREFIX}/{{proxy_path:path}}", proxy, methods=_PROXY_METHODS)
    for prefix in _mounted_prefixes(hosts):
        app.add_api_route(prefix, proxy, methods=_PROXY_METHODS)
        app.add_api_route(f"{prefix}/{{proxy_path:path}}", proxy, methods=_PROXY_METHODS)

    return app


def _route_host_key(path: str) -> str:
    """Host key from the first segment after ``/proxy/``."""
    if not path.startswith(PROXY_ROUTE_PREFIX + "/"):
        return ""
    return path[len(PROXY_ROUTE_PREFIX) + 1 :].split("/", 1)[0]


def _mounted_prefixes(hosts: HostRegistry) -> list[str]:
    """Mapped prefixes that need their own routes (outside ``/proxy``)."""
    prefixes = set()
    for config in hosts.list_all():
        prefix = config.mapped_path_prefix
        if prefix == "/" or prefix == PROXY_ROUTE_PREFIX or prefix.startswith(PROXY_ROUTE_PREFIX + "/"):
            continue
        prefixes.add(prefix)
    return sorted(prefixes)


def _deadline_from(request: Request, settings: Settings) -> float:
    """Absolute monotonic deadline from ``X-Request-Deadline-Ms`` or the default budget."""
    budget = settings.DEFAULT_DEADLINE_SECONDS
    raw = request.headers.get("X-Request-Deadline-Ms")
    if raw:
        try:
            budget = max(0.0, float(raw) / 1000.0)
        except ValueError:
            logger.warning("Ignoring malformed X-Request-Deadline-Ms header: %r", raw)
    return time.monotonic() + budget


def main() -> None:
    """Run the service under uvicorn."""
    import uvicorn

    settings = Settings()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT)
