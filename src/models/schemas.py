"""Response models for the proxy's own endpoints."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: str
    uptime_seconds: float
    hosts: int


class BreakerStatus(BaseModel):
    """Breaker and bucket snapshot for one configured host."""

    host_key: str
    state: str
    consecutive_failures: int
    last_failure_at: float | None = None
    last_state_change_at: float
    half_open_probe_in_flight: bool
    total_failures: int
    tokens_remaining: float | None = None
    stale: bool = False


class BreakerStatusList(BaseModel):
    """Response model for GET /breakers."""

    breakers: list[BreakerStatus]
