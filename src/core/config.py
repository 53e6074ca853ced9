"""Settings and per-host configuration.

Service-level settings are loaded from environment variables with the
``OUTBOUND_PROXY_`` prefix.  Per-host limits live in ``HostConfig`` records
which are read once at startup (see ``src.host_registry``) and injected into
every component; nothing reads the environment at request time.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Outbound proxy configuration.

    All fields can be overridden by environment variables prefixed with
    ``OUTBOUND_PROXY_``.  For example, ``OUTBOUND_PROXY_PORT=9999`` overrides
    the default port.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "outbound-proxy"
    SERVICE_VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8090

    # ── Durable state ───────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379"
    STATE_BACKEND: str = "redis"  # "redis" or "memory"
    STATE_KEY_PREFIX: str = "proxy-state"  # Table identifier; keys are {prefix}:{kind}:{host}
    STATE_STORE_TIMEOUT_SECONDS: float = 0.5
    STATE_STORE_WRITE_RETRIES: int = 2  # Extra attempts when the store is unreachable
    CAS_MAX_RETRIES: int = 3  # Extra attempts on version conflicts

    # ── Hosts ───────────────────────────────────────────────────────
    HOSTS_CONFIG_PATH: str = "config/hosts.yaml"
    DEFAULT_DEADLINE_SECONDS: float = 30.0

    # ── Reconciler ──────────────────────────────────────────────────
    RECONCILER_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: float = 60.0

    # ── Outcome events ──────────────────────────────────────────────
    OUTCOME_LOG_PATH: str = ""  # Empty = log-only emitter

    model_config = {
        "env_prefix": "OUTBOUND_PROXY_",
    }


class HostConfig(BaseModel):
    """Static limits for one upstream host.

    Immutable once loaded.  ``mapped_path_prefix`` is the inbound path prefix
    that is stripped before the request is forwarded to ``egress_base_url``.
    """

    model_config = ConfigDict(frozen=True)

    host_key: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9._-]+$")
    egress_base_url: str = Field(..., min_length=1)
    mapped_path_prefix: str = ""
    failure_threshold: int = Field(default=5, ge=1)
    latency_threshold_ms: int = Field(default=5000, ge=1)
    cooldown_seconds: float = Field(default=60.0, gt=0)
    rate_per_second: float = Field(default=10.0, gt=0)
    burst_capacity: float = Field(default=10.0, ge=1)

    @field_validator("egress_base_url")
    @classmethod
    def _check_egress(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")

    @model_validator(mode="before")
    @classmethod
    def _default_prefix(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("mapped_path_prefix") and data.get("host_key"):
            data = {**data, "mapped_path_prefix": f"/proxy/{data['host_key']}"}
        return data

    @field_validator("mapped_path_prefix")
    @classmethod
    def _check_prefix(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"mapped_path_prefix must start with '/': {v!r}")
        return v.rstrip("/") or "/"

    @property
    def latency_threshold_seconds(self) -> float:
        return self.latency_threshold_ms / 1000.0
