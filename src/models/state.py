"""Durable per-host state records.

``HostBreakerState`` and ``HostRateLimitState`` are immutable snapshots read
from and written to the state store.  Mutations produce new records via
``dataclasses.replace``; the store assigns versions.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class HostBreakerState:
    """Breaker record for one upstream host.

    Attributes:
        host_key:                 Configured host identifier.
        state:                    Current breaker state.
        consecutive_failures:     Failures since the last success/close.
        last_failure_at:          Epoch seconds of the latest recorded failure.
        last_state_change_at:     Epoch seconds of the latest transition.
        half_open_probe_in_flight: True while the single HALF_OPEN probe is out.
        probe_started_at:         When the current probe slot was taken.
        total_failures:           Failures recorded over the record's lifetime.
    """

    host_key: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    last_state_change_at: float = 0.0
    half_open_probe_in_flight: bool = False
    probe_started_at: float | None = None
    total_failures: int = 0

    @classmethod
    def initial(cls, host_key: str, now: float) -> HostBreakerState:
        return cls(host_key=host_key, last_state_change_at=now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HostBreakerState:
        return cls(
            host_key=data["host_key"],
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            consecutive_failures=max(0, int(data.get("consecutive_failures", 0))),
            last_failure_at=data.get("last_failure_at"),
            last_state_change_at=float(data.get("last_state_change_at", 0.0)),
            half_open_probe_in_flight=bool(data.get("half_open_probe_in_flight", False)),
            probe_started_at=data.get("probe_started_at"),
            total_failures=int(data.get("total_failures", 0)),
        )


@dataclass(frozen=True)
class HostRateLimitState:
    """Token bucket record for one upstream host."""

    host_key: str
    tokens_remaining: float
    last_refill_at: float

    @classmethod
    def full(cls, host_key: str, burst_capacity: float, now: float) -> HostRateLimitState:
        return cls(host_key=host_key, tokens_remaining=burst_capacity, last_refill_at=now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HostRateLimitState:
        return cls(
            host_key=data["host_key"],
            tokens_remaining=float(data["tokens_remaining"]),
            last_refill_at=float(data["last_refill_at"]),
        )
