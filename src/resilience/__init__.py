"""Resilience patterns — store-backed circuit breaker and token bucket.

Protects calls to flaky or rate-limited upstream hosts.  All per-host state
lives in a shared store with compare-and-set writes so that independent
proxy workers agree on admit/reject decisions.
"""

from src.resilience.circuit_breaker import (
    Admission,
    CircuitBreaker,
    Decision,
    apply_outcome,
    classify_status,
    decide,
)
from src.resilience.rate_limiter import RateDecision, RateLimiter
from src.resilience.reconciler import Reconciler
from src.resilience.state_store import (
    InMemoryStateStore,
    RedisStateStore,
    StateStore,
    StateStoreClient,
    Versioned,
)

__all__ = [
    "Admission",
    "CircuitBreaker",
    "Decision",
    "InMemoryStateStore",
    "RateDecision",
    "RateLimiter",
    "Reconciler",
    "RedisStateStore",
    "StateStore",
    "StateStoreClient",
    "Versioned",
    "apply_outcome",
    "classify_status",
    "decide",
]
