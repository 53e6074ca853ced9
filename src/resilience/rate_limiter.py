"""Store-backed token bucket, one bucket per upstream host.

Each admission check refills the bucket by ``elapsed * rate_per_second``
(capped at ``burst_capacity``) and takes one token if at least one is
available.  Buckets live in the shared state store so that every proxy
worker draws from the same budget.

The limiter fails toward permissiveness: if the store cannot be read or
written, the call is allowed and a warning is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from src.core.clock import Clock, SystemClock, elapsed_since
from src.core.config import HostConfig
from src.core.errors import StateStoreUnavailableError
from src.models.state import HostRateLimitState
from src.resilience.state_store import StateStoreClient, Versioned

logger = logging.getLogger(__name__)

RATE_KIND = "rate"


@dataclass(frozen=True)
class RateDecision:
    """Outcome of ``RateLimiter.try_acquire``.

    Attributes:
        allowed:          Whether a token was taken.
        tokens_remaining: Bucket level after the check.
        retry_after:      Seconds until one token is available (denials only).
        degraded:         True when the decision was made without the store.
    """

    allowed: bool
    tokens_remaining: float
    retry_after: float = 0.0
    degraded: bool = False


def refill(state: HostRateLimitState, now: float, config: HostConfig) -> HostRateLimitState:
    """Top the bucket up for the time elapsed since the last refill."""
    elapsed = elapsed_since(now, state.last_refill_at)
    current = min(max(0.0, state.tokens_remaining), config.burst_capacity)
    tokens = min(config.burst_capacity, current + elapsed * config.rate_per_second)
    return replace(state, tokens_remaining=tokens, last_refill_at=max(now, state.last_refill_at))


def try_take(state: HostRateLimitState, now: float, config: HostConfig) -> tuple[HostRateLimitState, bool]:
    """Refill, then take one token if available."""
    refilled = refill(state, now, config)
    if refilled.tokens_remaining >= 1.0:
        return replace(refilled, tokens_remaining=refilled.tokens_remaining - 1.0), True
    return refilled, False


def time_to_next_token(tokens_remaining: float, config: HostConfig) -> float:
    return max(0.0, (1.0 - tokens_remaining) / config.rate_per_second)


class RateLimiter:
    """Per-host token bucket over a shared ``StateStoreClient``.

    Args:
        store:       Wrapped state store.
        clock:       Time source (epoch seconds).
        cas_retries: Extra attempts after a version conflict.
    """

    def __init__(self, store: StateStoreClient, clock: Clock | None = None, cas_retries: int = 3) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._cas_retries = cas_retries

    async def _load(self, config: HostConfig, now: float) -> tuple[HostRateLimitState, Versioned]:
        versioned = await self._store.get(self._store.key_for(RATE_KIND, config.host_key))
        if versioned.value is None:
            return HostRateLimitState.full(config.host_key, config.burst_capacity, now), versioned
        return HostRateLimitState.from_dict(versioned.value), versioned

    async def try_acquire(self, config: HostConfig, now: float | None = None) -> RateDecision:
        """Take one token for *config*'s host, or report how long to wait."""
        now = self._clock.now() if now is None else now
        host_key = config.host_key
        key = self._store.key_for(RATE_KIND, host_key)
        taken = None

        for _ in range(1 + self._cas_retries):
            try:
                bucket, versioned = await self._load(config, now)
            except StateStoreUnavailableError:
                logger.warning("Rate-limit state unavailable for %s — allowing", host_key)
                return RateDecision(True, 0.0, degraded=True)

            taken, allowed = try_take(bucket, now, config)
            if not allowed:
                return RateDecision(
                    False,
                    taken.tokens_remaining,
                    retry_after=time_to_next_token(taken.tokens_remaining, config),
                )

            try:
                written = await self._store.compare_and_set(key, versioned.version, taken.to_dict())
            except StateStoreUnavailableError:
                logger.warning("Rate-limit write failed for %s — allowing", host_key)
                return RateDecision(True, taken.tokens_remaining, degraded=True)

            if written:
                return RateDecision(True, taken.tokens_remaining)

            logger.debug("Token bucket CAS conflict for %s, re-reading", host_key)

        logger.warning("Token bucket for %s contended after %d attempts — allowing", host_key, 1 + self._cas_retries)
        return RateDecision(True, taken.tokens_remaining if taken else 0.0, degraded=True)

    async def peek(self, config: HostConfig) -> float | None:
        """Current bucket level without taking a token; ``None`` if unreadable."""
        now = self._clock.now()
        try:
            bucket, _ = await self._load(config, now)
        except StateStoreUnavailableError:
            return None
        return refill(bucket, now, config).tokens_remaining
