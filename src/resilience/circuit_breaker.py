"""Store-backed circuit breaker, one state machine per upstream host.

    CLOSED    →  (failure_threshold consecutive failures)  →  OPEN
    OPEN      →  (cooldown elapsed, next admission check)  →  HALF_OPEN
    HALF_OPEN →  (probe succeeds)                          →  CLOSED
    HALF_OPEN →  (probe fails)                             →  OPEN

The transition rules are pure functions (``decide``, ``apply_outcome``,
``cooled_half_open``) over ``HostBreakerState`` records.  ``CircuitBreaker``
does the I/O: every mutation is a read-modify-write applied with
compare-and-set against the record's version, retried a bounded number of
times on conflict.  Workers share no memory; the store is the only
coordination point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from src.core.clock import Clock, SystemClock, elapsed_since
from src.core.config import HostConfig
from src.core.errors import StateStoreUnavailableError
from src.models.state import CircuitState, HostBreakerState
from src.resilience.state_store import StateStoreClient, Versioned

logger = logging.getLogger(__name__)

BREAKER_KIND = "breaker"


class Verdict(str, Enum):
    ALLOW = "allow"
    PROBE = "probe"
    REJECT = "reject"


@dataclass(frozen=True)
class Decision:
    """Result of an admission check.

    Attributes:
        verdict:     Whether the request may proceed, and as what.
        state:       Record to persist when ``changed`` (else the input record).
        changed:     True when the decision requires a write.
        retry_after: Seconds until admission may succeed (rejections only).
    """

    verdict: Verdict
    state: HostBreakerState
    changed: bool = False
    retry_after: float = 0.0


@dataclass(frozen=True)
class Admission:
    """What ``CircuitBreaker.allow`` tells the proxy handler."""

    allowed: bool
    probe: bool
    state: CircuitState
    retry_after: float = 0.0


# ── Pure transition rules ───────────────────────────────────────────────


def classify_status(status_code: int) -> bool:
    """Return True when *status_code* is a success from the breaker's view.

    4xx responses are completed deliveries; only 5xx count as failures.
    """
    return status_code < 500


def decide(state: HostBreakerState, now: float, config: HostConfig) -> Decision:
    """Admission decision for one request against *state*."""
    if state.state == CircuitState.CLOSED:
        return Decision(Verdict.ALLOW, state)

    cooldown = config.cooldown_seconds

    if state.state == CircuitState.OPEN:
        elapsed = elapsed_since(now, state.last_state_change_at)
        if elapsed < cooldown:
            return Decision(Verdict.REJECT, state, retry_after=cooldown - elapsed)
        probing = replace(
            state,
            state=CircuitState.HALF_OPEN,
            last_state_change_at=now,
            half_open_probe_in_flight=True,
            probe_started_at=now,
        )
        return Decision(Verdict.PROBE, probing, changed=True)

    # HALF_OPEN
    if state.half_open_probe_in_flight:
        held_since = state.probe_started_at if state.probe_started_at is not None else state.last_state_change_at
        held = elapsed_since(now, held_since)
        if held < cooldown:
            return Decision(Verdict.REJECT, state, retry_after=cooldown - held)
        # Probe holder never reported back; take the slot over.
    probing = replace(state, half_open_probe_in_flight=True, probe_started_at=now)
    return Decision(Verdict.PROBE, probing, changed=True)


def apply_outcome(
    state: HostBreakerState,
    success: bool,
    was_probe: bool,
    now: float,
    config: HostConfig,
) -> HostBreakerState:
    """Return the record after recording one call outcome.

    Returns *state* unchanged when the outcome has no effect, e.g. a late
    outcome from a request admitted before the host went OPEN.
    """
    if state.state == CircuitState.OPEN:
        return state

    if state.state == CircuitState.HALF_OPEN:
        if not was_probe:
            return state
        if success:
            return _closed(state, now)
        return replace(
            state,
            state=CircuitState.OPEN,
            consecutive_failures=state.consecutive_failures + 1,
            last_failure_at=now,
            last_state_change_at=now,
            half_open_probe_in_flight=False,
            probe_started_at=None,
            total_failures=state.total_failures + 1,
        )

    # CLOSED
    if success:
        if state.consecutive_failures == 0:
            return state
        return replace(state, consecutive_failures=0)

    failures = state.consecutive_failures + 1
    updated = replace(
        state,
        consecutive_failures=failures,
        last_failure_at=now,
        total_failures=state.total_failures + 1,
    )
    if failures >= config.failure_threshold:
        updated = replace(updated, state=CircuitState.OPEN, last_state_change_at=now)
    return updated


def cooled_half_open(state: HostBreakerState, now: float, config: HostConfig) -> HostBreakerState | None:
    """OPEN → HALF_OPEN once the cooldown has elapsed, without taking the probe slot."""
    if state.state != CircuitState.OPEN:
        return None
    if elapsed_since(now, state.last_state_change_at) < config.cooldown_seconds:
        return None
    return replace(
        state,
        state=CircuitState.HALF_OPEN,
        last_state_change_at=now,
        half_open_probe_in_flight=False,
        probe_started_at=None,
    )


def _closed(state: HostBreakerState, now: float) -> HostBreakerState:
    return replace(
        state,
        state=CircuitState.CLOSED,
        consecutive_failures=0,
        last_state_change_at=now,
        half_open_probe_in_flight=False,
        probe_started_at=None,
    )


# ── Store-backed breaker ────────────────────────────────────────────────


class CircuitBreaker:
    """Per-host circuit breaker over a shared ``StateStoreClient``.

    Args:
        store:       Wrapped state store.
        clock:       Time source (epoch seconds).
        cas_retries: Extra read-modify-write attempts after a version conflict.
    """

    def __init__(self, store: StateStoreClient, clock: Clock | None = None, cas_retries: int = 3) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._cas_retries = cas_retries

    async def _load(self, host_key: str, now: float) -> tuple[HostBreakerState, Versioned]:
        versioned = await self._store.get(self._store.key_for(BREAKER_KIND, host_key))
        if versioned.value is None:
            return HostBreakerState.initial(host_key, now), versioned
        return HostBreakerState.from_dict(versioned.value), versioned

    async def _write(self, host_key: str, versioned: Versioned, state: HostBreakerState) -> bool:
        key = self._store.key_for(BREAKER_KIND, host_key)
        return await self._store.compare_and_set(key, versioned.version, state.to_dict())

    # ── Request path ────────────────────────────────────────────────

    async def allow(self, config: HostConfig, now: float | None = None) -> Admission:
        """Admission check; may take the HALF_OPEN probe slot.

        Fails toward denial: with no readable or cached state the host is
        treated as OPEN.
        """
        now = self._clock.now() if now is None else now
        host_key = config.host_key

        for _ in range(1 + self._cas_retries):
            try:
                state, versioned = await self._load(host_key, now)
            except StateStoreUnavailableError:
                logger.warning("Breaker state unavailable for %s — treating as OPEN", host_key)
                return Admission(False, False, CircuitState.OPEN, retry_after=config.cooldown_seconds)

            decision = decide(state, now, config)
            if not decision.changed:
                return Admission(
                    allowed=decision.verdict == Verdict.ALLOW,
                    probe=False,
                    state=state.state,
                    retry_after=decision.retry_after,
                )

            try:
                won = await self._write(host_key, versioned, decision.state)
            except StateStoreUnavailableError:
                logger.warning("Could not persist probe slot for %s — rejecting", host_key)
                return Admission(False, False, state.state, retry_after=config.cooldown_seconds)

            if won:
                if state.state == CircuitState.OPEN:
                    logger.info("Circuit for %s: OPEN → HALF_OPEN (probe admitted)", host_key)
                return Admission(True, True, CircuitState.HALF_OPEN)

            logger.debug("Probe slot CAS conflict for %s, re-reading", host_key)

        logger.warning("Probe slot for %s still contended after %d attempts", host_key, 1 + self._cas_retries)
        return Admission(False, False, CircuitState.HALF_OPEN, retry_after=1.0)

    async def record_outcome(
        self,
        config: HostConfig,
        success: bool,
        was_probe: bool = False,
        now: float | None = None,
    ) -> CircuitState | None:
        """Record one call outcome; return the resulting state.

        Returns ``None`` when the outcome could not be persisted (store down
        or CAS retries exhausted).  Never raises for store problems.
        """
        now = self._clock.now() if now is None else now
        host_key = config.host_key

        for _ in range(1 + self._cas_retries):
            try:
                state, versioned = await self._load(host_key, now)
            except StateStoreUnavailableError:
                logger.warning("Dropping outcome for %s — breaker state unavailable", host_key)
                return None

            updated = apply_outcome(state, success, was_probe, now, config)
            if updated == state:
                return state.state

            try:
                written = await self._write(host_key, versioned, updated)
            except StateStoreUnavailableError:
                logger.warning("Dropping outcome for %s — write failed", host_key)
                return None

            if written:
                self._log_transition(host_key, state, updated)
                return updated.state

            logger.debug("Outcome CAS conflict for %s, re-reading", host_key)

        logger.warning("Outcome for %s not recorded after %d CAS conflicts", host_key, 1 + self._cas_retries)
        return None

    # ── Maintenance ─────────────────────────────────────────────────

    async def reconcile(self, config: HostConfig, now: float | None = None) -> bool:
        """Flip a cooled-down OPEN host to HALF_OPEN.  Single attempt; a lost race is harmless."""
        now = self._clock.now() if now is None else now
        try:
            state, versioned = await self._load(config.host_key, now)
            updated = cooled_half_open(state, now, config)
            if updated is None or versioned.stale:
                return False
            written = await self._write(config.host_key, versioned, updated)
        except StateStoreUnavailableError:
            logger.warning("Reconcile skipped for %s — state store unavailable", config.host_key)
            return False
        if written:
            self._log_transition(config.host_key, state, updated)
        return written

    async def reset(self, host_key: str) -> HostBreakerState | None:
        """Administrative reset to a fresh CLOSED record.

        Raises:
            StateStoreUnavailableError: If the store cannot be reached.
        """
        now = self._clock.now()
        fresh = HostBreakerState.initial(host_key, now)
        for _ in range(1 + self._cas_retries):
            _, versioned = await self._load(host_key, now)
            if await self._write(host_key, versioned, fresh):
                logger.info("Circuit for %s manually reset", host_key)
                return fresh
        return None

    async def status(self, host_key: str) -> tuple[HostBreakerState, bool]:
        """Return the current record and whether it came from the stale cache."""
        state, versioned = await self._load(host_key, self._clock.now())
        return state, versioned.stale

    @staticmethod
    def _log_transition(host_key: str, before: HostBreakerState, after: HostBreakerState) -> None:
        if before.state == after.state:
            return
        if after.state == CircuitState.OPEN:
            logger.warning(
                "Circuit for %s: %s → OPEN (consecutive failures=%d)",
                host_key,
                before.state.value,
                after.consecutive_failures,
            )
        else:
            logger.info("Circuit for %s: %s → %s", host_key, before.state.value, after.state.value)
