"""Periodic sweep that moves cooled-down OPEN hosts to HALF_OPEN.

Idle hosts would otherwise stay OPEN in the store until their next request,
which leaves dashboards showing a stale state.  Admission never depends on
the sweep: ``CircuitBreaker.allow`` re-checks the cooldown on every request.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.host_registry import HostRegistry
from src.models.state import CircuitState
from src.observability.outcomes import LoggingOutcomeEmitter, Outcome, OutcomeEvent
from src.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

_JOB_ID = "breaker_reconcile"


class Reconciler:
    """Sweep every configured host on a fixed interval.

    Args:
        hosts:            Registry of configured upstream hosts.
        breaker:          Store-backed circuit breaker.
        emitter:          Receives one ``reconciled`` event per transition.
        interval_seconds: Sweep period.
    """

    def __init__(
        self,
        hosts: HostRegistry,
        breaker: CircuitBreaker,
        emitter: LoggingOutcomeEmitter | None = None,
        interval_seconds: float = 60.0,
    ) -> None:
        self._hosts = hosts
        self._breaker = breaker
        self._emitter = emitter or LoggingOutcomeEmitter()
        self.interval_seconds = interval_seconds
        self._scheduler: AsyncIOScheduler | None = None

    async def sweep(self) -> list[str]:
        """Run one pass; return the host keys moved to HALF_OPEN."""
        transitioned: list[str] = []
        for config in self._hosts.list_all():
            if await self._breaker.reconcile(config):
                transitioned.append(config.host_key)
                self._emitter.emit(
                    OutcomeEvent(
                        host_key=config.host_key,
                        outcome=Outcome.RECONCILED,
                        breaker_state=CircuitState.HALF_OPEN.value,
                    )
                )
        if transitioned:
            logger.info("Reconciler moved %d host(s) to HALF_OPEN: %s", len(transitioned), ", ".join(transitioned))
        return transitioned

    def start(self) -> None:
        """Start the scheduled sweep on the running event loop."""
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Reconciler started (every %.0fs over %d hosts)", self.interval_seconds, self._hosts.host_count)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Reconciler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None
