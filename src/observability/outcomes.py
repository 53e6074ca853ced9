"""Outcome events for dashboards and alarms.

Every proxied request (and every reconciler transition) produces one
``OutcomeEvent`` of shape ``{host_key, outcome, http_status, latency_ms,
breaker_state, error_kind}``.  Emitters are best-effort: ``emit`` never
blocks and never raises into the request path.

    LoggingOutcomeEmitter  — one structured log line per event.
    JsonlOutcomeEmitter    — additionally appends JSONL in a background task.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import aiofiles

_outcome_logger = logging.getLogger("outbound_proxy.outcomes")


class Outcome(str, enum.Enum):
    """What happened to one request, from the proxy's point of view."""

    SUCCESS = "success"
    CLIENT_ERROR = "client_error"
    UPSTREAM_FAILURE = "upstream_failure"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN_HOST = "unknown_host"
    RECONCILED = "reconciled"


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class OutcomeEvent:
    """Structured outcome record consumed by the observability collaborator."""

    host_key: str
    outcome: Outcome
    http_status: int | None = None
    latency_ms: float = 0.0
    breaker_state: str | None = None
    request_id: str = ""
    error_kind: str | None = None
    timestamp: str = field(default_factory=_utc_now)

    def to_json(self) -> str:
        """Serialize to a single-line JSON string (JSONL-safe)."""
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return json.dumps(data, separators=(",", ":"), default=str)


class LoggingOutcomeEmitter:
    """Emit outcome events as log lines on ``outbound_proxy.outcomes``."""

    def emit(self, event: OutcomeEvent) -> None:
        level = logging.INFO if event.outcome in (Outcome.SUCCESS, Outcome.CLIENT_ERROR) else logging.WARNING
        _outcome_logger.log(
            level,
            "OUTCOME host=%s outcome=%s status=%s latency_ms=%.1f breaker=%s kind=%s request_id=%s",
            event.host_key,
            event.outcome.value,
            event.http_status,
            event.latency_ms,
            event.breaker_state,
            event.error_kind,
            event.request_id,
        )

    async def drain(self) -> None:
        """Wait for pending background writes (none for log-only)."""


class JsonlOutcomeEmitter(LoggingOutcomeEmitter):
    """Log each event and append it to a JSONL file without blocking the caller."""

    def __init__(self, log_path: str = "logs/outcomes.jsonl") -> None:
        self.log_path = log_path
        self._pending: set[asyncio.Task] = set()

    def emit(self, event: OutcomeEvent) -> None:
        super().emit(event)
        try:
            task = asyncio.get_running_loop().create_task(self._append(event))
        except RuntimeError:
            _outcome_logger.warning("No running event loop — outcome for %s not written", event.host_key)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _append(self, event: OutcomeEvent) -> None:
        try:
            path = Path(self.log_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "a") as f:
                await f.write(event.to_json() + "\n")
        except OSError:
            _outcome_logger.warning("Could not append outcome event to %s", self.log_path, exc_info=True)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
