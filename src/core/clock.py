"""Time source shared by the breaker, limiter and reconciler.

Durable state is compared across independent workers, so timestamps are
epoch seconds rather than a per-process monotonic counter.  Consumers clamp
negative elapsed values to zero to absorb small clock skew between workers.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall-clock time in epoch seconds."""

    def now(self) -> float:
        return time.time()


def elapsed_since(now: float, then: float | None) -> float:
    """Seconds between *then* and *now*, never negative."""
    if then is None:
        return 0.0
    return max(0.0, now - then)
