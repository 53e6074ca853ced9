"""Shared fixtures for unit tests.

Provides a controllable clock, store wrappers that simulate outages and
interleaved writers, and a recording outcome emitter.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from src.core.config import HostConfig
from src.core.errors import StateStoreUnavailableError
from src.resilience.state_store import InMemoryStateStore, StateStoreClient, Versioned


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FlakyStore(InMemoryStateStore):
    """In-memory store that can be switched off, counting backend calls."""

    def __init__(self) -> None:
        super().__init__()
        self.down = False
        self.gets = 0
        self.writes = 0

    async def get(self, key: str) -> Versioned:
        self.gets += 1
        if self.down:
            raise StateStoreUnavailableError(key, "connection refused")
        return await super().get(key)

    async def compare_and_set(self, key: str, expected_version: int, value: dict[str, Any]) -> bool:
        self.writes += 1
        if self.down:
            raise StateStoreUnavailableError(key, "connection refused")
        return await super().compare_and_set(key, expected_version, value)


class InterleavingStore(InMemoryStateStore):
    """Runs a competing writer just before the first conditional write.

    Simulates a second worker that reads and writes the same record between
    this worker's read and its compare-and-set.
    """

    def __init__(self) -> None:
        super().__init__()
        self.competitor: Callable[[], Awaitable[Any]] | None = None
        self.conflicts = 0

    async def compare_and_set(self, key: str, expected_version: int, value: dict[str, Any]) -> bool:
        if self.competitor is not None:
            competitor, self.competitor = self.competitor, None
            await competitor()
        ok = await super().compare_and_set(key, expected_version, value)
        if not ok:
            self.conflicts += 1
        return ok


class StallingStore(InMemoryStateStore):
    """Store whose conditional writes hang past any client timeout.

    With ``commit_first`` the write lands before the stall, as when a reply
    is lost after the backend has applied it; otherwise it never lands.
    """

    def __init__(self, commit_first: bool = True, stall: float = 1.0) -> None:
        super().__init__()
        self.commit_first = commit_first
        self.stall = stall
        self.writes = 0

    async def compare_and_set(self, key: str, expected_version: int, value: dict[str, Any]) -> bool:
        self.writes += 1
        if self.commit_first:
            ok = await super().compare_and_set(key, expected_version, value)
            await asyncio.sleep(self.stall)
            return ok
        await asyncio.sleep(self.stall)
        return await super().compare_and_set(key, expected_version, value)


class RecordingEmitter:
    """Collects outcome events in memory."""

    def __init__(self) -> None:
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)

    async def drain(self) -> None:
        return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def store_client(flaky_store: FlakyStore) -> StateStoreClient:
    return StateStoreClient(flaky_store, key_prefix="test", timeout_seconds=0.5, write_retries=1)


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def hmrc_config() -> HostConfig:
    return HostConfig(
        host_key="hmrc",
        egress_base_url="https://api.service.hmrc.gov.uk",
        failure_threshold=5,
        latency_threshold_ms=2000,
        cooldown_seconds=60,
        rate_per_second=100,
        burst_capacity=100,
    )


@pytest.fixture
def interleaving_store() -> InterleavingStore:
    return InterleavingStore()


@pytest.fixture
def stalling_store() -> StallingStore:
    return StallingStore()
