"""Integration test configuration.

Shared fixtures for tests requiring a live Redis.
All integration tests are marked with ``@pytest.mark.integration``.
Run them with: ``INTEGRATION=1 pytest tests/integration/ -m integration``
"""

import os
import uuid

import pytest
import redis.asyncio as aioredis

from src.resilience.state_store import RedisStateStore, StateStoreClient

# ── Auto-skip when INTEGRATION env not set ──────────────────────────────────


def pytest_collection_modifyitems(config, items):
    """Auto-skip integration tests when INTEGRATION env var is not set."""
    if os.environ.get("INTEGRATION", "").lower() in ("1", "true", "yes"):
        return
    skip_marker = pytest.mark.skip(reason="Set INTEGRATION=1 to run integration tests with a live Redis")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(scope="session")
def redis_url() -> str:
    return os.environ.get("OUTBOUND_PROXY_REDIS_URL", "redis://localhost:6379")


@pytest.fixture
def key_prefix() -> str:
    """Unique namespace per test so runs never see each other's records."""
    return f"it-{uuid.uuid4().hex[:8]}"


@pytest.fixture
async def worker_clients(redis_url, key_prefix):
    """Two independent store clients, as two proxy workers would have."""
    stores = [RedisStateStore(aioredis.from_url(redis_url)) for _ in range(2)]
    clients = [StateStoreClient(store, key_prefix=key_prefix) for store in stores]
    yield clients
    for client in clients:
        await client.close()
