"""Durable per-host state with optimistic concurrency.

Every record carries an integer version.  Version ``0`` means "no record";
``compare_and_set`` succeeds only when the stored version still equals the
caller's expected version, and bumps it by one.

Backends:

    InMemoryStateStore  — single-process store for local runs and tests.
    RedisStateStore     — WATCH/MULTI/EXEC optimistic transaction.

``StateStoreClient`` wraps a backend with per-call timeouts, a last-known
state cache used while the backend is unreachable, and bounded write
retries.  It never blocks the request path for longer than its budget.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any

from redis.exceptions import RedisError, WatchError

from src.core.errors import StateStoreUnavailableError

_logger = logging.getLogger("outbound_proxy.state")

_WRITE_RETRY_BASE_DELAY: float = 0.02


@dataclass(frozen=True)
class Versioned:
    """A stored value with its CAS version.

    Attributes:
        value:   Decoded record, or ``None`` if the key has never been written.
        version: Opaque CAS token (``0`` when absent).
        stale:   True when served from the local cache because the store is down.
    """

    value: dict[str, Any] | None
    version: int
    stale: bool = False


_ABSENT = Versioned(value=None, version=0)


class StateStore(ABC):
    """Key-value store keyed by string with conditional writes."""

    @abstractmethod
    async def get(self, key: str) -> Versioned:
        """Return the current value and version for *key*."""

    @abstractmethod
    async def compare_and_set(self, key: str, expected_version: int, value: dict[str, Any]) -> bool:
        """Write *value* iff the stored version equals *expected_version*."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryStateStore(StateStore):
    """Process-local store with the same CAS contract as the durable backends."""

    def __init__(self) -> None:
        self._data: dict[str, Versioned] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Versioned:
        async with self._lock:
            return self._data.get(key, _ABSENT)

    async def compare_and_set(self, key: str, expected_version: int, value: dict[str, Any]) -> bool:
        async with self._lock:
            current = self._data.get(key, _ABSENT)
            if current.version != expected_version:
                return False
            self._data[key] = Versioned(value=dict(value), version=expected_version + 1)
            return True


class RedisStateStore(StateStore):
    """Redis-backed store.

    Each key holds a JSON document ``{"version": int, "value": {...}}``.
    Conditional writes use WATCH so a concurrent writer aborts the EXEC.

    Args:
        redis_client: A ``redis.asyncio`` client (or ``fakeredis`` in tests).
    """

    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    @staticmethod
    def _decode(raw: Any) -> Versioned:
        if raw is None:
            return _ABSENT
        doc = json.loads(raw)
        return Versioned(value=doc.get("value"), version=int(doc.get("version", 0)))

    async def get(self, key: str) -> Versioned:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            raise StateStoreUnavailableError(key, str(exc)) from exc
        return self._decode(raw)

    async def compare_and_set(self, key: str, expected_version: int, value: dict[str, Any]) -> bool:
        payload = json.dumps({"version": expected_version + 1, "value": value}, separators=(",", ":"))
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current.version != expected_version:
                    return False
                pipe.multi()
                pipe.set(key, payload)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as exc:
            raise StateStoreUnavailableError(key, str(exc)) from exc

    async def close(self) -> None:
        await self._redis.aclose()


class StateStoreClient:
    """Timeout, cache and retry wrapper around a ``StateStore``.

    Args:
        store:           Backend store.
        key_prefix:      Namespace ("table identifier") for every key.
        timeout_seconds: Budget for each backend call.
        write_retries:   Extra attempts when a write hits an unreachable store.
                         Version conflicts are returned, never retried here.
    """

    def __init__(
        self,
        store: StateStore,
        key_prefix: str = "proxy-state",
        timeout_seconds: float = 0.5,
        write_retries: int = 2,
    ) -> None:
        self._store = store
        self.key_prefix = key_prefix
        self._timeout = timeout_seconds
        self._write_retries = write_retries
        self._cache: dict[str, Versioned] = {}

    def key_for(self, kind: str, host_key: str) -> str:
        return f"{self.key_prefix}:{kind}:{host_key}"

    async def get(self, key: str) -> Versioned:
        """Read *key*; fall back to the last known value if the store is down.

        Raises:
            StateStoreUnavailableError: If the store is unreachable and
                nothing is cached for *key*.
        """
        try:
            result = await asyncio.wait_for(self._store.get(key), self._timeout)
        except (StateStoreUnavailableError, TimeoutError) as exc:
            cached = self._cache.get(key)
            if cached is None:
                _logger.warning("State store read failed for %s with no cached state: %s", key, exc)
                raise StateStoreUnavailableError(key, "read failed, no cached state") from exc
            _logger.warning("State store read failed for %s — serving cached version %d", key, cached.version)
            return replace(cached, stale=True)
        self._cache[key] = result
        return result

    async def compare_and_set(self, key: str, expected_version: int, value: dict[str, Any]) -> bool:
        """Conditionally write *value*.

        Returns ``False`` on a version conflict.  A write that times out is
        never retried blindly: it may already have committed, so the record
        is re-read to settle the outcome (see ``_settle_timed_out_write``).

        Raises:
            StateStoreUnavailableError: After ``write_retries`` extra attempts
                against an unreachable store, or when a timed-out write
                cannot be settled; the write is dropped.
        """
        attempts = 1 + self._write_retries
        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                ok = await asyncio.wait_for(
                    self._store.compare_and_set(key, expected_version, value),
                    self._timeout,
                )
            except TimeoutError as exc:
                return await self._settle_timed_out_write(key, expected_version, value, exc)
            except StateStoreUnavailableError as exc:
                last_exc = exc
                if attempt < attempts - 1:
                    await asyncio.sleep(_WRITE_RETRY_BASE_DELAY * (2**attempt))
                continue
            if ok:
                self._remember(key, expected_version, value)
            return ok

        _logger.warning("Dropping write to %s after %d attempts: %s", key, attempts, last_exc)
        raise StateStoreUnavailableError(key, "write dropped after retries") from last_exc

    async def _settle_timed_out_write(
        self,
        key: str,
        expected_version: int,
        value: dict[str, Any],
        cause: Exception,
    ) -> bool:
        """Decide whether a timed-out conditional write landed.

        Version ``expected + 1`` holding our value means it committed; the same
        version holding another value means a competing writer won.  Anything
        else (still at ``expected``, or moved further on) is ambiguous, since a
        cancelled write may yet commit, so the write is reported as dropped.
        """
        try:
            current = await asyncio.wait_for(self._store.get(key), self._timeout)
        except (StateStoreUnavailableError, TimeoutError) as exc:
            _logger.warning("Write to %s timed out and could not be re-read: %s", key, exc)
            raise StateStoreUnavailableError(key, "write outcome unknown") from exc

        if current.version == expected_version + 1:
            if current.value == value:
                self._remember(key, expected_version, value)
                return True
            self._cache[key] = current
            return False

        _logger.warning("Write to %s timed out at version %d; outcome unknown", key, current.version)
        raise StateStoreUnavailableError(key, "write outcome unknown") from cause

    def _remember(self, key: str, expected_version: int, value: dict[str, Any]) -> None:
        self._cache[key] = Versioned(value=dict(value), version=expected_version + 1)

    async def close(self) -> None:
        await self._store.close()
