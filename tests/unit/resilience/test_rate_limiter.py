"""Tests for the store-backed token bucket.

Covers burst admission, refill over time, bucket bounds, clock skew,
fail-open behaviour when the store is unreachable, and CAS contention.
"""

import random

import pytest

from src.core.config import HostConfig
from src.models.state import HostRateLimitState
from src.resilience.rate_limiter import RateLimiter, refill, time_to_next_token, try_take
from src.resilience.state_store import StateStoreClient

NOW = 1_700_000_000.0


@pytest.fixture
def config() -> HostConfig:
    return HostConfig(
        host_key="hmrc",
        egress_base_url="https://api.service.hmrc.gov.uk",
        rate_per_second=2,
        burst_capacity=2,
    )


@pytest.fixture
def limiter(store_client, clock) -> RateLimiter:
    return RateLimiter(store_client, clock, cas_retries=3)


class TestBucketMath:
    def test_refill_caps_at_burst(self, config):
        bucket = HostRateLimitState("hmrc", tokens_remaining=0.0, last_refill_at=NOW)
        assert refill(bucket, NOW + 100, config).tokens_remaining == 2.0

    def test_refill_is_proportional(self, config):
        bucket = HostRateLimitState("hmrc", tokens_remaining=0.0, last_refill_at=NOW)
        assert refill(bucket, NOW + 0.25, config).tokens_remaining == pytest.approx(0.5)

    def test_negative_elapsed_is_clamped(self, config):
        bucket = HostRateLimitState("hmrc", tokens_remaining=0.5, last_refill_at=NOW)
        refilled = refill(bucket, NOW - 10, config)
        assert refilled.tokens_remaining == 0.5
        assert refilled.last_refill_at == NOW

    def test_over_capacity_record_is_clamped(self, config):
        # Capacity lowered since the record was written
        bucket = HostRateLimitState("hmrc", tokens_remaining=50.0, last_refill_at=NOW)
        assert refill(bucket, NOW, config).tokens_remaining == 2.0

    def test_take_requires_a_whole_token(self, config):
        bucket = HostRateLimitState("hmrc", tokens_remaining=0.9, last_refill_at=NOW)
        _, allowed = try_take(bucket, NOW, config)
        assert allowed is False

    def test_time_to_next_token(self, config):
        assert time_to_next_token(0.0, config) == pytest.approx(0.5)
        assert time_to_next_token(1.5, config) == 0.0


class TestRateLimiter:
    async def test_burst_then_reject(self, limiter, config):
        results = [await limiter.try_acquire(config) for _ in range(3)]
        assert [r.allowed for r in results] == [True, True, False]
        assert results[2].retry_after == pytest.approx(0.5)

    async def test_refills_over_time(self, limiter, config, clock):
        for _ in range(2):
            await limiter.try_acquire(config)
        assert (await limiter.try_acquire(config)).allowed is False
        clock.advance(0.5)
        assert (await limiter.try_acquire(config)).allowed is True
        assert (await limiter.try_acquire(config)).allowed is False

    async def test_rejection_does_not_write(self, limiter, config, flaky_store):
        for _ in range(2):
            await limiter.try_acquire(config)
        writes = flaky_store.writes
        await limiter.try_acquire(config)
        assert flaky_store.writes == writes

    async def test_hosts_have_separate_buckets(self, limiter, config):
        other = HostConfig(host_key="hmrc-sandbox", egress_base_url="https://x", rate_per_second=2, burst_capacity=2)
        for _ in range(2):
            await limiter.try_acquire(config)
        assert (await limiter.try_acquire(other)).allowed is True

    async def test_admissions_bounded_over_window(self, limiter, config, clock):
        rng = random.Random(7)
        admitted = 0
        start = clock.now()
        for _ in range(500):
            step = rng.choice([0.0, 0.0, 0.01, 0.05, 0.3])
            clock.advance(step)
            decision = await limiter.try_acquire(config)
            assert 0.0 <= decision.tokens_remaining <= config.burst_capacity
            admitted += decision.allowed
        elapsed = clock.now() - start
        assert admitted <= config.burst_capacity + config.rate_per_second * elapsed + 1e-6

    async def test_workers_share_one_bucket(self, flaky_store, config, clock):
        worker_a = RateLimiter(StateStoreClient(flaky_store, key_prefix="test"), clock)
        worker_b = RateLimiter(StateStoreClient(flaky_store, key_prefix="test"), clock)
        assert (await worker_a.try_acquire(config)).allowed is True
        assert (await worker_b.try_acquire(config)).allowed is True
        assert (await worker_a.try_acquire(config)).allowed is False
        assert (await worker_b.try_acquire(config)).allowed is False


class TestRateLimiterDegraded:
    async def test_allows_when_store_unreachable(self, limiter, config, flaky_store):
        flaky_store.down = True
        decision = await limiter.try_acquire(config)
        assert decision.allowed is True
        assert decision.degraded is True

    async def test_allows_when_write_fails(self, limiter, config, flaky_store):
        await limiter.try_acquire(config)
        flaky_store.down = True
        decision = await limiter.try_acquire(config)
        assert decision.allowed is True
        assert decision.degraded is True

    async def test_concurrent_takes_do_not_double_spend(self, interleaving_store, config, clock):
        worker_a = RateLimiter(StateStoreClient(interleaving_store, key_prefix="test"), clock)
        worker_b = RateLimiter(StateStoreClient(interleaving_store, key_prefix="test"), clock)
        await worker_a.try_acquire(config)

        interleaving_store.competitor = lambda: worker_b.try_acquire(config)
        assert (await worker_a.try_acquire(config)).allowed is False
        assert interleaving_store.conflicts == 1

    async def test_peek_does_not_take(self, limiter, config):
        assert await limiter.peek(config) == 2.0
        assert await limiter.peek(config) == 2.0
        await limiter.try_acquire(config)
        assert await limiter.peek(config) == 1.0


class TestRateLimiterLostWriteReplies:
    async def test_token_spent_once_when_reply_is_lost(self, stalling_store, config, clock):
        limiter = RateLimiter(StateStoreClient(stalling_store, key_prefix="test", timeout_seconds=0.05), clock)

        decision = await limiter.try_acquire(config)

        assert decision.allowed is True
        assert decision.degraded is False
        assert decision.tokens_remaining == 1.0
        assert await limiter.peek(config) == 1.0
        assert stalling_store.writes == 1
