"""Tests for the Token Bucket Rate Limiter."""

import asyncio
import logging
import pytest

from assistant_gateway.config import GatewayConfig
from assistant_gateway.errors import LimiterUnavailable
from assistant_gateway.models import RateLimitConfig, RuntimeMode
from assistant_gateway.rate_limiter import BUCKET_TTL_SECONDS, TokenBucket, TokenBucketLimiter
from assistant_gateway.store import InMemoryBucketStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class UnreachableStore:
    """Store whose backend is down."""

    async def get(self, key):
        raise LimiterUnavailable(key, "connection refused")

    async def compare_and_swap(self, key, expected_version, state, ttl_seconds):
        raise LimiterUnavailable(key, "connection refused")

    async def expire(self, key, ttl_seconds):
        raise LimiterUnavailable(key, "connection refused")

    async def delete(self, key):
        raise LimiterUnavailable(key, "connection refused")

    async def close(self):
        pass


class AlwaysConflictingStore(InMemoryBucketStore):
    """Store where another writer always wins the race."""

    async def compare_and_swap(self, key, expected_version, state, ttl_seconds):
        return False


class TestTokenBucket:
    """Tests for TokenBucket class."""

    def test_consume_success(self):
        """Consuming available tokens succeeds."""
        bucket = TokenBucket(tokens=10, max_tokens=10, refill_rate=1.0, last_refill=100.0)
        success, retry_after = bucket.consume(100.0, 5)
        assert success is True
        assert retry_after == 0.0
        assert bucket.tokens == 5

    def test_consume_insufficient_tokens(self):
        """Consuming more tokens than available fails."""
        bucket = TokenBucket(tokens=0.25, max_tokens=10, refill_rate=0.5, last_refill=100.0)
        success, retry_after = bucket.consume(100.0)
        assert success is False
        assert retry_after == pytest.approx(1.5)

    def test_refill_over_time(self):
        """Tokens refill over time."""
        bucket = TokenBucket(tokens=0, max_tokens=10, refill_rate=10.0, last_refill=100.0)
        bucket.refill(100.25)
        assert bucket.tokens == pytest.approx(2.5)

    def test_refill_capped_at_max(self):
        """Refill doesn't exceed max tokens."""
        bucket = TokenBucket(tokens=9, max_tokens=10, refill_rate=100.0, last_refill=100.0)
        bucket.refill(200.0)
        assert bucket.tokens == 10

    def test_clock_going_backwards_does_not_drain(self):
        """A refill time earlier than the last one leaves tokens unchanged."""
        bucket = TokenBucket(tokens=3, max_tokens=10, refill_rate=1.0, last_refill=100.0)
        bucket.refill(99.0)
        assert bucket.tokens == 3


class TestTokenBucketLimiter:
    """Tests for TokenBucketLimiter class."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return InMemoryBucketStore(clock=clock)

    @pytest.fixture
    def limiter(self, store, clock):
        """Create rate limiter with a small bucket."""
        return TokenBucketLimiter(
            store,
            RateLimitConfig(capacity=5, refill_per_second=1.0),
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_first_request_allowed(self, limiter):
        """First request from a new key starts from a full bucket."""
        decision = await limiter.check("client1")
        assert decision.allowed is True
        assert decision.retry_after == 0
        assert decision.remaining == 4
        assert decision.failure is None

    @pytest.mark.asyncio
    async def test_capacity_then_reject(self, limiter):
        """Capacity calls in a row are admitted and the next is rejected."""
        results = [await limiter.allow("client2") for _ in range(5)]
        assert results == [True] * 5

        decision = await limiter.check("client2")
        assert decision.allowed is False
        assert decision.retry_after == pytest.approx(1.0)
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_explicit_capacity_and_refill(self, limiter):
        """Per-call capacity and refill override the configured defaults."""
        results = [await limiter.allow("wide", capacity=12, refill_per_second=3.0) for _ in range(13)]
        assert results.count(True) == 12
        assert results[-1] is False

    @pytest.mark.asyncio
    async def test_admits_again_after_refill(self, limiter, clock):
        """A rejected key is admitted once a whole token has refilled."""
        for _ in range(5):
            await limiter.allow("refill")
        assert await limiter.allow("refill") is False

        clock.advance(0.5)
        assert await limiter.allow("refill") is False

        clock.advance(0.5)
        assert await limiter.allow("refill") is True

    @pytest.mark.asyncio
    async def test_refill_wait_scales_with_rate(self, limiter, clock):
        """With refill R the wait after exhaustion is 1/R seconds."""
        for _ in range(5):
            await limiter.allow("fast", refill_per_second=4.0)
        assert await limiter.allow("fast", refill_per_second=4.0) is False

        clock.advance(0.25)
        assert await limiter.allow("fast", refill_per_second=4.0) is True

    @pytest.mark.asyncio
    async def test_rejection_keeps_refilled_tokens(self, limiter, store, clock):
        """A rejected call stores the refilled, undecremented token count."""
        for _ in range(5):
            await limiter.allow("partial")
        clock.advance(0.75)
        assert await limiter.allow("partial") is False

        stored = await store.get("partial")
        assert stored.state.tokens == pytest.approx(0.75)
        assert stored.state.last_refill_at == clock.now

    @pytest.mark.asyncio
    async def test_distinct_keys_independent(self, limiter):
        """Exhausting one key leaves another untouched."""
        for _ in range(6):
            await limiter.allow("noisy")

        decision = await limiter.check("quiet")
        assert decision.allowed is True
        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_concurrent_distinct_keys(self, clock):
        """Concurrent callers with different keys each get their full budget."""
        store = InMemoryBucketStore(clock=clock, yield_on_read=True)
        limiter = TokenBucketLimiter(store, RateLimitConfig(capacity=3), clock=clock)

        results = await asyncio.gather(
            *[limiter.allow(f"key-{i % 4}") for i in range(12)]
        )
        assert all(results)

    @pytest.mark.asyncio
    async def test_concurrent_same_key_no_double_admission(self, clock):
        """N concurrent calls on a bucket of capacity C admit exactly min(N, C)."""
        store = InMemoryBucketStore(clock=clock, yield_on_read=True)
        limiter = TokenBucketLimiter(store, RateLimitConfig(capacity=10), clock=clock)

        results = await asyncio.gather(*[limiter.check("shared") for _ in range(30)])

        assert sum(1 for d in results if d.allowed) == 10
        assert sum(1 for d in results if not d.allowed) == 20
        assert not any(d.degraded for d in results)

    @pytest.mark.asyncio
    async def test_concurrent_below_capacity(self, clock):
        """Fewer concurrent calls than capacity are all admitted."""
        store = InMemoryBucketStore(clock=clock, yield_on_read=True)
        limiter = TokenBucketLimiter(store, RateLimitConfig(capacity=10), clock=clock)

        results = await asyncio.gather(*[limiter.allow("few") for _ in range(4)])
        assert all(results)

    @pytest.mark.asyncio
    async def test_idle_bucket_expires_to_full(self, clock):
        """After the retention window an idle key regains its full burst."""
        store = InMemoryBucketStore(clock=clock)
        # Refill so slow that a day of refilling alone is less than one token.
        limiter = TokenBucketLimiter(
            store, RateLimitConfig(capacity=3, refill_per_second=0.00001), clock=clock
        )
        for _ in range(3):
            await limiter.allow("idle")
        assert await limiter.allow("idle") is False

        clock.advance(BUCKET_TTL_SECONDS + 1)
        assert await store.get("idle") is None

        results = [await limiter.allow("idle") for _ in range(3)]
        assert results == [True, True, True]

    @pytest.mark.asyncio
    async def test_access_refreshes_retention(self, limiter, store, clock):
        """Every check pushes the expiry a full window forward."""
        await limiter.allow("busy")
        clock.advance(BUCKET_TTL_SECONDS - 60)
        await limiter.allow("busy")
        clock.advance(BUCKET_TTL_SECONDS - 60)

        assert await store.get("busy") is not None

    @pytest.mark.asyncio
    async def test_fail_closed_when_store_unavailable(self, caplog):
        """Outside production an unreachable store rejects the request."""
        limiter = TokenBucketLimiter(UnreachableStore(), fail_open=False)

        with caplog.at_level(logging.ERROR, logger="assistant_gateway.rate_limiter"):
            decision = await limiter.check("caller")

        assert decision.allowed is False
        assert isinstance(decision.failure, LimiterUnavailable)
        assert decision.failure.key == "caller"
        assert any(r.getMessage() == "Rate limiter error" and r.key == "caller" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_fail_open_when_store_unavailable(self):
        """In production an unreachable store admits the request."""
        limiter = TokenBucketLimiter(UnreachableStore(), fail_open=True)

        decision = await limiter.check("caller")

        assert decision.allowed is True
        assert decision.degraded is True
        assert await limiter.allow("caller") is True

    def test_policy_follows_runtime_mode(self):
        """Only production mode fails open."""
        store = InMemoryBucketStore()
        production = TokenBucketLimiter.from_config(
            store, GatewayConfig(environment=RuntimeMode.PRODUCTION)
        )
        development = TokenBucketLimiter.from_config(
            store, GatewayConfig(environment=RuntimeMode.DEVELOPMENT)
        )
        test_mode = TokenBucketLimiter.from_config(store, GatewayConfig(environment=RuntimeMode.TEST))

        assert production.fail_open is True
        assert development.fail_open is False
        assert test_mode.fail_open is False

    @pytest.mark.asyncio
    async def test_contention_exhaustion_uses_failure_policy(self, clock):
        """Losing every compare-and-swap is handled like an unavailable store."""
        limiter = TokenBucketLimiter(
            AlwaysConflictingStore(clock=clock), clock=clock, max_attempts=3, fail_open=False
        )

        decision = await limiter.check("contended")

        assert decision.allowed is False
        assert "3 attempts" in decision.failure.reason

    @pytest.mark.asyncio
    async def test_reset_restores_capacity(self, limiter):
        """Can reset a key's bucket."""
        for _ in range(5):
            await limiter.allow("reset_client")
        assert await limiter.allow("reset_client") is False

        assert await limiter.reset("reset_client") is True

        decision = await limiter.check("reset_client")
        assert decision.allowed is True
        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_reset_failure_is_logged_not_raised(self, caplog):
        """Reset against a dead store reports False and logs."""
        limiter = TokenBucketLimiter(UnreachableStore())

        with caplog.at_level(logging.ERROR, logger="assistant_gateway.rate_limiter"):
            assert await limiter.reset("caller") is False

        assert "Error resetting rate limiter" in caplog.text

    @pytest.mark.asyncio
    async def test_get_status(self, limiter, clock):
        """Status reports refilled tokens without consuming any."""
        for _ in range(3):
            await limiter.allow("status_client")
        clock.advance(1.0)

        status = await limiter.get_status("status_client")
        assert status.tokens == pytest.approx(3.0)
        assert status.capacity == 5

        again = await limiter.get_status("status_client")
        assert again.tokens == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_get_status_unknown_key_is_full(self, limiter):
        status = await limiter.get_status("never-seen")
        assert status.tokens == 5
