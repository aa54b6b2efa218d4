"""Token Bucket Rate Limiter implementation."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import GatewayConfig
from .errors import LimiterUnavailable
from .models import RateLimitConfig, RateLimitStatus
from .store import BucketState, BucketStore

logger = logging.getLogger(__name__)

BUCKET_TTL_SECONDS = 24 * 60 * 60


@dataclass
class TokenBucket:
    """Token bucket for a single caller, evaluated at an explicit time."""

    tokens: float
    max_tokens: int
    refill_rate: float  # tokens per second
    last_refill: float

    def refill(self, now: float) -> None:
        """Refill tokens based on elapsed time."""
        # Instances can disagree slightly on wall-clock time; never refill backwards.
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, now: float, tokens: int = 1) -> tuple[bool, float]:
        """
        Try to consume tokens from the bucket.

        Returns:
            tuple of (success, retry_after_seconds)
            If success is True, retry_after is 0
            If success is False, retry_after indicates when tokens will be available
        """
        self.refill(now)

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True, 0.0

        tokens_needed = tokens - self.tokens
        retry_after = tokens_needed / self.refill_rate
        return False, retry_after


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check.

    ``failure`` is set when the store was unreachable and the outcome was
    decided by the fail-open/fail-closed policy instead of the bucket.
    """
    allowed: bool
    remaining: float
    retry_after: float
    failure: Optional[LimiterUnavailable] = None

    @property
    def degraded(self) -> bool:
        return self.failure is not None


class TokenBucketLimiter:
    """
    Distributed rate limiter using the token bucket algorithm.

    Bucket state lives in a shared BucketStore. Each check is a
    read-refill-decide-write cycle committed with compare-and-swap; a lost
    race re-reads the bucket, so two concurrent requests for the same key
    can never spend the same token. Different keys never contend.

    When the store is unreachable the request is admitted in production
    (availability over strict budget enforcement) and rejected in every
    other runtime mode.
    """

    def __init__(
        self,
        store: BucketStore,
        config: Optional[RateLimitConfig] = None,
        *,
        fail_open: bool = False,
        ttl_seconds: float = BUCKET_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        max_attempts: int = 50,
    ):
        """
        Initialize the rate limiter.

        Args:
            store: Shared bucket store
            config: Default capacity and refill rate
            fail_open: Admit requests when the store is unavailable
            ttl_seconds: Idle time after which a bucket is forgotten
            clock: Wall-clock source shared with other instances
            max_attempts: Compare-and-swap attempts before giving up
        """
        self._store = store
        self._config = config or RateLimitConfig()
        self._fail_open = fail_open
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._max_attempts = max_attempts

    @classmethod
    def from_config(cls, store: BucketStore, config: GatewayConfig) -> "TokenBucketLimiter":
        return cls(
            store,
            config.rate_limit,
            fail_open=config.is_production,
            ttl_seconds=config.bucket_ttl_seconds,
        )

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    async def allow(
        self,
        key: str,
        capacity: Optional[int] = None,
        refill_per_second: Optional[float] = None,
    ) -> bool:
        """Admit or reject one request for ``key``."""
        decision = await self.check(key, capacity, refill_per_second)
        return decision.allowed

    async def check(
        self,
        key: str,
        capacity: Optional[int] = None,
        refill_per_second: Optional[float] = None,
    ) -> RateLimitDecision:
        """
        Check if a request is allowed and consume a token if so.

        Args:
            key: Caller identity
            capacity: Bucket capacity (configured default when omitted)
            refill_per_second: Refill rate (configured default when omitted)

        Returns:
            RateLimitDecision; never raises for store failures
        """
        capacity = capacity or self._config.capacity
        refill_per_second = refill_per_second or self._config.refill_per_second

        try:
            return await self._check(key, capacity, refill_per_second)
        except LimiterUnavailable as e:
            logger.error(
                "Rate limiter error",
                extra={"key": key, "reason": e.reason, "fail_open": self._fail_open},
            )
            return RateLimitDecision(
                allowed=self._fail_open,
                remaining=0.0,
                retry_after=0.0 if self._fail_open else 1.0 / refill_per_second,
                failure=e,
            )

    async def _check(self, key: str, capacity: int, refill_per_second: float) -> RateLimitDecision:
        for _ in range(self._max_attempts):
            stored = await self._store.get(key)
            now = self._clock()

            if stored is None:
                bucket = TokenBucket(capacity, capacity, refill_per_second, now)
                version = 0
            else:
                bucket = TokenBucket(
                    tokens=stored.state.tokens,
                    max_tokens=capacity,
                    refill_rate=refill_per_second,
                    last_refill=stored.state.last_refill_at,
                )
                version = stored.version

            allowed, retry_after = bucket.consume(now)
            state = BucketState(tokens=bucket.tokens, last_refill_at=now)

            if await self._store.compare_and_swap(key, version, state, self._ttl_seconds):
                return RateLimitDecision(
                    allowed=allowed,
                    remaining=bucket.tokens,
                    retry_after=retry_after,
                )

            logger.debug("Bucket changed concurrently, re-reading", extra={"key": key})

        raise LimiterUnavailable(key, f"no commit after {self._max_attempts} attempts")

    async def reset(self, key: str) -> bool:
        """Clear a bucket. Best effort: failures are logged, not raised."""
        try:
            await self._store.delete(key)
        except LimiterUnavailable as e:
            logger.error("Error resetting rate limiter", extra={"key": key, "reason": e.reason})
            return False
        return True

    async def get_status(self, key: str) -> RateLimitStatus:
        """
        Report the caller's tokens without consuming any.

        Raises:
            LimiterUnavailable: If the store cannot be reached
        """
        capacity = self._config.capacity
        stored = await self._store.get(key)
        tokens = float(capacity)
        if stored is not None:
            bucket = TokenBucket(
                tokens=stored.state.tokens,
                max_tokens=capacity,
                refill_rate=self._config.refill_per_second,
                last_refill=stored.state.last_refill_at,
            )
            bucket.refill(self._clock())
            tokens = bucket.tokens
            await self._store.expire(key, self._ttl_seconds)

        return RateLimitStatus(
            key=key,
            tokens=tokens,
            capacity=capacity,
            refill_per_second=self._config.refill_per_second,
        )
