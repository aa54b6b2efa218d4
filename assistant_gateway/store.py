"""Shared bucket state for the token bucket limiter."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import GatewayConfig
from .errors import LimiterUnavailable

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:"

# Writes only when the stored version still matches the one the caller read,
# then refreshes the TTL. Absent records have version 0.
_CAS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'version')
if not current then current = '0' end
if current ~= ARGV[1] then
    return 0
end
redis.call('HSET', KEYS[1], 'tokens', ARGV[2], 'last', ARGV[3], 'version', tonumber(ARGV[1]) + 1)
redis.call('PEXPIRE', KEYS[1], ARGV[4])
return 1
"""


@dataclass(frozen=True)
class BucketState:
    """Token count and the wall-clock time it was last refilled."""
    tokens: float
    last_refill_at: float


@dataclass(frozen=True)
class StoredBucket:
    """Bucket state plus the version used for compare-and-swap."""
    state: BucketState
    version: int


class BucketStore(Protocol):
    """Capability the limiter needs from its backing store."""

    async def get(self, key: str) -> Optional[StoredBucket]: ...

    async def compare_and_swap(
        self, key: str, expected_version: int, state: BucketState, ttl_seconds: float
    ) -> bool: ...

    async def expire(self, key: str, ttl_seconds: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


@dataclass
class _Record:
    state: BucketState
    version: int
    expires_at: float


class InMemoryBucketStore:
    """
    Process-local bucket store.

    Suitable for tests and single-process development. Expiry is enforced
    lazily against the injected clock.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        yield_on_read: bool = False,
    ):
        """
        Initialize the store.

        Args:
            clock: Wall-clock source used for TTL checks
            yield_on_read: Yield to the event loop after get() reads, so
                concurrent callers race between read and write
        """
        self._clock = clock
        self._yield_on_read = yield_on_read
        self._records: dict[str, _Record] = {}

    def _live(self, key: str) -> Optional[_Record]:
        record = self._records.get(key)
        if record is not None and record.expires_at <= self._clock():
            del self._records[key]
            return None
        return record

    async def get(self, key: str) -> Optional[StoredBucket]:
        record = self._live(key)
        snapshot = None if record is None else StoredBucket(state=record.state, version=record.version)
        if self._yield_on_read:
            await asyncio.sleep(0)
        return snapshot

    async def compare_and_swap(
        self, key: str, expected_version: int, state: BucketState, ttl_seconds: float
    ) -> bool:
        record = self._live(key)
        current = record.version if record else 0
        if current != expected_version:
            return False
        self._records[key] = _Record(
            state=state,
            version=current + 1,
            expires_at=self._clock() + ttl_seconds,
        )
        return True

    async def expire(self, key: str, ttl_seconds: float) -> None:
        record = self._live(key)
        if record is not None:
            record.expires_at = self._clock() + ttl_seconds

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def close(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class RedisBucketStore:
    """
    Redis-backed bucket store shared by every gateway instance.

    Each bucket is a hash at ``ratelimit:<key>`` holding tokens, last refill
    time and a version counter. Compare-and-swap runs server side as a Lua
    script, so two instances can never both commit against the same version.
    """

    def __init__(self, client: aioredis.Redis):
        self._redis = client
        self._cas = client.register_script(_CAS_SCRIPT)

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "RedisBucketStore":
        """Build a store from gateway configuration."""
        url = config.redis_url
        if config.redis_tls and url.startswith("redis://"):
            url = "rediss://" + url[len("redis://"):]

        client = aioredis.Redis.from_url(
            url,
            password=config.redis_password,
            decode_responses=True,
            socket_timeout=config.redis_socket_timeout,
            socket_connect_timeout=config.redis_socket_timeout,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[StoredBucket]:
        try:
            raw = await self._redis.hgetall(KEY_PREFIX + key)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise LimiterUnavailable(key, str(e)) from e

        if not raw:
            return None
        try:
            state = BucketState(tokens=float(raw["tokens"]), last_refill_at=float(raw["last"]))
            version = int(raw.get("version", 0))
        except (KeyError, ValueError):
            logger.warning("Discarding unreadable bucket record", extra={"key": key})
            return None
        return StoredBucket(state=state, version=version)

    async def compare_and_swap(
        self, key: str, expected_version: int, state: BucketState, ttl_seconds: float
    ) -> bool:
        try:
            written = await self._cas(
                keys=[KEY_PREFIX + key],
                args=[
                    str(expected_version),
                    repr(state.tokens),
                    repr(state.last_refill_at),
                    int(ttl_seconds * 1000),
                ],
            )
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise LimiterUnavailable(key, str(e)) from e
        return int(written) == 1

    async def expire(self, key: str, ttl_seconds: float) -> None:
        try:
            await self._redis.pexpire(KEY_PREFIX + key, int(ttl_seconds * 1000))
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise LimiterUnavailable(key, str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(KEY_PREFIX + key)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise LimiterUnavailable(key, str(e)) from e

    async def close(self) -> None:
        await self._redis.aclose()
