"""
Key-value store abstraction for process-shared state.

The idempotency ledger and rate limiter keep their state behind this
interface. InMemoryStore is single-process only; RedisStore lets several
service instances share one ledger.
"""
import json
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]

# GET and DEL in one atomic step; only deletes a value the caller wrote
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class KeyValueStore(Protocol):
    """Minimal async store: JSON-serialisable values with optional TTL."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ...

    async def set_if_absent(
        self, key: str, value: Any, ttl_seconds: Optional[float] = None
    ) -> bool:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def delete_if_equal(self, key: str, value: Any) -> bool:
        ...

    async def ttl(self, key: str) -> Optional[float]:
        ...

    async def sweep(self) -> int:
        ...


class InMemoryStore:
    """
    Process-local store with lazy TTL eviction.

    None of the methods await internally, so each call completes without
    yielding to the event loop and is atomic with respect to other tasks.
    """

    def __init__(self, clock: Clock = time.monotonic):
        """
        Initialize in-memory store.

        Args:
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at, self._clock()):
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._data[key] = (value, expires_at)

    async def set_if_absent(
        self, key: str, value: Any, ttl_seconds: Optional[float] = None
    ) -> bool:
        if await self.get(key) is not None:
            return False
        await self.set(key, value, ttl_seconds)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_if_equal(self, key: str, value: Any) -> bool:
        if await self.get(key) != value:
            return False
        del self._data[key]
        return True

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, None when absent or stored without TTL."""
        entry = self._data.get(key)
        if entry is None or entry[1] is None:
            return None
        remaining = entry[1] - self._clock()
        return remaining if remaining > 0 else None

    async def sweep(self) -> int:
        """Drop every expired entry; returns the number removed."""
        now = self._clock()
        expired: List[str] = [
            key for key, (_, expires_at) in self._data.items() if self._expired(expires_at, now)
        ]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class RedisStore:
    """
    Redis-backed store shared across service instances.

    Values are stored as JSON under ``{namespace}:{key}``; expiry is delegated
    to Redis, so sweep() is a no-op.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        namespace: str = "boost",
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize Redis store.

        Args:
            redis_url: Redis connection URL (used when no client is given)
            namespace: Key prefix
            redis_client: Optional pre-built Redis client
        """
        self.redis_url = redis_url
        self.namespace = namespace
        self.redis_client = redis_client

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            if not self.redis_url:
                raise RuntimeError("RedisStore requires redis_url or redis_client")
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        redis = await self._ensure_redis()
        raw = await redis.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        redis = await self._ensure_redis()
        px = int(ttl_seconds * 1000) if ttl_seconds is not None else None
        await redis.set(self._key(key), json.dumps(value), px=px)

    async def set_if_absent(
        self, key: str, value: Any, ttl_seconds: Optional[float] = None
    ) -> bool:
        redis = await self._ensure_redis()
        px = int(ttl_seconds * 1000) if ttl_seconds is not None else None
        created = await redis.set(self._key(key), json.dumps(value), px=px, nx=True)
        return bool(created)

    async def delete(self, key: str) -> None:
        redis = await self._ensure_redis()
        await redis.delete(self._key(key))

    async def delete_if_equal(self, key: str, value: Any) -> bool:
        redis = await self._ensure_redis()
        deleted = await redis.eval(
            _COMPARE_AND_DELETE, 1, self._key(key), json.dumps(value)
        )
        return bool(deleted)

    async def ttl(self, key: str) -> Optional[float]:
        redis = await self._ensure_redis()
        remaining_ms = await redis.pttl(self._key(key))
        # -2: missing key, -1: no expiry
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
