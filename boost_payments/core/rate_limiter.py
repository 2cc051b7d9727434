"""
Fixed-window rate limiting per (client identity, operation).

The first request in a fresh window starts the counter at 1; later requests
increment it; once the count would exceed the limit, requests are rejected
until the window expires, at which point the next request resets the window.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from boost_payments.core.errors import BoostError, rate_limited
from boost_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Admission:
    """Outcome of a rate limit check."""

    allowed: bool
    count: int
    limit: int
    window_ms: int
    retry_after_ms: int = 0

    def to_error(self, operation: str) -> BoostError:
        """Turn a rejection into a RateLimited error carrying {limit, windowMs}."""
        return rate_limited(
            f"Rate limit exceeded for {operation}",
            limit=self.limit,
            window_ms=self.window_ms,
            retry_after_ms=self.retry_after_ms,
        )


@dataclass
class RateLimitRecord:
    count: int
    window_reset_at_ms: int


class FixedWindowRateLimiter:
    """
    In-process fixed-window limiter.

    admit() never awaits between reading and writing a record, so the
    read-check-increment is atomic with respect to other tasks on the same
    event loop. Counters are not shared between processes.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Initialize rate limiter.

        Args:
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _key(client_identity: str, operation: str) -> str:
        return f"{operation}:{client_identity}"

    def sweep(self, now_ms: Optional[int] = None) -> int:
        """Drop records whose window has expired; returns the number removed."""
        now_ms = self._now_ms() if now_ms is None else now_ms
        expired = [k for k, r in self._records.items() if r.window_reset_at_ms <= now_ms]
        for key in expired:
            del self._records[key]
        return len(expired)

    async def admit(
        self, client_identity: str, operation: str, limit: int, window_ms: int
    ) -> Admission:
        """
        Count one request and decide whether it may proceed.

        Args:
            client_identity: Caller identity (e.g. ``ip:user_id``)
            operation: Operation name
            limit: Requests allowed per window
            window_ms: Window length in milliseconds

        Returns:
            Admission: Allowed, or rejected with retry_after_ms
        """
        now_ms = self._now_ms()
        self.sweep(now_ms)

        key = self._key(client_identity, operation)
        record = self._records.get(key)

        if record is None:
            record = RateLimitRecord(count=1, window_reset_at_ms=now_ms + window_ms)
            self._records[key] = record
        elif record.count >= limit:
            retry_after_ms = max(record.window_reset_at_ms - now_ms, 0)
            metrics.record_rate_limit_decision(operation, "rejected")
            logger.warning(
                "rate_limit_exceeded",
                operation=operation,
                client_identity=client_identity,
                limit=limit,
                retry_after_ms=retry_after_ms,
            )
            return Admission(
                allowed=False,
                count=record.count,
                limit=limit,
                window_ms=window_ms,
                retry_after_ms=retry_after_ms,
            )
        else:
            record.count += 1

        metrics.record_rate_limit_decision(operation, "allowed")
        return Admission(allowed=True, count=record.count, limit=limit, window_ms=window_ms)

    def __len__(self) -> int:
        return len(self._records)


class RedisRateLimiter:
    """
    Fixed-window limiter shared across instances through Redis.

    INCR and PEXPIRE run in one MULTI/EXEC pipeline; the window starts when
    the counter key is first created and ends when Redis expires it.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[aioredis.Redis] = None,
        namespace: str = "boost:ratelimit",
    ):
        self.redis_url = redis_url
        self.redis_client = redis_client
        self.namespace = namespace

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            if not self.redis_url:
                raise RuntimeError("RedisRateLimiter requires redis_url or redis_client")
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def sweep(self, now_ms: Optional[int] = None) -> int:
        # Redis expires counters itself
        return 0

    async def admit(
        self, client_identity: str, operation: str, limit: int, window_ms: int
    ) -> Admission:
        redis = await self._ensure_redis()
        key = f"{self.namespace}:{operation}:{client_identity}"

        pipe = redis.pipeline(transaction=True)
        pipe.incr(key)
        pipe.pexpire(key, window_ms, nx=True)
        pipe.pttl(key)
        count, _, remaining_ms = await pipe.execute()

        if count > limit:
            retry_after_ms = max(int(remaining_ms), 0)
            metrics.record_rate_limit_decision(operation, "rejected")
            logger.warning(
                "rate_limit_exceeded",
                operation=operation,
                client_identity=client_identity,
                limit=limit,
                retry_after_ms=retry_after_ms,
            )
            return Admission(
                allowed=False,
                count=int(count),
                limit=limit,
                window_ms=window_ms,
                retry_after_ms=retry_after_ms,
            )

        metrics.record_rate_limit_decision(operation, "allowed")
        return Admission(allowed=True, count=int(count), limit=limit, window_ms=window_ms)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
