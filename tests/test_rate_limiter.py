"""
Unit tests for fixed-window rate limiting.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from boost_payments.core.errors import ErrorKind
from boost_payments.core.rate_limiter import (
    Admission,
    FixedWindowRateLimiter,
    RedisRateLimiter,
)


class TestFixedWindowRateLimiter:
    """Test suite for FixedWindowRateLimiter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sixth_request_rejected_at_limit_five(self, clock) -> None:
        """Test five requests pass and the sixth is rejected."""
        limiter = FixedWindowRateLimiter(clock=clock)

        admissions = [
            await limiter.admit("10.0.0.1:7", "boost_order", 5, 60000) for _ in range(6)
        ]

        assert [a.allowed for a in admissions] == [True] * 5 + [False]
        assert [a.count for a in admissions[:5]] == [1, 2, 3, 4, 5]
        assert admissions[5].retry_after_ms == 60000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_window_reset(self, clock) -> None:
        """Test the first request after the window starts a new window at 1."""
        limiter = FixedWindowRateLimiter(clock=clock)
        for _ in range(5):
            await limiter.admit("ip", "boost_order", 5, 60000)
        assert not (await limiter.admit("ip", "boost_order", 5, 60000)).allowed

        clock.advance(60)
        admission = await limiter.admit("ip", "boost_order", 5, 60000)

        assert admission.allowed
        assert admission.count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self, clock) -> None:
        """Test retry_after reflects the time left in the window."""
        limiter = FixedWindowRateLimiter(clock=clock)
        await limiter.admit("ip", "webhook", 1, 10000)

        clock.advance(4)
        admission = await limiter.admit("ip", "webhook", 1, 10000)

        assert not admission.allowed
        assert admission.retry_after_ms == 6000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_identities_and_operations_are_independent(self, clock) -> None:
        """Test counters are kept per identity and operation."""
        limiter = FixedWindowRateLimiter(clock=clock)
        await limiter.admit("a", "boost_order", 1, 60000)

        assert (await limiter.admit("b", "boost_order", 1, 60000)).allowed
        assert (await limiter.admit("a", "webhook", 1, 60000)).allowed
        assert not (await limiter.admit("a", "boost_order", 1, 60000)).allowed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_drops_expired_windows(self, clock) -> None:
        """Test sweep removes only expired windows."""
        limiter = FixedWindowRateLimiter(clock=clock)
        await limiter.admit("a", "boost_order", 5, 1000)
        await limiter.admit("b", "boost_order", 5, 10000)

        clock.advance(2)

        assert limiter.sweep() == 1
        assert len(limiter) == 1

    @pytest.mark.unit
    def test_rejection_error(self) -> None:
        """Test a rejection converts into RateLimited with limit and window."""
        error = Admission(
            allowed=False, count=5, limit=5, window_ms=60000, retry_after_ms=1500
        ).to_error("boost_order")

        assert error.kind is ErrorKind.RATE_LIMITED
        assert error.http_status == 429
        assert error.details["limit"] == 5
        assert error.details["windowMs"] == 60000
        assert error.details["retryAfterMs"] == 1500


class TestRedisRateLimiter:
    """Test suite for RedisRateLimiter with a mocked client."""

    @staticmethod
    def _client(count: int, remaining_ms: int) -> MagicMock:
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[count, True, remaining_ms])
        client = MagicMock()
        client.pipeline.return_value = pipe
        return client

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_allows_within_limit(self) -> None:
        """Test counts up to the limit are admitted."""
        client = self._client(count=5, remaining_ms=30000)
        limiter = RedisRateLimiter(redis_client=client)

        admission = await limiter.admit("ip", "boost_order", 5, 60000)

        assert admission.allowed
        assert admission.count == 5
        pipe = client.pipeline.return_value
        pipe.incr.assert_called_once_with("boost:ratelimit:boost_order:ip")
        pipe.pexpire.assert_called_once_with("boost:ratelimit:boost_order:ip", 60000, nx=True)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_over_limit(self) -> None:
        """Test the count past the limit is rejected with the key's remaining TTL."""
        limiter = RedisRateLimiter(redis_client=self._client(count=6, remaining_ms=12000))

        admission = await limiter.admit("ip", "boost_order", 5, 60000)

        assert not admission.allowed
        assert admission.retry_after_ms == 12000
