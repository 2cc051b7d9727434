"""
Unit tests for the maintenance worker.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from boost_payments.core.errors import infrastructure_failure
from boost_payments.core.rate_limiter import FixedWindowRateLimiter
from boost_payments.workers.maintenance import MaintenanceWorker


class ControlledSleep:
    """Sleep that lets a fixed number of passes through, then blocks."""

    def __init__(self, passes: int):
        self.remaining = passes
        self.blocked = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        if self.remaining == 0:
            self.blocked.set()
            await asyncio.Event().wait()
        self.remaining -= 1


class TestMaintenanceWorker:
    """Test suite for MaintenanceWorker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_once_sweeps_everything(
        self, ledger, orchestrator, service, repository, clock
    ) -> None:
        """Test one pass sweeps the ledger, rate limits, transactions and boosts."""
        limiter = FixedWindowRateLimiter(clock=clock)
        await limiter.admit("ip", "boost_order", 5, 1000)
        await ledger.store.set("idempotency:old", {"x": 1}, ttl_seconds=1)
        repository.add_product(
            300, seller_id=7, is_featured=True, status="featured",
            featured_until=service._clock() - timedelta(hours=1),
        )
        clock.advance(5)

        worker = MaintenanceWorker(ledger, limiter, orchestrator, service=service)
        summary = await worker.run_once()

        assert summary == {
            "idempotency_records_swept": 1,
            "rate_limit_windows_swept": 1,
            "stale_transactions_removed": 0,
            "featured_products_expired": 1,
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_once_without_service(self, ledger, orchestrator) -> None:
        """Test featured expiry is skipped when no service is wired."""
        worker = MaintenanceWorker(ledger, FixedWindowRateLimiter(), orchestrator)

        summary = await worker.run_once()

        assert "featured_products_expired" not in summary

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_operational_errors_keep_loop_running(self, ledger, orchestrator) -> None:
        """Test classified failures are logged and the next pass still runs."""
        service = MagicMock()
        service.expire_featured_products = AsyncMock(
            side_effect=[
                infrastructure_failure("connection reset", operation="storage"),
                {"expired_count": 0},
            ]
        )
        on_fatal = MagicMock()
        sleep = ControlledSleep(passes=2)
        worker = MaintenanceWorker(
            ledger, FixedWindowRateLimiter(), orchestrator,
            service=service, on_fatal=on_fatal, sleep=sleep,
        )

        worker.start()
        await sleep.blocked.wait()

        assert service.expire_featured_products.await_count == 2
        on_fatal.assert_not_called()
        assert worker.running

        await worker.stop()
        assert not worker.running

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_programmer_error_requests_shutdown(self, ledger, orchestrator) -> None:
        """Test an unclassified failure stops the loop and calls on_fatal."""
        service = MagicMock()
        service.expire_featured_products = AsyncMock(side_effect=AttributeError("bug"))
        on_fatal = MagicMock()
        worker = MaintenanceWorker(
            ledger, FixedWindowRateLimiter(), orchestrator,
            service=service, on_fatal=on_fatal, sleep=ControlledSleep(passes=5),
        )

        worker.start()
        for _ in range(10):
            await asyncio.sleep(0)
            if not worker.running:
                break

        on_fatal.assert_called_once()
        assert not worker.running
        assert service.expire_featured_products.await_count == 1
        await worker.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, ledger, orchestrator) -> None:
        """Test starting twice keeps a single task."""
        worker = MaintenanceWorker(
            ledger, FixedWindowRateLimiter(), orchestrator, sleep=ControlledSleep(passes=0)
        )

        worker.start()
        task = worker._task
        worker.start()

        assert worker._task is task
        await worker.stop()
