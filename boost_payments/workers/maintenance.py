"""
Periodic maintenance worker.

Every interval it sweeps expired idempotency records and rate limit windows,
drops stale transaction bookkeeping and expires featured products. The task
is owned by whoever starts it (the API lifespan) and is cancelled on stop().
"""
import asyncio
import os
import signal
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from boost_payments.core.boost_orders import BoostOrderService
from boost_payments.core.errors import is_operational, log_boost_error
from boost_payments.core.idempotency import IdempotencyLedger
from boost_payments.core.transactions import TransactionOrchestrator

logger = structlog.get_logger(__name__)


def request_shutdown() -> None:
    """Ask the hosting process to terminate."""
    os.kill(os.getpid(), signal.SIGTERM)


class MaintenanceWorker:
    """Runs cleanup passes on a fixed interval until stopped."""

    def __init__(
        self,
        ledger: IdempotencyLedger,
        rate_limiter: Any,
        orchestrator: TransactionOrchestrator,
        service: Optional[BoostOrderService] = None,
        interval_seconds: float = 1800,
        stale_after_seconds: float = 3600,
        on_fatal: Callable[[], None] = request_shutdown,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize maintenance worker.

        Args:
            ledger: Idempotency ledger to sweep
            rate_limiter: Rate limiter whose expired windows are swept
            orchestrator: Orchestrator whose stale transactions are dropped
            service: Boost order service (featured expiry); skipped when None
            interval_seconds: Delay between passes
            stale_after_seconds: Age at which live transactions count as stale
            on_fatal: Called after a non-operational failure
            sleep: Coroutine used between passes
        """
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.orchestrator = orchestrator
        self.service = service
        self.interval_seconds = interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self._on_fatal = on_fatal
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, Any]:
        """
        Run one maintenance pass.

        Returns:
            Dict[str, Any]: Counts per cleanup step
        """
        summary: Dict[str, Any] = {
            "idempotency_records_swept": await self.ledger.sweep(),
            "rate_limit_windows_swept": self.rate_limiter.sweep(),
            "stale_transactions_removed": self.orchestrator.cleanup_stale_transactions(
                self.stale_after_seconds
            ),
        }
        if self.service is not None:
            expired = await self.service.expire_featured_products()
            summary["featured_products_expired"] = expired["expired_count"]

        logger.info("maintenance_pass_completed", **summary)
        return summary

    async def _loop(self) -> None:
        logger.info("maintenance_worker_started", interval_seconds=self.interval_seconds)
        try:
            while True:
                await self._sleep(self.interval_seconds)
                try:
                    await self.run_once()
                except Exception as e:
                    if is_operational(e):
                        log_boost_error(e, operation="maintenance")
                        continue
                    logger.critical(
                        "maintenance_fatal_error",
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    self._on_fatal()
                    return
        finally:
            logger.info("maintenance_worker_stopped")

    def start(self) -> None:
        """Start the background task (no-op if already running)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="boost-maintenance")

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
