"""
Transaction orchestration for boost operations.

Drives a caller-supplied unit of work through:
idempotency check -> timed, retried execution -> compensating rollback on
failure -> result caching.

The backing store offers single-row atomic writes only, so multi-step work
approximates atomicity with a stack of compensating actions registered as
each step succeeds.
"""
import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from boost_payments.core.errors import (
    BoostError,
    ErrorCode,
    ErrorKind,
    classify_error,
    duplicate_request,
    infrastructure_failure,
    log_boost_error,
)
from boost_payments.core.idempotency import IdempotencyLedger
from boost_payments.monitoring.logging import log_context
from boost_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

UnitOfWork = Callable[[str], Any]
RollbackAction = Callable[[], Any]

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 10000


def backoff_delay_ms(attempt: int) -> int:
    """Delay after a failed attempt: 1s, 2s, 4s, ... capped at 10s."""
    return min(BACKOFF_BASE_MS * 2 ** (attempt - 1), BACKOFF_CAP_MS)


class TransactionStatus(Enum):
    """Transaction lifecycle states."""

    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class TransactionState:
    """Bookkeeping for one attempt of one unit of work."""

    id: str
    start_time: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    operation_log: List[str] = field(default_factory=list)
    rollback_stack: List[RollbackAction] = field(default_factory=list)
    status: TransactionStatus = TransactionStatus.PENDING


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class TransactionOrchestrator:
    """
    Executes units of work with retry, timeout, rollback and idempotency.

    A unit of work receives its transaction id and may call
    add_rollback_action()/track_operation() with it while running. Each
    attempt gets a fresh transaction id and an empty rollback stack.

    Timed-out attempts are abandoned, not cancelled: their in-flight calls may
    still complete after the orchestrator has moved on.

    Each execution runs as a task owned by the orchestrator. Cancelling the
    caller of execute() does not cancel that task, so the result is still
    cached, compensations still run and the in-flight marker is released by
    the execution itself.
    """

    def __init__(
        self,
        ledger: Optional[IdempotencyLedger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize orchestrator.

        Args:
            ledger: Idempotency ledger (in-process if omitted)
            sleep: Coroutine used for backoff delays (injectable for tests)
            clock: Monotonic clock in seconds
        """
        self.ledger = ledger if ledger is not None else IdempotencyLedger()
        self._sleep = sleep
        self._clock = clock
        self._transactions: Dict[str, TransactionState] = {}
        self._executions: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------
    # Bookkeeping available to units of work
    # ------------------------------------------------------------------

    def add_rollback_action(
        self, transaction_id: str, action: RollbackAction, name: Optional[str] = None
    ) -> None:
        """
        Push a compensating action onto a live transaction's rollback stack.

        Args:
            transaction_id: Transaction ID passed to the unit of work
            action: Zero-argument callable (sync or async)
            name: Optional label for logs
        """
        state = self._transactions.get(transaction_id)
        if state is None:
            logger.warning(
                "rollback_action_for_unknown_transaction",
                transaction_id=transaction_id,
                action=name,
            )
            return

        state.rollback_stack.append(action)
        logger.debug(
            "rollback_action_added",
            transaction_id=transaction_id,
            action=name,
            stack_depth=len(state.rollback_stack),
        )

    def track_operation(self, transaction_id: str, operation: str) -> None:
        """Append an operation name to a live transaction's log."""
        state = self._transactions.get(transaction_id)
        if state is None:
            logger.warning(
                "operation_for_unknown_transaction",
                transaction_id=transaction_id,
                operation=operation,
            )
            return
        state.operation_log.append(operation)

    def get_transaction(self, transaction_id: str) -> Optional[TransactionState]:
        return self._transactions.get(transaction_id)

    @property
    def active_transactions(self) -> int:
        return len(self._transactions)

    @property
    def pending_executions(self) -> int:
        return len(self._executions)

    async def drain(self) -> None:
        """Wait for every running execution, including ones whose caller went away."""
        if self._executions:
            await asyncio.gather(*list(self._executions), return_exceptions=True)

    def cleanup_stale_transactions(self, max_age_seconds: float = 3600) -> int:
        """
        Drop registry entries older than max_age_seconds.

        Args:
            max_age_seconds: Maximum age of a live transaction

        Returns:
            int: Number of entries removed
        """
        cutoff = self._clock() - max_age_seconds
        stale = [tx_id for tx_id, state in self._transactions.items() if state.start_time < cutoff]
        for tx_id in stale:
            del self._transactions[tx_id]

        if stale:
            logger.info("stale_transactions_cleaned", count=len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        unit_of_work: UnitOfWork,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run a unit of work to completion or classified failure.

        Args:
            unit_of_work: Callable taking the transaction ID (sync or async)
            timeout_ms: Per-attempt timeout in milliseconds
            max_retries: Maximum number of attempts
            idempotency_key: Optional key; a cached result is returned without executing
            metadata: Caller context attached to logs

        Returns:
            Any: Result of the unit of work (or the cached first result)

        Raises:
            BoostError: Non-retryable error on first occurrence, DuplicateRequest
                while the same key is in flight, or InfrastructureFailure
                (TRANSACTION_RETRY_EXHAUSTED) once the retry budget is spent
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        task = asyncio.ensure_future(
            self._execute_owned(
                unit_of_work, timeout_ms, max_retries, idempotency_key, dict(metadata or {})
            )
        )
        self._executions.add(task)
        task.add_done_callback(self._execution_finished)
        return await asyncio.shield(task)

    def _execution_finished(self, task: "asyncio.Task[Any]") -> None:
        self._executions.discard(task)
        # Retrieve the outcome so a caller that went away leaves no unobserved error
        if not task.cancelled() and task.exception() is not None:
            logger.debug("execution_finished_with_error", error=str(task.exception()))

    async def _execute_owned(
        self,
        unit_of_work: UnitOfWork,
        timeout_ms: int,
        max_retries: int,
        idempotency_key: Optional[str],
        metadata: Dict[str, Any],
    ) -> Any:
        started = self._clock()

        if idempotency_key is None:
            return await self._execute_with_retries(
                unit_of_work, timeout_ms, max_retries, None, metadata, started
            )

        with log_context(idempotency_key=idempotency_key):
            return await self._execute_keyed(
                unit_of_work, timeout_ms, max_retries, idempotency_key, metadata, started
            )

    async def _execute_keyed(
        self,
        unit_of_work: UnitOfWork,
        timeout_ms: int,
        max_retries: int,
        idempotency_key: str,
        metadata: Dict[str, Any],
        started: float,
    ) -> Any:
        cached = await self.ledger.check(idempotency_key)
        if cached is not None:
            metrics.record_transaction("idempotent_replay", self._clock() - started)
            return cached.cached_result

        owner = f"boost_exec_{uuid.uuid4()}"
        if not await self.ledger.claim(
            idempotency_key, owner, ttl_seconds=self._in_flight_ttl(timeout_ms, max_retries)
        ):
            error = duplicate_request(
                "A request with this idempotency key is already being processed",
                idempotency_key=idempotency_key,
                in_flight=True,
            )
            log_boost_error(error, metadata=metadata)
            raise error

        try:
            # The first holder may have finished between check() and claim()
            cached = await self.ledger.check(idempotency_key)
            if cached is not None:
                metrics.record_transaction("idempotent_replay", self._clock() - started)
                return cached.cached_result

            return await self._execute_with_retries(
                unit_of_work, timeout_ms, max_retries, idempotency_key, metadata, started
            )
        finally:
            await self.ledger.release(idempotency_key, owner)

    async def _execute_with_retries(
        self,
        unit_of_work: UnitOfWork,
        timeout_ms: int,
        max_retries: int,
        idempotency_key: Optional[str],
        metadata: Dict[str, Any],
        started: float,
    ) -> Any:
        last_error: Optional[BoostError] = None
        last_cause: Optional[BaseException] = None

        for attempt in range(1, max_retries + 1):
            state = self._begin(metadata)
            logger.info(
                "transaction_attempt_started",
                transaction_id=state.id,
                attempt=attempt,
                max_retries=max_retries,
                idempotency_key=idempotency_key,
            )

            try:
                result = await self._run_attempt(unit_of_work, state.id, timeout_ms)
            except Exception as e:
                state.status = TransactionStatus.FAILED
                timed_out = isinstance(e, asyncio.TimeoutError)
                metrics.record_attempt("timeout" if timed_out else "failed")

                await self._rollback(state)
                self._transactions.pop(state.id, None)

                error = classify_error(e)
                last_error, last_cause = error, e

                logger.warning(
                    "transaction_attempt_failed",
                    transaction_id=state.id,
                    attempt=attempt,
                    error_kind=error.kind.label,
                    retryable=error.retryable,
                    error=error.message,
                )

                if not self._should_retry(error):
                    log_boost_error(
                        error, transaction_id=state.id, attempt=attempt, metadata=metadata
                    )
                    metrics.record_transaction("failed", self._clock() - started)
                    if error is e:
                        raise
                    raise error from e

                if attempt == max_retries:
                    break

                delay_ms = backoff_delay_ms(attempt)
                logger.info(
                    "transaction_retry_scheduled",
                    attempt=attempt,
                    next_attempt=attempt + 1,
                    delay_ms=delay_ms,
                )
                await self._sleep(delay_ms / 1000)
                continue

            state.status = TransactionStatus.COMMITTED
            metrics.record_attempt("committed")

            if idempotency_key is not None:
                await self._cache_result(idempotency_key, result, state.id, metadata)

            self._transactions.pop(state.id, None)
            duration = self._clock() - started
            metrics.record_transaction("committed", duration)
            logger.info(
                "transaction_committed",
                transaction_id=state.id,
                attempt=attempt,
                operations=state.operation_log,
                duration_ms=int(duration * 1000),
            )
            return result

        if last_error is None:
            raise RuntimeError("Retry loop finished without an attempt")
        exhausted = infrastructure_failure(
            f"Transaction failed after {max_retries} attempts: {last_error.message}",
            operation="execute",
            original=last_cause,
            code=ErrorCode.TRANSACTION_RETRY_EXHAUSTED,
            retryable=False,
            attempts=max_retries,
            last_error=last_error.message,
            last_error_kind=last_error.kind.label,
            last_error_code=last_error.code.value,
        )
        log_boost_error(exhausted, idempotency_key=idempotency_key, metadata=metadata)
        metrics.record_transaction("retries_exhausted", self._clock() - started)
        raise exhausted from last_cause

    async def _cache_result(
        self, idempotency_key: str, result: Any, transaction_id: str, metadata: Dict[str, Any]
    ) -> None:
        """
        Store a committed result in the ledger.

        The work has already committed, so a failed write is logged and the
        result is still returned to the caller. A later call with the same key
        finds no record and runs again.
        """
        try:
            await self.ledger.store_result(idempotency_key, result, transaction_id)
        except Exception as e:
            error = infrastructure_failure(
                "Committed result could not be cached",
                operation="store_result",
                original=e,
                retryable=False,
                idempotency_key=idempotency_key,
            )
            log_boost_error(error, transaction_id=transaction_id, metadata=metadata)

    @staticmethod
    def _should_retry(error: BoostError) -> bool:
        # Rate limiting is enforced before execution; a unit of work that hits
        # it is not retried here.
        return error.retryable and error.kind is not ErrorKind.RATE_LIMITED

    @staticmethod
    def _in_flight_ttl(timeout_ms: int, max_retries: int) -> float:
        backoff_ms = sum(backoff_delay_ms(a) for a in range(1, max_retries))
        return (timeout_ms * max_retries + backoff_ms) / 1000

    def _begin(self, metadata: Dict[str, Any]) -> TransactionState:
        state = TransactionState(
            id=f"boost_tx_{uuid.uuid4()}",
            start_time=self._clock(),
            metadata=metadata,
        )
        self._transactions[state.id] = state
        return state

    async def _run_attempt(
        self, unit_of_work: UnitOfWork, transaction_id: str, timeout_ms: int
    ) -> Any:
        # The attempt task copies the context, so the unit of work logs with the id
        with log_context(transaction_id=transaction_id):
            task = asyncio.ensure_future(_call(unit_of_work, transaction_id))
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)

        if task not in done:
            task.add_done_callback(partial(self._abandoned_attempt_finished, transaction_id))
            logger.warning(
                "transaction_attempt_timed_out",
                transaction_id=transaction_id,
                timeout_ms=timeout_ms,
            )
            raise asyncio.TimeoutError(f"Transaction timeout after {timeout_ms}ms")

        return task.result()

    @staticmethod
    def _abandoned_attempt_finished(transaction_id: str, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            logger.info("abandoned_attempt_cancelled", transaction_id=transaction_id)
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "abandoned_attempt_failed", transaction_id=transaction_id, error=str(error)
            )
        else:
            logger.warning("abandoned_attempt_completed", transaction_id=transaction_id)

    async def _rollback(self, state: TransactionState) -> None:
        """Run compensating actions in reverse order; failures are logged and skipped."""
        if not state.rollback_stack:
            return

        logger.info(
            "transaction_rollback_started",
            transaction_id=state.id,
            actions=len(state.rollback_stack),
        )

        for index, action in enumerate(reversed(state.rollback_stack)):
            try:
                await _call(action)
                metrics.record_rollback_action("completed")
            except Exception as e:
                metrics.record_rollback_action("failed")
                logger.error(
                    "rollback_action_failed",
                    transaction_id=state.id,
                    position=len(state.rollback_stack) - index,
                    error=str(e),
                    exc_info=True,
                )

        state.status = TransactionStatus.ROLLED_BACK
        logger.info("transaction_rolled_back", transaction_id=state.id)
