"""
Service wiring for the API.

Builds the ledger, rate limiter, orchestrator and services from Settings and
hangs them off ``app.state`` so route handlers and tests share one graph.
"""
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from fastapi import Header, Request

from boost_payments.config import Settings
from boost_payments.core.boost_orders import BoostOrderService
from boost_payments.core.errors import BoostError, ErrorCode, ErrorKind
from boost_payments.core.idempotency import IdempotencyLedger
from boost_payments.core.rate_limiter import FixedWindowRateLimiter, RedisRateLimiter
from boost_payments.core.signatures import SignatureVerifier
from boost_payments.core.store import InMemoryStore, RedisStore
from boost_payments.core.transactions import TransactionOrchestrator
from boost_payments.database.repository import BoostRepository
from boost_payments.integrations.billplz_client import BillplzClient
from boost_payments.integrations.notifications import NotificationHandler
from boost_payments.monitoring.health import HealthCheck
from boost_payments.workers.maintenance import MaintenanceWorker

logger = structlog.get_logger(__name__)


@dataclass
class BoostServices:
    """Everything a request handler needs, built once per application."""

    settings: Settings
    ledger: IdempotencyLedger
    rate_limiter: Any
    orchestrator: TransactionOrchestrator
    repository: BoostRepository
    orders: BoostOrderService
    notifications: NotificationHandler
    verifier: SignatureVerifier
    health: HealthCheck
    maintenance: MaintenanceWorker
    gateway: Optional[BillplzClient] = None
    store: Any = None

    async def close(self) -> None:
        """Let running executions finish, stop the worker and release network clients."""
        await self.orchestrator.drain()
        await self.maintenance.stop()
        if self.gateway is not None:
            await self.gateway.close()
        for resource in (self.store, self.rate_limiter):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()


def build_services(
    settings: Settings,
    repository: BoostRepository,
    gateway: Optional[BillplzClient] = None,
    session_factory: Any = None,
) -> BoostServices:
    """
    Assemble the service graph.

    Args:
        settings: Application settings
        repository: Storage collaborator
        gateway: Billplz client (built from settings when a secret key is set)
        session_factory: Session factory for the database health check

    Returns:
        BoostServices: Wired services
    """
    if settings.redis_url:
        store: Any = RedisStore(settings.redis_url)
        rate_limiter: Any = RedisRateLimiter(settings.redis_url)
        logger.info("shared_state_backend", backend="redis")
    else:
        store = InMemoryStore()
        rate_limiter = FixedWindowRateLimiter()
        logger.warning(
            "shared_state_backend",
            backend="memory",
            message="idempotency and rate limits are not shared across instances",
        )

    if gateway is None and settings.billplz_secret_key:
        gateway = BillplzClient(
            base_url=settings.billplz_base_url,
            secret_key=settings.billplz_secret_key,
            collection_id=settings.billplz_collection_id,
            timeout_seconds=settings.billplz_timeout_seconds,
        )

    ledger = IdempotencyLedger(store, ttl_seconds=settings.idempotency_ttl_seconds)
    orchestrator = TransactionOrchestrator(ledger)
    base_url = settings.public_base_url.rstrip("/")
    orders = BoostOrderService(
        repository,
        orchestrator,
        timeout_ms=settings.transaction_timeout_ms,
        max_retries=settings.transaction_max_retries,
        default_duration_hours=settings.default_feature_duration_hours,
        gateway=gateway,
        callback_url=f"{base_url}/api/payments/webhook",
        redirect_url=f"{base_url}/api/payments/process-redirect",
    )
    verifier = SignatureVerifier(
        settings.billplz_xsign_key, test_mode=settings.signature_test_mode
    )

    return BoostServices(
        settings=settings,
        ledger=ledger,
        rate_limiter=rate_limiter,
        orchestrator=orchestrator,
        repository=repository,
        orders=orders,
        notifications=NotificationHandler(verifier, orders, repository),
        verifier=verifier,
        health=HealthCheck(session_factory=session_factory, redis_url=settings.redis_url),
        maintenance=MaintenanceWorker(
            ledger,
            rate_limiter,
            orchestrator,
            service=orders,
            interval_seconds=settings.maintenance_interval_seconds,
            stale_after_seconds=settings.transaction_stale_after_seconds,
        ),
        gateway=gateway,
        store=store,
    )


def get_services(request: Request) -> BoostServices:
    return request.app.state.services


def get_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> int:
    """User identity forwarded by the upstream auth layer."""
    if not x_user_id or not x_user_id.isdigit() or int(x_user_id) <= 0:
        raise BoostError(
            ErrorKind.VALIDATION,
            "Authentication required",
            code=ErrorCode.INVALID_INPUT,
            http_status=401,
        )
    return int(x_user_id)


def client_ip(request: Request) -> str:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(
    services: BoostServices, identity: str, operation: str
) -> None:
    """
    Admit one request or raise RateLimited.

    Raises:
        BoostError: RATE_LIMITED with {limit, windowMs, retryAfterMs}
    """
    settings = services.settings
    limit = settings.get_rate_limits()[operation]
    admission = await services.rate_limiter.admit(
        identity, operation, limit, settings.rate_limit_window_ms
    )
    if not admission.allowed:
        raise admission.to_error(operation)
