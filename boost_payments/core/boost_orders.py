"""
Boost order service.

Each public operation is a unit of work driven by the TransactionOrchestrator:
steps call the repository one row at a time and register a compensating action
as soon as the step has taken effect.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

import structlog

from boost_payments.core.errors import (
    BoostError,
    ErrorCode,
    ErrorKind,
    conflict,
    not_found,
    validation_error,
)
from boost_payments.core.transactions import TransactionOrchestrator
from boost_payments.database.repository import BoostRepository

logger = structlog.get_logger(__name__)

PAYMENT_STATUSES = ("pending", "paid", "failed")


class BillGateway(Protocol):
    """Gateway operations used while creating an order (see BillplzClient)."""

    async def create_bill(self, **params: Any) -> Dict[str, Any]:
        ...

    async def delete_bill(self, bill_id: str) -> None:
        ...

    def bill_url(self, bill_id: str) -> str:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _positive_int(value: Any, field_name: str, code: ErrorCode = ErrorCode.INVALID_INPUT) -> int:
    if isinstance(value, bool):
        raise validation_error(f"{field_name} must be a positive integer", field_name, value, code)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise validation_error(
            f"{field_name} must be a positive integer", field_name, value, code
        ) from None
    if number <= 0 or str(number) != str(value).strip():
        raise validation_error(f"{field_name} must be a positive integer", field_name, value, code)
    return number


class BoostOrderService:
    """Creates boost orders, applies payment outcomes and expires boosts."""

    def __init__(
        self,
        repository: BoostRepository,
        orchestrator: TransactionOrchestrator,
        timeout_ms: int = 30000,
        max_retries: int = 3,
        default_duration_hours: int = 24,
        gateway: Optional[BillGateway] = None,
        callback_url: str = "",
        redirect_url: str = "",
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize boost order service.

        Args:
            repository: Storage collaborator
            orchestrator: Transaction orchestrator driving each operation
            timeout_ms: Per-attempt timeout
            max_retries: Max attempts per operation
            default_duration_hours: Featured duration when a payment has none
            gateway: Bill gateway; orders are created without a bill when None
            callback_url: Webhook URL handed to the gateway
            redirect_url: Browser redirect URL handed to the gateway
            clock: Wall clock returning aware datetimes
        """
        self.repository = repository
        self.orchestrator = orchestrator
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.default_duration_hours = default_duration_hours
        self.gateway = gateway
        self.callback_url = callback_url
        self.redirect_url = redirect_url
        self._clock = clock

    async def _execute(
        self, unit_of_work, idempotency_key: Optional[str], metadata: Dict[str, Any]
    ) -> Any:
        return await self.orchestrator.execute(
            unit_of_work,
            timeout_ms=self.timeout_ms,
            max_retries=self.max_retries,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )

    async def create_boost_order(
        self,
        user_id: Any,
        product_id: Any,
        package_id: Any,
        idempotency_key: Optional[str] = None,
        payer_email: Optional[str] = None,
        payer_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a pending boost payment for one of the user's products.

        When a gateway is configured and a payer email is given, a bill is
        created as the last step and its ID and URL are added to the result.

        Args:
            user_id: Authenticated user (must own the product)
            product_id: Product to boost
            package_id: Boost package to buy
            idempotency_key: Optional key; replays return the first order
            payer_email: Email the bill is issued to
            payer_name: Name the bill is issued to

        Returns:
            Dict[str, Any]: payment_id, order_id, amount, status, product_id,
                package_id, transaction_id (plus bill_id and bill_url)

        Raises:
            BoostError: Validation, NotFound or Conflict on business rule failures
        """
        user_id = _positive_int(user_id, "user_id")
        product_id = _positive_int(product_id, "product_id")
        package_id = _positive_int(package_id, "package_id", ErrorCode.INVALID_PACKAGE)

        orchestrator = self.orchestrator

        async def unit_of_work(transaction_id: str) -> Dict[str, Any]:
            orchestrator.track_operation(transaction_id, "create_boost_order")

            product = await self.repository.get_product(product_id)
            if product is None:
                raise not_found(
                    "Product not found", ErrorCode.PRODUCT_NOT_FOUND, product_id=product_id
                )

            if product.seller_id != user_id:
                raise BoostError(
                    ErrorKind.VALIDATION,
                    "You can only boost your own products",
                    code=ErrorCode.PRODUCT_NOT_OWNED,
                    details={"product_id": product_id, "user_id": user_id},
                    http_status=403,
                )

            if product.is_featured:
                raise conflict(
                    "Product is already featured",
                    ErrorCode.ALREADY_FEATURED,
                    product_id=product_id,
                )

            package = await self.repository.get_active_package(package_id)
            if package is None:
                raise not_found(
                    "Boost package not found or inactive",
                    ErrorCode.PACKAGE_NOT_FOUND,
                    package_id=package_id,
                )

            orchestrator.track_operation(transaction_id, "create_payment_record")
            payment = await self.repository.create_payment(
                user_id=user_id,
                product_id=product_id,
                boost_package_id=package_id,
                amount=package.price,
                status="pending",
                payment_type="boost",
                feature_duration=package.duration_hours,
                order_id=f"boost_{transaction_id}",
            )

            async def delete_payment() -> None:
                await self.repository.delete_payment(payment.id)

            orchestrator.add_rollback_action(transaction_id, delete_payment, "delete_payment")

            result = {
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "amount": payment.amount,
                "status": payment.status,
                "product_id": product_id,
                "package_id": package_id,
                "transaction_id": transaction_id,
            }

            if self.gateway is not None and payer_email:
                orchestrator.track_operation(transaction_id, "create_bill")
                bill = await self.gateway.create_bill(
                    name=payer_name or payer_email,
                    email=payer_email,
                    amount=package.price,
                    description=f"Boost: {package.name} for {product.name}",
                    callback_url=self.callback_url,
                    redirect_url=self.redirect_url,
                    reference_1=payment.order_id,
                )
                bill_id = bill["id"]

                async def delete_bill() -> None:
                    await self.gateway.delete_bill(bill_id)

                orchestrator.add_rollback_action(transaction_id, delete_bill, "delete_bill")

                orchestrator.track_operation(transaction_id, "attach_bill")
                await self.repository.update_payment(payment.id, bill_id=bill_id)

                result["bill_id"] = bill_id
                result["bill_url"] = bill.get("url") or self.gateway.bill_url(bill_id)

            return result

        return await self._execute(
            unit_of_work,
            idempotency_key,
            {"user_id": user_id, "product_id": product_id, "package_id": package_id},
        )

    async def process_boost_payment(
        self,
        payment_id: int,
        bill_id: Optional[str],
        status: str,
        paid_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply a payment outcome and, on success, feature the product.

        Args:
            payment_id: Payment record ID
            bill_id: Gateway bill ID
            status: New payment status ("pending", "paid" or "failed")
            paid_at: When the gateway reports the payment completed
            idempotency_key: Optional key (notifications use the bill ID)

        Returns:
            Dict[str, Any]: payment_id, status, product_id, transaction_id, bill_id,
                and featured_until when the product was featured
        """
        if status not in PAYMENT_STATUSES:
            raise validation_error(f"Invalid payment status: {status}", "status", status)

        orchestrator = self.orchestrator

        async def unit_of_work(transaction_id: str) -> Dict[str, Any]:
            orchestrator.track_operation(transaction_id, "process_boost_payment")

            payment = await self.repository.get_payment(payment_id)
            if payment is None:
                raise not_found(
                    "Payment record not found", ErrorCode.PAYMENT_NOT_FOUND, payment_id=payment_id
                )

            previous = {
                "status": payment.status,
                "bill_id": payment.bill_id,
                "paid_at": payment.paid_at,
            }

            orchestrator.track_operation(transaction_id, "update_payment_status")
            await self.repository.update_payment(
                payment_id, status=status, bill_id=bill_id, paid_at=paid_at
            )

            async def restore_payment() -> None:
                await self.repository.update_payment(payment_id, **previous)

            orchestrator.add_rollback_action(transaction_id, restore_payment, "restore_payment")

            result: Dict[str, Any] = {
                "payment_id": payment_id,
                "status": status,
                "product_id": payment.product_id,
                "transaction_id": transaction_id,
                "bill_id": bill_id,
            }

            if status == "paid" and payment.product_id:
                orchestrator.track_operation(transaction_id, "update_product_featured_status")

                product = await self.repository.get_product(payment.product_id)
                duration_hours = payment.feature_duration or self.default_duration_hours
                now = self._clock()
                featured_until = now + timedelta(hours=duration_hours)

                await self.repository.update_product(
                    payment.product_id,
                    is_featured=True,
                    status="featured",
                    featured_at=now,
                    featured_until=featured_until,
                    featured_duration_hours=duration_hours,
                )

                if product is not None:
                    product_before = {
                        "is_featured": product.is_featured,
                        "status": product.status,
                        "featured_at": product.featured_at,
                        "featured_until": product.featured_until,
                        "featured_duration_hours": product.featured_duration_hours,
                    }

                    async def restore_product() -> None:
                        await self.repository.update_product(payment.product_id, **product_before)

                    orchestrator.add_rollback_action(
                        transaction_id, restore_product, "restore_product"
                    )

                result["featured_until"] = featured_until.isoformat()
                logger.info(
                    "product_featured",
                    product_id=payment.product_id,
                    featured_until=featured_until.isoformat(),
                    transaction_id=transaction_id,
                )

            return result

        return await self._execute(
            unit_of_work,
            idempotency_key,
            {"payment_id": payment_id, "bill_id": bill_id, "status": status},
        )

    async def expire_featured_products(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Clear the featured flag on products whose boost has run out.

        Returns:
            Dict[str, Any]: expired_count, expired_products, transaction_id
        """
        now = now or self._clock()
        orchestrator = self.orchestrator

        async def unit_of_work(transaction_id: str) -> Dict[str, Any]:
            orchestrator.track_operation(transaction_id, "expire_featured_products")
            expired = await self.repository.find_expired_featured_products(now)
            if not expired:
                logger.debug("no_expired_featured_products", now=now.isoformat())
                return {"expired_count": 0, "expired_products": [], "transaction_id": transaction_id}

            product_ids = [product.id for product in expired]
            await self.repository.clear_featured(product_ids)
            logger.info(
                "featured_products_expired",
                count=len(product_ids),
                product_ids=product_ids,
                transaction_id=transaction_id,
            )
            return {
                "expired_count": len(product_ids),
                "expired_products": product_ids,
                "transaction_id": transaction_id,
            }

        return await self._execute(unit_of_work, None, {"operation": "expire_featured_products"})
