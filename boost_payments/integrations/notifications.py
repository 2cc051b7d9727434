"""
Gateway notification handling.

Billplz reports payment outcomes twice: a server-to-server webhook (flat form
body, signed in webhook form) and a browser redirect (``billplz[...]`` query
keys, signed in redirect form). Both are verified before anything is read
from them, then applied through the orchestrator keyed by bill ID and paid
state, so repeated notifications are applied once.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from boost_payments.core.boost_orders import BoostOrderService
from boost_payments.core.errors import (
    BoostError,
    ErrorCode,
    ErrorKind,
    classify_error,
    not_found,
    validation_error,
)
from boost_payments.core.signatures import (
    WEBHOOK_SIGNATURE_FIELD,
    SignatureVerifier,
    extract_redirect_signature,
    parse_redirect_params,
)
from boost_payments.database.models import Payment
from boost_payments.database.repository import BoostRepository

logger = structlog.get_logger(__name__)

_PAID_AT_FORMATS = ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M:%S")


@dataclass(frozen=True)
class PaymentNotification:
    """Normalized payment outcome reported by the gateway."""

    bill_id: str
    paid: bool
    source: str
    paid_at: Optional[datetime] = None
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"billplz:{self.bill_id}:{'paid' if self.paid else 'unpaid'}"


def _parse_paid(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _parse_paid_at(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    for fmt in _PAID_AT_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("unparseable_paid_at", paid_at=text)
        return None


def _optional(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def parse_webhook_payload(body: Mapping[str, Any]) -> PaymentNotification:
    """
    Normalize a webhook body.

    Args:
        body: Flat webhook fields (id, paid, paid_at, reference_1, ...)

    Returns:
        PaymentNotification: Parsed notification

    Raises:
        BoostError: Validation error when the bill ID is missing
    """
    bill_id = _optional(body.get("id"))
    if bill_id is None:
        raise validation_error("Webhook is missing the bill id", "id", None)

    return PaymentNotification(
        bill_id=bill_id,
        paid=_parse_paid(body.get("paid")),
        source="webhook",
        paid_at=_parse_paid_at(body.get("paid_at")),
        order_id=_optional(body.get("reference_1")),
        transaction_id=_optional(body.get("transaction_id")),
        transaction_status=_optional(body.get("transaction_status")),
    )


def parse_redirect_query(raw_query: str) -> PaymentNotification:
    """
    Normalize a redirect query string.

    Args:
        raw_query: Raw query with ``billplz[...]`` keys

    Returns:
        PaymentNotification: Parsed notification
    """
    params: Dict[str, str] = {}
    for key, value in parse_redirect_params(raw_query):
        if key.startswith("billplz[") and key.endswith("]"):
            params[key[len("billplz["):-1]] = value

    bill_id = _optional(params.get("id"))
    if bill_id is None:
        raise validation_error("Redirect is missing billplz[id]", "billplz[id]", None)

    return PaymentNotification(
        bill_id=bill_id,
        paid=_parse_paid(params.get("paid")),
        source="redirect",
        paid_at=_parse_paid_at(params.get("paid_at")),
        order_id=_optional(params.get("reference_1")),
        transaction_id=_optional(params.get("transaction_id")),
        transaction_status=_optional(params.get("transaction_status")),
    )


def _signature_rejected(source: str) -> BoostError:
    return BoostError(
        ErrorKind.VALIDATION,
        f"Invalid {source} signature",
        code=ErrorCode.WEBHOOK_VALIDATION_FAILED,
        http_status=401,
    )


def _signature_missing(source: str) -> BoostError:
    return BoostError(
        ErrorKind.VALIDATION,
        f"Missing {source} signature",
        code=ErrorCode.WEBHOOK_VALIDATION_FAILED,
    )


class NotificationHandler:
    """Verifies gateway notifications and applies them to payments."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        service: BoostOrderService,
        repository: BoostRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.verifier = verifier
        self.service = service
        self.repository = repository
        self._clock = clock

    async def handle_webhook(
        self, body: Mapping[str, Any], header_signature: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Verify and apply a webhook.

        Args:
            body: Webhook fields as received
            header_signature: X-Signature header, if the gateway sent one

        Returns:
            Dict[str, Any]: Outcome (processed, already_processed, already_processing)

        Raises:
            BoostError: 400 when unsigned, 401 when the signature does not match
        """
        signature = header_signature or _optional(body.get(WEBHOOK_SIGNATURE_FIELD))
        if not signature:
            raise _signature_missing("webhook")

        if not self.verifier.verify_webhook(body, signature):
            logger.warning("webhook_signature_rejected", bill_id=body.get("id"))
            raise _signature_rejected("webhook")

        notification = parse_webhook_payload(body)
        return await self.apply(notification)

    async def handle_redirect(self, raw_query: str) -> Dict[str, Any]:
        """
        Verify and apply a browser redirect.

        Args:
            raw_query: Raw, still-encoded query string

        Returns:
            Dict[str, Any]: Outcome plus the parsed paid flag and bill ID
        """
        signature = extract_redirect_signature(raw_query)
        if not signature:
            raise _signature_missing("redirect")

        if not self.verifier.verify_redirect(raw_query, signature):
            logger.warning("redirect_signature_rejected")
            raise _signature_rejected("redirect")

        notification = parse_redirect_query(raw_query)
        return await self.apply(notification)

    async def _resolve_payment(self, notification: PaymentNotification) -> Payment:
        try:
            payment = None
            if notification.order_id:
                payment = await self.repository.get_payment_by_order_id(notification.order_id)
            if payment is None:
                payment = await self.repository.get_payment_by_bill_id(notification.bill_id)
        except BoostError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        if payment is None:
            raise not_found(
                "Payment record not found",
                ErrorCode.PAYMENT_NOT_FOUND,
                bill_id=notification.bill_id,
                order_id=notification.order_id,
            )
        return payment

    async def apply(self, notification: PaymentNotification) -> Dict[str, Any]:
        """
        Apply a verified notification to its payment.

        Args:
            notification: Verified, parsed notification

        Returns:
            Dict[str, Any]: Outcome of the update
        """
        log = logger.bind(
            bill_id=notification.bill_id,
            source=notification.source,
            paid=notification.paid,
        )
        payment = await self._resolve_payment(notification)

        base = {
            "bill_id": notification.bill_id,
            "paid": notification.paid,
            "payment_id": payment.id,
        }

        if payment.status == "paid":
            log.info("payment_already_processed", payment_id=payment.id)
            return {**base, "status": "already_processed"}

        status = "paid" if notification.paid else "failed"
        paid_at = notification.paid_at
        if paid_at is None and notification.paid:
            paid_at = self._clock()

        try:
            result = await self.service.process_boost_payment(
                payment.id,
                notification.bill_id,
                status,
                paid_at=paid_at,
                idempotency_key=notification.idempotency_key,
            )
        except BoostError as e:
            if e.kind is ErrorKind.DUPLICATE_REQUEST:
                log.info("payment_notification_in_flight", payment_id=payment.id)
                return {**base, "status": "already_processing"}
            raise

        log.info("payment_notification_applied", payment_id=payment.id, payment_status=status)
        return {**base, "status": "processed", "result": result}
