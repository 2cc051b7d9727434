"""
API routes for boost payments.
"""
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response, status
from fastapi.responses import RedirectResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from boost_payments.core.errors import validation_error
from boost_payments.core.idempotency import create_idempotency_key

from .dependencies import (
    BoostServices,
    client_ip,
    enforce_rate_limit,
    get_services,
    get_user_id,
)
from .schemas import (
    BoostOrderResponse,
    CreateBoostOrderRequest,
    HealthCheckResponse,
    NotificationResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/api/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "/boost-orders",
    response_model=BoostOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a boost order",
    description="Create a pending boost payment and a gateway bill, at most once per key",
)
async def create_boost_order(
    body: CreateBoostOrderRequest,
    request: Request,
    user_id: int = Depends(get_user_id),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: BoostServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Create a boost order.

    Replays with the same Idempotency-Key return the first order.
    """
    await enforce_rate_limit(services, f"{client_ip(request)}:{user_id}", "boost_order")

    client_key = idempotency_key or body.idempotency_key
    ledger_key = (
        create_idempotency_key(user_id, "create_order", {"client_key": client_key})
        if client_key
        else None
    )

    logger.info(
        "api_create_boost_order_request",
        user_id=user_id,
        product_id=body.product_id,
        package_id=body.package_id,
        idempotent=ledger_key is not None,
    )

    order = await services.orders.create_boost_order(
        user_id,
        body.product_id,
        body.package_id,
        idempotency_key=ledger_key,
        payer_email=body.email,
        payer_name=body.name,
    )
    return {"success": True, "data": order}


async def _webhook_body(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            raise validation_error("Webhook body is not valid JSON") from None
        if not isinstance(payload, dict):
            raise validation_error("Webhook body must be an object")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@payment_router.post(
    "/webhook",
    response_model=NotificationResponse,
    summary="Billplz webhook",
    description="Verify and apply a server-to-server payment notification",
)
async def billplz_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
    services: BoostServices = Depends(get_services),
) -> Dict[str, Any]:
    """Handle a Billplz callback (form or JSON body)."""
    await enforce_rate_limit(services, client_ip(request), "webhook")

    body = await _webhook_body(request)
    logger.info("api_webhook_received", bill_id=body.get("id"), paid=body.get("paid"))

    result = await services.notifications.handle_webhook(body, header_signature=x_signature)
    return {"success": True, "data": result}


@payment_router.get(
    "/process-redirect",
    summary="Billplz redirect",
    description="Verify the signed redirect query and send the browser to the dashboard",
)
async def process_redirect(
    request: Request,
    services: BoostServices = Depends(get_services),
) -> RedirectResponse:
    """Handle the browser redirect after payment."""
    await enforce_rate_limit(services, client_ip(request), "boost_payment")

    # Signature covers the query exactly as sent, so use the undecoded string
    raw_query = request.scope.get("query_string", b"").decode("latin-1")
    result = await services.notifications.handle_redirect(raw_query)

    query = urlencode(
        {"payment": "success" if result["paid"] else "failed", "bill_id": result["bill_id"]}
    )
    base_url = services.settings.public_base_url.rstrip("/")
    return RedirectResponse(
        f"{base_url}/seller/dashboard?{query}", status_code=status.HTTP_303_SEE_OTHER
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check storage dependencies",
)
async def health(
    response: Response, services: BoostServices = Depends(get_services)
) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    result = await services.health.check_all()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
