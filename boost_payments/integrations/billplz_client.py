"""
Billplz API client with retry logic and error classification.

Implements:
- HTTP basic auth with the secret key
- Form-encoded bill creation
- Exponential backoff for transient failures (transport errors, 429, 5xx)
- Mapping of gateway failures onto BoostError kinds
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from boost_payments.core.errors import (
    BoostError,
    ErrorCode,
    ErrorKind,
    gateway_failure,
    validation_error,
)
from boost_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_STATUS_MESSAGES = {
    401: "Billplz authentication failed - invalid API credentials",
    403: "Billplz access forbidden - insufficient permissions or invalid collection ID",
    422: "Billplz validation error - invalid request parameters",
}


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return False


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            return " ".join(message) if isinstance(message, list) else message
    return None


class BillplzClient:
    """
    Async wrapper for the Billplz v3 bills API.

    Transient failures are retried inside the client; everything that still
    fails is raised as a BoostError so callers and the transaction
    orchestrator see one error vocabulary.
    """

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        collection_id: str,
        timeout_seconds: float = 15.0,
        max_attempts: int = 3,
        backoff_multiplier: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Billplz client.

        Args:
            base_url: API base URL (e.g. https://www.billplz.com/api/v3)
            secret_key: API secret key (basic auth username)
            collection_id: Collection bills are created in
            timeout_seconds: HTTP timeout
            max_attempts: Attempts per request, including the first
            backoff_multiplier: Exponential backoff multiplier in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.collection_id = collection_id
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(secret_key, ""),
            timeout=timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )

        logger.info(
            "billplz_client_initialized",
            base_url=self.base_url,
            sandbox="sandbox" in self.base_url,
        )

    @property
    def view_base_url(self) -> str:
        """Public site root (API base without the /api/... suffix)."""
        root, sep, _ = self.base_url.partition("/api")
        return root if sep else self.base_url

    def bill_url(self, bill_id: str) -> str:
        """URL where the payer completes a bill."""
        return f"{self.view_base_url}/bills/{bill_id}"

    async def _request(
        self, operation: str, method: str, path: str, data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_multiplier, max=8),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "billplz_request_retry",
                            operation=operation,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    response = await self._client.request(method, path, data=data)
                    response.raise_for_status()
        except httpx.HTTPError as e:
            metrics.record_gateway_call(operation, "error", time.perf_counter() - started)
            raise self._to_boost_error(operation, e) from e

        metrics.record_gateway_call(operation, "success", time.perf_counter() - started)
        return response.json() if response.content else {}

    @staticmethod
    def _to_boost_error(operation: str, error: httpx.HTTPError) -> BoostError:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            message = _STATUS_MESSAGES.get(status, f"Billplz API error: {status}")
            detail = _error_detail(error.response)
            if detail:
                message = f"{message}. Details: {detail}"

            logger.error(
                "billplz_api_error",
                operation=operation,
                status_code=status,
                error_message=message,
            )

            if status == 429:
                return BoostError(
                    ErrorKind.GATEWAY_FAILURE,
                    message,
                    code=ErrorCode.BILLPLZ_ERROR,
                    details={"status_code": status, "operation": operation},
                    http_status=503,
                )
            if status >= 500:
                return gateway_failure(message, status_code=status, operation=operation)
            return validation_error(message, code=ErrorCode.BILLPLZ_ERROR)

        logger.error("billplz_unreachable", operation=operation, error=str(error))
        return gateway_failure(
            f"Billplz unreachable: {error}", operation=operation, error_type=type(error).__name__
        )

    async def create_bill(
        self,
        name: str,
        email: str,
        amount: int,
        description: str,
        callback_url: str,
        redirect_url: str,
        reference_1: Optional[str] = None,
        reference_2: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a bill.

        Args:
            name: Payer name
            email: Payer email
            amount: Amount in sen
            description: Bill description (max 200 chars on Billplz)
            callback_url: Webhook URL
            redirect_url: Browser redirect URL
            reference_1: Our order ID
            reference_2: Optional second reference

        Returns:
            Dict[str, Any]: Bill as returned by Billplz (id, url, state, ...)
        """
        payload: Dict[str, Any] = {
            "collection_id": self.collection_id,
            "name": name,
            "email": email,
            "amount": str(int(round(amount))),
            "description": description[:200],
            "callback_url": callback_url,
            "redirect_url": redirect_url,
        }
        if reference_1:
            payload["reference_1_label"] = "Order ID"
            payload["reference_1"] = reference_1
        if reference_2:
            payload["reference_2"] = reference_2

        logger.info(
            "creating_billplz_bill",
            amount=payload["amount"],
            reference_1=reference_1,
        )
        bill = await self._request("create_bill", "POST", "/bills", data=payload)
        logger.info("billplz_bill_created", bill_id=bill.get("id"), reference_1=reference_1)
        return bill

    async def get_bill(self, bill_id: str) -> Dict[str, Any]:
        return await self._request("get_bill", "GET", f"/bills/{bill_id}")

    async def delete_bill(self, bill_id: str) -> None:
        await self._request("delete_bill", "DELETE", f"/bills/{bill_id}")
        logger.info("billplz_bill_deleted", bill_id=bill_id)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
