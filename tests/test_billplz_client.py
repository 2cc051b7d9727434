"""
Unit tests for the Billplz client.
"""
from typing import List
from urllib.parse import parse_qs

import httpx
import pytest

from boost_payments.core.errors import BoostError, ErrorCode, ErrorKind
from boost_payments.integrations.billplz_client import BillplzClient

BASE_URL = "https://www.billplz-sandbox.com/api/v3"


def _client(handler, max_attempts: int = 3) -> BillplzClient:
    return BillplzClient(
        base_url=BASE_URL,
        secret_key="73eb57f0-7d4e-42b9-a544-aeac6e4b0f81",
        collection_id="inbmmepb",
        max_attempts=max_attempts,
        backoff_multiplier=0,
        transport=httpx.MockTransport(handler),
    )


class TestBillplzClient:
    """Test suite for BillplzClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_bill_posts_form(self) -> None:
        """Test bills are created with basic auth and form fields."""
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200, json={"id": "8X0Iyzaw", "url": f"{BASE_URL[:-7]}/bills/8X0Iyzaw"}
            )

        client = _client(handler)
        bill = await client.create_bill(
            name="Aina",
            email="seller@example.com",
            amount=500,
            description="Boost: Package 2 for Product 146",
            callback_url="https://shop.example.com/api/payments/webhook",
            redirect_url="https://shop.example.com/api/payments/process-redirect",
            reference_1="boost_boost_tx_1",
        )
        await client.close()

        assert bill["id"] == "8X0Iyzaw"
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{BASE_URL}/bills"
        assert request.headers["authorization"].startswith("Basic ")

        form = parse_qs(request.content.decode())
        assert form["collection_id"] == ["inbmmepb"]
        assert form["amount"] == ["500"]
        assert form["reference_1_label"] == ["Order ID"]
        assert form["reference_1"] == ["boost_boost_tx_1"]

    @pytest.mark.unit
    def test_bill_url(self) -> None:
        """Test bill URLs point at the site root, not the API."""
        client = _client(lambda request: httpx.Response(200))
        assert client.bill_url("abc") == "https://www.billplz-sandbox.com/bills/abc"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_server_errors(self) -> None:
        """Test 5xx responses are retried and a later success is returned."""
        responses = [httpx.Response(502), httpx.Response(500), httpx.Response(200, json={"id": "b"})]

        client = _client(lambda request: responses.pop(0))
        bill = await client.get_bill("b")
        await client.close()

        assert bill == {"id": "b"}
        assert responses == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_exhausted(self) -> None:
        """Test persistent 5xx becomes a retryable gateway failure."""
        calls: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(503)

        client = _client(handler, max_attempts=2)
        with pytest.raises(BoostError) as exc_info:
            await client.get_bill("b")
        await client.close()

        assert len(calls) == 2
        assert exc_info.value.kind is ErrorKind.GATEWAY_FAILURE
        assert exc_info.value.http_status == 503
        assert exc_info.value.retryable is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self) -> None:
        """Test 422 is a non-retryable validation error with the gateway's detail."""
        calls: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(
                422, json={"error": {"type": "RecordInvalid", "message": ["Email is invalid"]}}
            )

        client = _client(handler)
        with pytest.raises(BoostError) as exc_info:
            await client.get_bill("b")
        await client.close()

        assert len(calls) == 1
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.code is ErrorCode.BILLPLZ_ERROR
        assert "Email is invalid" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unauthorized(self) -> None:
        """Test bad credentials surface a clear message."""
        client = _client(lambda request: httpx.Response(401))
        with pytest.raises(BoostError) as exc_info:
            await client.get_bill("b")
        await client.close()

        assert "authentication failed" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_throttled_is_unavailable(self) -> None:
        """Test 429 after retries maps to a 503 gateway failure."""
        client = _client(lambda request: httpx.Response(429))
        with pytest.raises(BoostError) as exc_info:
            await client.get_bill("b")
        await client.close()

        assert exc_info.value.kind is ErrorKind.GATEWAY_FAILURE
        assert exc_info.value.http_status == 503

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        """Test transport failures become gateway failures."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler, max_attempts=2)
        with pytest.raises(BoostError) as exc_info:
            await client.delete_bill("b")
        await client.close()

        assert exc_info.value.kind is ErrorKind.GATEWAY_FAILURE
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
