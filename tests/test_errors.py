"""
Unit tests for the error taxonomy.
"""
import asyncio

import httpx
import pytest

from boost_payments.core.errors import (
    BoostError,
    ErrorCode,
    ErrorKind,
    classify_error,
    conflict,
    gateway_failure,
    is_operational,
    log_boost_error,
    rate_limited,
    validation_error,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://www.billplz-sandbox.com/api/v3/bills")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"status {status_code}", request=request, response=response)


class TestErrorKinds:
    """Kind attributes and defaults."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "kind,status,retryable",
        [
            (ErrorKind.VALIDATION, 400, False),
            (ErrorKind.NOT_FOUND, 404, False),
            (ErrorKind.CONFLICT, 409, False),
            (ErrorKind.RATE_LIMITED, 429, True),
            (ErrorKind.GATEWAY_FAILURE, 502, True),
            (ErrorKind.INFRASTRUCTURE_FAILURE, 500, True),
            (ErrorKind.DUPLICATE_REQUEST, 409, False),
        ],
    )
    def test_kind_defaults(self, kind: ErrorKind, status: int, retryable: bool) -> None:
        """Test every kind carries its HTTP status and retry policy."""
        error = BoostError(kind, "boom")

        assert error.http_status == status
        assert error.retryable is retryable
        assert error.correlation_id

    @pytest.mark.unit
    def test_retryable_override(self) -> None:
        """Test an individual error may override the kind's retry policy."""
        error = BoostError(ErrorKind.INFRASTRUCTURE_FAILURE, "boom", retryable=False)

        assert error.retryable is False
        assert error.kind.retryable is True

    @pytest.mark.unit
    def test_rate_limited_details(self) -> None:
        """Test RateLimited carries limit and window."""
        error = rate_limited("slow down", limit=5, window_ms=60000, retry_after_ms=1200)

        assert error.code is ErrorCode.RATE_LIMIT_EXCEEDED
        assert error.details == {"limit": 5, "windowMs": 60000, "retryAfterMs": 1200}

    @pytest.mark.unit
    def test_gateway_unavailable_maps_to_503(self) -> None:
        """Test gateway 503 keeps its status, other gateway failures are 502."""
        assert gateway_failure("down", status_code=503).http_status == 503
        assert gateway_failure("bad", status_code=500).http_status == 502


class TestErrorEnvelope:
    """HTTP envelope and log record."""

    @pytest.mark.unit
    def test_response_envelope_hides_details_by_default(self) -> None:
        """Test envelope shape without details."""
        error = validation_error("bad product", "product_id", "abc")

        body = error.to_response(request_id="req-1")

        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_INPUT"
        assert body["error"]["message"] == "bad product"
        assert body["error"]["requestId"] == "req-1"
        assert "timestamp" in body["error"]
        assert "details" not in body["error"]

    @pytest.mark.unit
    def test_response_envelope_with_details(self) -> None:
        """Test details are exposed on request and request ID falls back."""
        error = conflict("featured", ErrorCode.ALREADY_FEATURED, product_id=146)

        body = error.to_response(include_details=True)

        assert body["error"]["details"] == {"product_id": 146}
        assert body["error"]["requestId"] == error.correlation_id

    @pytest.mark.unit
    def test_log_boost_error_returns_record(self) -> None:
        """Test logging yields the frozen record."""
        error = conflict("featured", ErrorCode.ALREADY_FEATURED, product_id=146)

        record = log_boost_error(error, transaction_id="boost_tx_1")

        assert record.kind == "conflict"
        assert record.code == "ALREADY_FEATURED"
        assert record.http_status == 409
        assert record.retryable is False
        assert record.correlation_id == error.correlation_id


class TestClassifyError:
    """Mapping arbitrary failures onto the taxonomy."""

    @pytest.mark.unit
    def test_boost_error_passes_through(self) -> None:
        """Test classified errors are returned unchanged."""
        error = validation_error("bad")
        assert classify_error(error) is error

    @pytest.mark.unit
    def test_timeout_is_retryable_infrastructure(self) -> None:
        """Test timeouts are retryable with TRANSACTION_TIMEOUT."""
        error = classify_error(asyncio.TimeoutError("Transaction timeout after 10ms"))

        assert error.kind is ErrorKind.INFRASTRUCTURE_FAILURE
        assert error.code is ErrorCode.TRANSACTION_TIMEOUT
        assert error.retryable is True

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "message,kind",
        [
            ('duplicate key value violates unique constraint "payments_order_id_key"', ErrorKind.CONFLICT),
            ("JSON object requested, multiple (or no) rows returned: PGRST116", ErrorKind.NOT_FOUND),
            ("invalid input syntax for type integer", ErrorKind.VALIDATION),
            ("Too Many Requests", ErrorKind.RATE_LIMITED),
            ("Billplz returned an unexpected body", ErrorKind.GATEWAY_FAILURE),
            ("connection reset by peer", ErrorKind.INFRASTRUCTURE_FAILURE),
        ],
    )
    def test_message_markers(self, message: str, kind: ErrorKind) -> None:
        """Test storage and gateway messages are classified by marker."""
        assert classify_error(RuntimeError(message)).kind is kind

    @pytest.mark.unit
    def test_connection_reset_is_retryable(self) -> None:
        """Test transient storage failures are retryable."""
        assert classify_error(ConnectionError("ECONNRESET")).retryable is True

    @pytest.mark.unit
    def test_unknown_failure_is_not_retryable(self) -> None:
        """Test unclassifiable failures do not retry unless marked transient."""
        error = classify_error(KeyError("payment"))

        assert error.kind is ErrorKind.INFRASTRUCTURE_FAILURE
        assert error.code is ErrorCode.INTERNAL_ERROR
        assert error.retryable is False

    @pytest.mark.unit
    def test_transient_attribute_makes_failure_retryable(self) -> None:
        """Test exceptions declaring transient=True retry."""

        class FlakyError(Exception):
            transient = True

        assert classify_error(FlakyError("blip")).retryable is True

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status_code,kind",
        [
            (429, ErrorKind.RATE_LIMITED),
            (500, ErrorKind.GATEWAY_FAILURE),
            (503, ErrorKind.GATEWAY_FAILURE),
            (422, ErrorKind.VALIDATION),
        ],
    )
    def test_http_status_errors(self, status_code: int, kind: ErrorKind) -> None:
        """Test gateway HTTP failures map by status code."""
        assert classify_error(_status_error(status_code)).kind is kind

    @pytest.mark.unit
    def test_transport_error_is_gateway_failure(self) -> None:
        """Test unreachable gateway is a retryable gateway failure."""
        error = classify_error(httpx.ConnectError("connection refused"))

        assert error.kind is ErrorKind.GATEWAY_FAILURE
        assert error.retryable is True

    @pytest.mark.unit
    def test_is_operational(self) -> None:
        """Test only classified errors are operational."""
        assert is_operational(validation_error("bad"))
        assert not is_operational(ValueError("bug"))
