"""
Error taxonomy for boost payment operations.

Every failure surfaced by the orchestrator is a BoostError tagged with one
ErrorKind. The kind carries the HTTP status class and the default retry
policy as data, so the retry decision is a lookup rather than an isinstance
ladder.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ErrorKind(Enum):
    """Closed set of error kinds: (value, http status, retryable by default)."""

    VALIDATION = ("validation", 400, False)
    NOT_FOUND = ("not_found", 404, False)
    CONFLICT = ("conflict", 409, False)
    RATE_LIMITED = ("rate_limited", 429, True)
    GATEWAY_FAILURE = ("gateway_failure", 502, True)
    INFRASTRUCTURE_FAILURE = ("infrastructure_failure", 500, True)
    DUPLICATE_REQUEST = ("duplicate_request", 409, False)

    def __init__(self, label: str, http_status: int, retryable: bool):
        self.label = label
        self.http_status = http_status
        self.retryable = retryable


class ErrorCode(str, Enum):
    """Machine-readable codes surfaced in error responses."""

    INVALID_INPUT = "INVALID_INPUT"
    INVALID_PACKAGE = "INVALID_PACKAGE"
    PRODUCT_NOT_OWNED = "PRODUCT_NOT_OWNED"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    PACKAGE_NOT_FOUND = "PACKAGE_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    ALREADY_FEATURED = "ALREADY_FEATURED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    BILLPLZ_ERROR = "BILLPLZ_ERROR"
    WEBHOOK_VALIDATION_FAILED = "WEBHOOK_VALIDATION_FAILED"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    DATABASE_ERROR = "DATABASE_ERROR"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    TRANSACTION_RETRY_EXHAUSTED = "TRANSACTION_RETRY_EXHAUSTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Default code per kind when the caller does not pick a more specific one
_DEFAULT_CODES = {
    ErrorKind.VALIDATION: ErrorCode.INVALID_INPUT,
    ErrorKind.NOT_FOUND: ErrorCode.PRODUCT_NOT_FOUND,
    ErrorKind.CONFLICT: ErrorCode.DUPLICATE_REQUEST,
    ErrorKind.RATE_LIMITED: ErrorCode.RATE_LIMIT_EXCEEDED,
    ErrorKind.GATEWAY_FAILURE: ErrorCode.BILLPLZ_ERROR,
    ErrorKind.INFRASTRUCTURE_FAILURE: ErrorCode.DATABASE_ERROR,
    ErrorKind.DUPLICATE_REQUEST: ErrorCode.DUPLICATE_REQUEST,
}


@dataclass(frozen=True)
class ErrorRecord:
    """Immutable snapshot of a classified failure, as logged."""

    kind: str
    code: str
    http_status: int
    retryable: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    timestamp: str = ""


class BoostError(Exception):
    """
    A classified failure.

    Attributes are fixed at construction; retryability defaults to the kind's
    policy but an individual error may override it (e.g. an unclassified
    failure that is not known to be transient).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or _DEFAULT_CODES[kind]
        self.details: Dict[str, Any] = dict(details or {})
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.retryable = kind.retryable if retryable is None else retryable
        self.http_status = http_status or kind.http_status
        self.timestamp = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"BoostError(kind={self.kind.label}, code={self.code.value}, message={self.message!r})"

    def to_record(self) -> ErrorRecord:
        """Freeze the error into an ErrorRecord."""
        return ErrorRecord(
            kind=self.kind.label,
            code=self.code.value,
            http_status=self.http_status,
            retryable=self.retryable,
            message=self.message,
            details=dict(self.details),
            correlation_id=self.correlation_id,
            timestamp=self.timestamp.isoformat(),
        )

    def to_response(
        self, request_id: Optional[str] = None, include_details: bool = False
    ) -> Dict[str, Any]:
        """
        Build the error envelope returned to HTTP clients.

        Args:
            request_id: Request ID (falls back to the correlation ID)
            include_details: Whether to expose the details map

        Returns:
            Dict[str, Any]: ``{"success": False, "error": {...}}``
        """
        body: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "requestId": request_id or self.correlation_id,
        }
        if include_details and self.details:
            body["details"] = self.details
        return {"success": False, "error": body}


def validation_error(
    message: str,
    field_name: Optional[str] = None,
    value: Any = None,
    code: ErrorCode = ErrorCode.INVALID_INPUT,
    **kwargs: Any,
) -> BoostError:
    details = {"field": field_name, "value": value} if field_name else {}
    return BoostError(ErrorKind.VALIDATION, message, code=code, details=details, **kwargs)


def not_found(message: str, code: ErrorCode, **details: Any) -> BoostError:
    return BoostError(ErrorKind.NOT_FOUND, message, code=code, details=details)


def conflict(message: str, code: ErrorCode, **details: Any) -> BoostError:
    return BoostError(ErrorKind.CONFLICT, message, code=code, details=details)


def rate_limited(message: str, limit: int, window_ms: int, retry_after_ms: int) -> BoostError:
    return BoostError(
        ErrorKind.RATE_LIMITED,
        message,
        details={"limit": limit, "windowMs": window_ms, "retryAfterMs": retry_after_ms},
    )


def gateway_failure(message: str, status_code: Optional[int] = None, **details: Any) -> BoostError:
    # 503 when the gateway answered that it is unavailable, 502 otherwise
    http_status = 503 if status_code == 503 else 502
    return BoostError(
        ErrorKind.GATEWAY_FAILURE,
        message,
        code=ErrorCode.BILLPLZ_ERROR,
        details={"status_code": status_code, **details},
        http_status=http_status,
    )


def infrastructure_failure(
    message: str,
    operation: str,
    original: Optional[BaseException] = None,
    code: ErrorCode = ErrorCode.DATABASE_ERROR,
    retryable: Optional[bool] = None,
    **details: Any,
) -> BoostError:
    return BoostError(
        ErrorKind.INFRASTRUCTURE_FAILURE,
        message,
        code=code,
        details={
            "operation": operation,
            "original_error": str(original) if original is not None else None,
            **details,
        },
        retryable=retryable,
    )


def duplicate_request(message: str, idempotency_key: str, **details: Any) -> BoostError:
    return BoostError(
        ErrorKind.DUPLICATE_REQUEST,
        message,
        details={"idempotency_key": idempotency_key, **details},
    )


# Substring markers surfaced by the storage and gateway collaborators.
# Checked in order; first match wins.
_MESSAGE_MARKERS = (
    (ErrorKind.CONFLICT, ("duplicate key", "unique constraint", "already exists", "23505")),
    (ErrorKind.NOT_FOUND, ("not found", "no rows", "pgrst116")),
    (
        ErrorKind.VALIDATION,
        ("invalid input", "violates check constraint", "22p02", "malformed", "invalid"),
    ),
    (ErrorKind.RATE_LIMITED, ("rate limit", "too many requests")),
    (ErrorKind.GATEWAY_FAILURE, ("billplz", "bad gateway", "service unavailable")),
    (
        ErrorKind.INFRASTRUCTURE_FAILURE,
        ("timeout", "timed out", "econnreset", "connection reset", "connection refused"),
    ),
)


def classify_error(error: BaseException) -> BoostError:
    """
    Map an arbitrary failure onto the error taxonomy.

    BoostErrors pass through unchanged. Unclassifiable failures become
    InfrastructureFailure, retryable only when the exception declares
    ``transient = True``.

    Args:
        error: The failure raised by a unit of work or collaborator

    Returns:
        BoostError: Classified error
    """
    if isinstance(error, BoostError):
        return error

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return infrastructure_failure(
            str(error) or "Operation timed out",
            operation="timeout",
            original=error,
            code=ErrorCode.TRANSACTION_TIMEOUT,
            retryable=True,
        )

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code == 429:
            return BoostError(ErrorKind.RATE_LIMITED, str(error), details={"status_code": 429})
        if status_code >= 500:
            return gateway_failure(str(error), status_code=status_code)
        return validation_error(str(error), code=ErrorCode.BILLPLZ_ERROR)

    if isinstance(error, httpx.TransportError):
        return gateway_failure(str(error) or type(error).__name__)

    message = str(error)
    lowered = message.lower()
    transient = bool(getattr(error, "transient", False))

    for kind, markers in _MESSAGE_MARKERS:
        if any(marker in lowered for marker in markers):
            if kind is ErrorKind.INFRASTRUCTURE_FAILURE:
                return infrastructure_failure(
                    message, operation="storage", original=error, retryable=True
                )
            if kind is ErrorKind.GATEWAY_FAILURE:
                return gateway_failure(message)
            return BoostError(kind, message, details={"original_error": message})

    return infrastructure_failure(
        message or type(error).__name__,
        operation="unclassified",
        original=error,
        code=ErrorCode.INTERNAL_ERROR,
        retryable=transient,
        error_type=type(error).__name__,
    )


def is_operational(error: BaseException) -> bool:
    """Operational errors are anticipated failures; anything else is a programmer error."""
    return isinstance(error, BoostError)


def log_boost_error(error: BoostError, **context: Any) -> ErrorRecord:
    """
    Log a classified error with its correlation ID and caller context.

    Args:
        error: Classified error
        **context: Caller-supplied context (transaction_id, metadata, ...)

    Returns:
        ErrorRecord: The record that was logged
    """
    record = error.to_record()
    log = logger.warning if record.http_status < 500 else logger.error
    log(
        "boost_error",
        error_kind=record.kind,
        error_code=record.code,
        http_status=record.http_status,
        retryable=record.retryable,
        error_message=record.message,
        details=record.details,
        correlation_id=record.correlation_id,
        **context,
    )
    return record
