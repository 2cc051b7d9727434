"""Core boost payment logic."""
from .errors import BoostError, ErrorCode, ErrorKind, classify_error
from .idempotency import IdempotencyLedger, create_idempotency_key
from .rate_limiter import FixedWindowRateLimiter, RedisRateLimiter
from .signatures import SignatureVerifier
from .transactions import TransactionOrchestrator

__all__ = [
    "BoostError",
    "ErrorCode",
    "ErrorKind",
    "classify_error",
    "IdempotencyLedger",
    "create_idempotency_key",
    "FixedWindowRateLimiter",
    "RedisRateLimiter",
    "SignatureVerifier",
    "TransactionOrchestrator",
]
