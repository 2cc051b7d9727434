"""
Prometheus metrics for boost payment monitoring.

Tracks:
- Orchestrated transactions by outcome and attempt
- Compensating rollback actions
- Idempotency ledger hits
- Rate limiter decisions
- Gateway signature verifications
- Billplz API calls
"""
from prometheus_client import Counter, Histogram

# Transaction metrics
transactions_total = Counter(
    "boost_transactions_total",
    "Total orchestrated transactions by final outcome",
    ["outcome"],  # committed, failed, retries_exhausted, idempotent_replay
)

transaction_attempts_total = Counter(
    "boost_transaction_attempts_total",
    "Total unit-of-work attempts",
    ["status"],  # committed, failed, timeout
)

transaction_duration_seconds = Histogram(
    "boost_transaction_duration_seconds",
    "End-to-end transaction duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

rollback_actions_total = Counter(
    "boost_rollback_actions_total",
    "Compensating actions executed",
    ["status"],  # completed, failed
)

# Idempotency metrics
idempotency_lookups_total = Counter(
    "boost_idempotency_lookups_total",
    "Idempotency ledger lookups",
    ["result"],  # hit, miss
)

# Rate limiting metrics
rate_limit_decisions_total = Counter(
    "boost_rate_limit_decisions_total",
    "Rate limiter decisions",
    ["operation", "decision"],  # allowed, rejected
)

# Signature metrics
signature_verifications_total = Counter(
    "boost_signature_verifications_total",
    "Gateway signature verifications",
    ["form", "result"],  # form: webhook, redirect; result: valid, rejected, error, bypassed
)

# Gateway metrics
gateway_requests_total = Counter(
    "boost_gateway_requests_total",
    "Billplz API requests",
    ["operation", "status"],
)

gateway_request_duration_seconds = Histogram(
    "boost_gateway_request_duration_seconds",
    "Billplz API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transaction(outcome: str, duration_seconds: float) -> None:
        """Record a finished transaction."""
        transactions_total.labels(outcome=outcome).inc()
        transaction_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_attempt(status: str) -> None:
        """Record one unit-of-work attempt."""
        transaction_attempts_total.labels(status=status).inc()

    @staticmethod
    def record_rollback_action(status: str) -> None:
        """Record a compensating action."""
        rollback_actions_total.labels(status=status).inc()

    @staticmethod
    def record_idempotency_lookup(result: str) -> None:
        """Record an idempotency ledger lookup."""
        idempotency_lookups_total.labels(result=result).inc()

    @staticmethod
    def record_rate_limit_decision(operation: str, decision: str) -> None:
        """Record a rate limiter decision."""
        rate_limit_decisions_total.labels(operation=operation, decision=decision).inc()

    @staticmethod
    def record_signature_verification(form: str, result: str) -> None:
        """Record a signature verification."""
        signature_verifications_total.labels(form=form, result=result).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a Billplz API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
