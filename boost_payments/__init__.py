"""
Boost Payments - marketplace boost-order payment backend.

Core pieces:
1. Transaction orchestrator with retries, timeouts and compensating rollbacks
2. Idempotency ledger so a keyed request has its side effects at most once
3. Fixed-window rate limiting per client and operation
4. HMAC-SHA256 verification of gateway webhooks and redirects
"""

__version__ = "1.0.0"
