"""
Unit tests for logging helpers.
"""
from typing import Any, Dict, List

import pytest
import structlog

from boost_payments.core.transactions import TransactionOrchestrator
from boost_payments.monitoring.logging import REDACTED, log_context, redact_secrets


class TestRedactSecrets:
    """Test suite for the redaction processor."""

    @pytest.mark.unit
    def test_masks_signatures_and_credentials(self) -> None:
        """Test signature and key fields are replaced, other fields are kept."""
        event = redact_secrets(
            None,
            "info",
            {
                "event": "webhook_received",
                "x_signature": "abc",
                "billplz_api_key": "k",
                "bill_id": "82u4sb",
            },
        )

        assert event["x_signature"] == REDACTED
        assert event["billplz_api_key"] == REDACTED
        assert event["bill_id"] == "82u4sb"


class TestLogContext:
    """Test suite for log_context."""

    @pytest.mark.unit
    def test_binds_for_the_block_only(self) -> None:
        """Test values are bound inside the block and None values are skipped."""
        with log_context(idempotency_key="order-1", transaction_id=None):
            bound = structlog.contextvars.get_contextvars()

        assert bound.get("idempotency_key") == "order-1"
        assert "transaction_id" not in bound
        assert "idempotency_key" not in structlog.contextvars.get_contextvars()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unit_of_work_logs_with_its_ids(
        self, orchestrator: TransactionOrchestrator
    ) -> None:
        """Test a unit of work sees its transaction and idempotency IDs in the context."""
        seen: List[Dict[str, Any]] = []

        async def work(tx_id: str) -> str:
            seen.append({"tx_id": tx_id, **structlog.contextvars.get_contextvars()})
            return "ok"

        await orchestrator.execute(work, idempotency_key="order-1")

        assert seen[0]["transaction_id"] == seen[0]["tx_id"]
        assert seen[0]["idempotency_key"] == "order-1"
        assert "transaction_id" not in structlog.contextvars.get_contextvars()
