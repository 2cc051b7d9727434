"""
Idempotency ledger for boost operations.

Maps an idempotency key to the first successful result produced under it.
While a record exists and is unexpired, the orchestrator serves the cached
result instead of running the unit of work again. Records expire after a
fixed TTL (24h by default); after that a key may legitimately re-execute.
"""
import hashlib
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import structlog

from boost_payments.core.store import InMemoryStore, KeyValueStore
from boost_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60


@dataclass
class IdempotencyRecord:
    """Cached outcome of one completed unit of work."""

    key: str
    cached_result: Any
    created_at: float
    transaction_id: str


def create_idempotency_key(user_id: Any, operation: str, data: Any) -> str:
    """
    Derive an idempotency key from the request content.

    Format: boost_{operation}_{sha256(user_id:operation:json(data))}

    Args:
        user_id: User identifier
        operation: Operation name (e.g. 'create_order')
        data: JSON-serialisable request data

    Returns:
        str: Idempotency key
    """
    payload = f"{user_id}:{operation}:{json.dumps(data, sort_keys=True, separators=(',', ':'))}"
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"boost_{operation}_{digest}"


class IdempotencyLedger:
    """
    Key -> cached result store with TTL eviction.

    Also tracks in-flight keys so that a second call arriving while the first
    is still running can be turned away instead of executing twice.
    """

    RECORD_PREFIX = "idempotency"
    IN_FLIGHT_PREFIX = "idempotency_inflight"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        ttl_seconds: float = IDEMPOTENCY_TTL_SECONDS,
        clock=time.time,
    ):
        """
        Initialize idempotency ledger.

        Args:
            store: Backing key-value store (in-process by default)
            ttl_seconds: Lifetime of a cached result
            clock: Wall clock used for record timestamps
        """
        self.store: KeyValueStore = store if store is not None else InMemoryStore()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _record_key(self, key: str) -> str:
        return f"{self.RECORD_PREFIX}:{key}"

    def _in_flight_key(self, key: str) -> str:
        return f"{self.IN_FLIGHT_PREFIX}:{key}"

    async def sweep(self) -> int:
        """Remove expired records from the backing store."""
        removed = await self.store.sweep()
        if removed:
            logger.debug("idempotency_records_swept", removed=removed)
        return removed

    async def check(self, key: str) -> Optional[IdempotencyRecord]:
        """
        Look up a cached result.

        Args:
            key: Idempotency key

        Returns:
            Optional[IdempotencyRecord]: The record if present and unexpired
        """
        await self.sweep()
        raw = await self.store.get(self._record_key(key))
        if raw is None:
            metrics.record_idempotency_lookup("miss")
            logger.debug("idempotency_cache_miss", idempotency_key=key)
            return None

        metrics.record_idempotency_lookup("hit")
        logger.info(
            "idempotency_cache_hit",
            idempotency_key=key,
            transaction_id=raw["transaction_id"],
        )
        return IdempotencyRecord(**raw)

    async def store_result(self, key: str, result: Any, transaction_id: str) -> IdempotencyRecord:
        """
        Cache the result of a committed unit of work.

        Args:
            key: Idempotency key
            result: Result to serve to later callers
            transaction_id: Transaction that produced the result

        Returns:
            IdempotencyRecord: The stored record
        """
        record = IdempotencyRecord(
            key=key,
            cached_result=result,
            created_at=self._clock(),
            transaction_id=transaction_id,
        )
        await self.store.set(self._record_key(key), asdict(record), ttl_seconds=self.ttl_seconds)
        logger.info(
            "idempotency_result_cached",
            idempotency_key=key,
            transaction_id=transaction_id,
        )
        return record

    async def invalidate(self, key: str) -> None:
        """Drop a cached result."""
        await self.store.delete(self._record_key(key))
        logger.info("idempotency_cache_invalidated", idempotency_key=key)

    async def claim(self, key: str, owner: str, ttl_seconds: float) -> bool:
        """
        Mark a key as in flight.

        Args:
            key: Idempotency key
            owner: Identifier of the claiming invocation
            ttl_seconds: Marker lifetime, bounding how long a crashed owner blocks the key

        Returns:
            bool: True if the claim succeeded, False if the key is already in flight
        """
        claimed = await self.store.set_if_absent(
            self._in_flight_key(key), {"owner": owner}, ttl_seconds=ttl_seconds
        )
        if not claimed:
            logger.warning("idempotency_key_in_flight", idempotency_key=key, owner=owner)
        return claimed

    async def release(self, key: str, owner: str) -> bool:
        """
        Clear the in-flight marker for a key if ``owner`` still holds it.

        A marker that expired and was claimed again belongs to the new holder
        and is left in place.

        Returns:
            bool: True if the marker was removed
        """
        released = await self.store.delete_if_equal(self._in_flight_key(key), {"owner": owner})
        if not released:
            logger.warning("idempotency_release_skipped", idempotency_key=key, owner=owner)
        return released

    async def in_flight_owner(self, key: str) -> Optional[str]:
        marker: Optional[Dict[str, Any]] = await self.store.get(self._in_flight_key(key))
        return marker["owner"] if marker else None
