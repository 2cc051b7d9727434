"""
Pytest configuration and fixtures.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from boost_payments.config import Settings
from boost_payments.core.boost_orders import BoostOrderService
from boost_payments.core.idempotency import IdempotencyLedger
from boost_payments.core.signatures import SignatureVerifier
from boost_payments.core.store import InMemoryStore
from boost_payments.core.transactions import TransactionOrchestrator
from boost_payments.database.models import BoostPackage, Payment, Product

# Billplz's published X-Signature example key
XSIGN_KEY = "S-s7Q9i_tlsp-vjDuDm_2aGg"

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class InMemoryBoostRepository:
    """BoostRepository kept in dicts; writes are applied immediately."""

    def __init__(self) -> None:
        self.products: Dict[int, Product] = {}
        self.packages: Dict[int, BoostPackage] = {}
        self.payments: Dict[int, Payment] = {}
        self._next_payment_id = 1
        self.calls: List[str] = []

    def add_product(self, product_id: int, seller_id: int, **values: Any) -> Product:
        product = Product(
            id=product_id,
            seller_id=seller_id,
            name=values.pop("name", f"Product {product_id}"),
            status=values.pop("status", "active"),
            is_featured=values.pop("is_featured", False),
            featured_at=values.pop("featured_at", None),
            featured_until=values.pop("featured_until", None),
            featured_duration_hours=values.pop("featured_duration_hours", None),
            **values,
        )
        self.products[product_id] = product
        return product

    def add_package(self, package_id: int, price: int = 500, duration_hours: int = 15,
                    is_active: bool = True) -> BoostPackage:
        package = BoostPackage(
            id=package_id,
            name=f"Package {package_id}",
            package_type="standard",
            item_count=1,
            price=price,
            duration_hours=duration_hours,
            is_active=is_active,
        )
        self.packages[package_id] = package
        return package

    async def get_product(self, product_id: int) -> Optional[Product]:
        self.calls.append("get_product")
        return self.products.get(product_id)

    async def get_active_package(self, package_id: int) -> Optional[BoostPackage]:
        self.calls.append("get_active_package")
        package = self.packages.get(package_id)
        return package if package is not None and package.is_active else None

    async def create_payment(self, **values: Any) -> Payment:
        self.calls.append("create_payment")
        values.setdefault("bill_id", None)
        values.setdefault("paid_at", None)
        payment = Payment(id=self._next_payment_id, **values)
        self.payments[payment.id] = payment
        self._next_payment_id += 1
        return payment

    async def delete_payment(self, payment_id: int) -> None:
        self.calls.append("delete_payment")
        self.payments.pop(payment_id, None)

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        self.calls.append("get_payment")
        return self.payments.get(payment_id)

    async def get_payment_by_order_id(self, order_id: str) -> Optional[Payment]:
        return next((p for p in self.payments.values() if p.order_id == order_id), None)

    async def get_payment_by_bill_id(self, bill_id: str) -> Optional[Payment]:
        return next((p for p in self.payments.values() if p.bill_id == bill_id), None)

    async def update_payment(self, payment_id: int, **values: Any) -> Optional[Payment]:
        self.calls.append("update_payment")
        payment = self.payments.get(payment_id)
        if payment is not None:
            for key, value in values.items():
                setattr(payment, key, value)
        return payment

    async def update_product(self, product_id: int, **values: Any) -> Optional[Product]:
        self.calls.append("update_product")
        product = self.products.get(product_id)
        if product is not None:
            for key, value in values.items():
                setattr(product, key, value)
        return product

    async def find_expired_featured_products(self, now: datetime) -> List[Product]:
        return [
            p
            for p in self.products.values()
            if (p.is_featured or p.status == "featured")
            and p.featured_until is not None
            and p.featured_until < now
        ]

    async def clear_featured(self, product_ids: Sequence[int]) -> int:
        for product_id in product_ids:
            product = self.products[product_id]
            product.is_featured = False
            product.status = "active"
            product.featured_until = None
        return len(product_ids)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def ledger(clock: FakeClock) -> IdempotencyLedger:
    """Ledger over an in-memory store sharing the fake clock."""
    return IdempotencyLedger(InMemoryStore(clock=clock), clock=clock)


@pytest.fixture
def orchestrator(
    ledger: IdempotencyLedger, sleeps: RecordingSleep, clock: FakeClock
) -> TransactionOrchestrator:
    return TransactionOrchestrator(ledger, sleep=sleeps, clock=clock)


@pytest.fixture
def repository() -> InMemoryBoostRepository:
    """Repository seeded with one seller product and two packages."""
    repo = InMemoryBoostRepository()
    repo.add_product(146, seller_id=7)
    repo.add_package(2, price=500, duration_hours=15)
    repo.add_package(3, price=1500, duration_hours=36, is_active=False)
    return repo


@pytest.fixture
def service(
    repository: InMemoryBoostRepository, orchestrator: TransactionOrchestrator
) -> BoostOrderService:
    return BoostOrderService(
        repository,
        orchestrator,
        timeout_ms=1000,
        max_retries=3,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier(XSIGN_KEY)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_name="boost-payments-test",
        app_env="test",
        log_level="DEBUG",
        billplz_xsign_key=XSIGN_KEY,
        billplz_secret_key="",
        public_base_url="https://shop.example.com",
        redis_url=None,
        rate_limit_boost_order=2,
        transaction_timeout_ms=1000,
        maintenance_interval_seconds=3600,
    )
