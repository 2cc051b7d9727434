"""
Storage access for the boost flow.

Each write is a single-statement commit; multi-step consistency is the job of
the transaction orchestrator's compensating actions, not of this layer.
"""
from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boost_payments.database.models import BoostPackage, Payment, Product

logger = structlog.get_logger(__name__)


class BoostRepository(Protocol):
    """Storage operations used by BoostOrderService and NotificationHandler."""

    async def get_product(self, product_id: int) -> Optional[Product]:
        ...

    async def get_active_package(self, package_id: int) -> Optional[BoostPackage]:
        ...

    async def create_payment(self, **values: Any) -> Payment:
        ...

    async def delete_payment(self, payment_id: int) -> None:
        ...

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        ...

    async def get_payment_by_order_id(self, order_id: str) -> Optional[Payment]:
        ...

    async def get_payment_by_bill_id(self, bill_id: str) -> Optional[Payment]:
        ...

    async def update_payment(self, payment_id: int, **values: Any) -> Optional[Payment]:
        ...

    async def update_product(self, product_id: int, **values: Any) -> Optional[Product]:
        ...

    async def find_expired_featured_products(self, now: datetime) -> List[Product]:
        ...

    async def clear_featured(self, product_ids: Sequence[int]) -> int:
        ...


class SQLAlchemyBoostRepository:
    """BoostRepository backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize repository.

        Args:
            session_factory: Async session factory (see database.connection)
        """
        self.session_factory = session_factory

    async def get_product(self, product_id: int) -> Optional[Product]:
        async with self.session_factory() as session:
            return await session.get(Product, product_id)

    async def get_active_package(self, package_id: int) -> Optional[BoostPackage]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BoostPackage).where(
                    BoostPackage.id == package_id, BoostPackage.is_active.is_(True)
                )
            )
            return result.scalar_one_or_none()

    async def create_payment(self, **values: Any) -> Payment:
        async with self.session_factory() as session:
            payment = Payment(**values)
            session.add(payment)
            await session.commit()
            await session.refresh(payment)
            logger.info("payment_record_created", payment_id=payment.id, order_id=payment.order_id)
            return payment

    async def delete_payment(self, payment_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(Payment).where(Payment.id == payment_id))
            await session.commit()
            logger.info("payment_record_deleted", payment_id=payment_id)

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        async with self.session_factory() as session:
            return await session.get(Payment, payment_id)

    async def get_payment_by_order_id(self, order_id: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.order_id == order_id))
            return result.scalar_one_or_none()

    async def get_payment_by_bill_id(self, bill_id: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.bill_id == bill_id)
                .order_by(Payment.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update_payment(self, payment_id: int, **values: Any) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Payment).where(Payment.id == payment_id).values(**values).returning(Payment)
            )
            payment = result.scalar_one_or_none()
            await session.commit()
            return payment

    async def update_product(self, product_id: int, **values: Any) -> Optional[Product]:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Product).where(Product.id == product_id).values(**values).returning(Product)
            )
            product = result.scalar_one_or_none()
            await session.commit()
            return product

    async def find_expired_featured_products(self, now: datetime) -> List[Product]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Product).where(
                    (Product.is_featured.is_(True)) | (Product.status == "featured"),
                    Product.featured_until < now,
                )
            )
            return list(result.scalars().all())

    async def clear_featured(self, product_ids: Sequence[int]) -> int:
        if not product_ids:
            return 0
        async with self.session_factory() as session:
            result = await session.execute(
                update(Product)
                .where(Product.id.in_(list(product_ids)))
                .values(is_featured=False, status="active", featured_until=None)
            )
            await session.commit()
            return result.rowcount or 0
