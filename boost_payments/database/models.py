"""SQLAlchemy database models for boost payments."""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class BoostPackage(Base):
    """
    Boost packages offered to sellers.

    Price is in sen (RM 5 = 500); duration is how long a boosted product stays
    featured.
    """

    __tablename__ = "boost_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    package_type: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="positive_price"),
        CheckConstraint("duration_hours > 0", name="positive_duration"),
    )

    def __repr__(self) -> str:
        return f"<BoostPackage(id={self.id}, name={self.name}, price={self.price})>"


class Product(Base):
    """Marketplace listing; only the fields the boost flow reads or writes."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    featured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    featured_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    featured_duration_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    boost_package_id: Mapped[int | None] = mapped_column(
        ForeignKey("boost_packages.id"), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (Index("idx_products_featured_until", "is_featured", "featured_until"),)

    def __repr__(self) -> str:
        return (
            f"<Product(id={self.id}, seller_id={self.seller_id}, "
            f"is_featured={self.is_featured})>"
        )


class Payment(Base):
    """
    Boost payment records.

    order_id is our reference (sent to Billplz as reference_1); bill_id is the
    gateway's bill identifier, set once the bill exists.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    bill_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    product_id: Mapped[int | None] = mapped_column(ForeignKey("products.id"), nullable=True)
    boost_package_id: Mapped[int | None] = mapped_column(
        ForeignKey("boost_packages.id"), nullable=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False, default="boost")
    feature_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("status IN ('pending', 'paid', 'failed')", name="valid_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )
