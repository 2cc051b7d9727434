"""Database package for boost payments."""
from .connection import close_db, get_session_factory, init_db
from .models import Base, BoostPackage, Payment, Product
from .repository import BoostRepository, SQLAlchemyBoostRepository

__all__ = [
    "Base",
    "BoostPackage",
    "Payment",
    "Product",
    "BoostRepository",
    "SQLAlchemyBoostRepository",
    "close_db",
    "get_session_factory",
    "init_db",
]
