"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import BoostOrderResponse, CreateBoostOrderRequest, NotificationResponse

__all__ = [
    "app",
    "create_app",
    "BoostOrderResponse",
    "CreateBoostOrderRequest",
    "NotificationResponse",
]
