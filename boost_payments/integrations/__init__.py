"""External integrations for boost payments."""
from .billplz_client import BillplzClient
from .notifications import NotificationHandler, PaymentNotification

__all__ = ["BillplzClient", "NotificationHandler", "PaymentNotification"]
