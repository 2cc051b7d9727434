"""Background workers for boost payments."""
from .maintenance import MaintenanceWorker

__all__ = ["MaintenanceWorker"]
