"""
Database models package initialization.

Models are imported here so they register with Base.metadata for Alembic
and for relationship resolution.
"""

from orderflow.database.base import Base, BaseModel, VersionedModel
from orderflow.database.models.order import Order, OrderStatusHistory
from orderflow.database.models.return_request import (
    ReturnAdminNote,
    ReturnRequest,
    ReturnStatusHistory,
)
from orderflow.database.models.user import User
from orderflow.database.models.webhook_event import (
    ProcessedWebhookEvent,
    WebhookLogEntry,
)

__all__ = [
    "Base",
    "BaseModel",
    "VersionedModel",
    "User",
    "Order",
    "OrderStatusHistory",
    "ReturnRequest",
    "ReturnStatusHistory",
    "ReturnAdminNote",
    "ProcessedWebhookEvent",
    "WebhookLogEntry",
]
