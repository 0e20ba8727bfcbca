"""
Database models package initialization.

Models are imported here so that they are registered with the Base
metadata before tables are created.
"""

from orderflow.database.base import (
    AuditedModel,
    AuditMixin,
    Base,
    BaseModel,
    TimestampMixin,
    UUIDMixin,
)
from orderflow.database.models.notification import Notification, NotificationType
from orderflow.database.models.order import (
    HistoryAction,
    Order,
    OrderHistoryChange,
    OrderHistoryEntry,
    OrderItem,
    OrderStatus,
)
from orderflow.database.models.user import User, UserRole

__all__ = [
    "Base",
    "BaseModel",
    "AuditedModel",
    "TimestampMixin",
    "UUIDMixin",
    "AuditMixin",
    "Notification",
    "NotificationType",
    "HistoryAction",
    "Order",
    "OrderHistoryChange",
    "OrderHistoryEntry",
    "OrderItem",
    "OrderStatus",
    "User",
    "UserRole",
]
