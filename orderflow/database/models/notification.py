"""
In-app notification model.

Notifications belong to their recipient. ``order_id`` is a weak reference:
the order may be referenced long after the notification was read, and
removing a notification never touches the order.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import BaseModel, utcnow


class NotificationType(str, enum.Enum):
    """Notification category shown to the recipient."""

    ORDER_STATUS = "order_status"
    COMMENT = "comment"
    ASSIGNMENT = "assignment"
    REMINDER = "reminder"


class Notification(BaseModel):
    """
    Notification addressed to a single user.

    Attributes:
        user_id: Recipient
        title: Short headline
        message: Body text
        type: Category
        order_id: Order the notification refers to, if any
        is_read: Whether the recipient has read it
        read_at: When it was last marked read
    """

    __tablename__ = "notifications"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SQLEnum(
            NotificationType,
            name="notification_type",
            native_enum=False,
            values_callable=lambda members: [member.value for member in members],
            length=32,
        ),
        nullable=False,
        default=NotificationType.ORDER_STATUS,
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, user_id={self.user_id!r}, "
            f"is_read={self.is_read})>"
        )

    def mark_read(self) -> None:
        if not self.is_read:
            self.is_read = True
            self.read_at = utcnow()

    def mark_unread(self) -> None:
        self.is_read = False
        self.read_at = None
