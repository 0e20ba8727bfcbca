"""
User model and role enumeration.

Users are a local projection of the external identity service. Only the
fields the workflow needs for role lookups and notification targeting are
stored here; authentication lives elsewhere.
"""

import enum
from typing import Optional

from sqlalchemy import Boolean, Enum as SQLEnum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import Base, TimestampMixin


class UserRole(str, enum.Enum):
    """Closed set of workflow roles."""

    SALES = "sales"
    ACCOUNTANT = "accountant"
    WAREHOUSE = "warehouse"
    SHIPPER = "shipper"
    ADMIN = "admin"

    @classmethod
    def from_string(cls, value: str) -> "UserRole":
        """
        Convert string to UserRole enum.

        Args:
            value: String representation of role

        Returns:
            UserRole enum value

        Raises:
            ValueError: If value is not a valid role
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid role: {value}")


class User(Base, TimestampMixin):
    """
    Workflow participant.

    Attributes:
        id: External identity provider's user identifier
        name: Display name used in notifications
        email: Contact email
        role: Single workflow role held by the user
        is_active: Inactive users receive no role fan-out
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(
            UserRole,
            name="user_role",
            native_enum=False,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
            length=32,
        ),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("ix_users_role_active", "role", "is_active"),)

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, role={self.role.value})>"
