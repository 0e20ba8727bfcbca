"""
Order aggregate and its audit history models.

An Order owns its items. Every status transition stamps the actor and
timestamp of that transition onto dedicated columns that are never cleared
afterwards, so an order's row always tells which stages it has passed
through. The append-only history tables record each mutation together with
a typed field diff.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.database.base import AuditedModel, Base, BaseModel


class OrderStatus(str, enum.Enum):
    """
    Order lifecycle states.

    Attributes:
        PENDING: Awaiting accountant review
        APPROVED: Approved by an accountant, awaiting warehouse
        EDIT_REQUESTED: Sent back to sales for changes
        REJECTED: Rejected by an accountant
        WAREHOUSE_CONFIRMED: Stock confirmed, awaiting shipment
        WAREHOUSE_REJECTED: Warehouse cannot fulfil, back with sales
        SHIPPED: Handed to the carrier
        COMPLETED: Delivered in full
        PARTIAL_COMPLETE: Delivered in part
        FAILED: Delivery failed
        CANCELLED: Withdrawn before fulfilment finished
    """

    PENDING = "pending"
    APPROVED = "approved"
    EDIT_REQUESTED = "edit_requested"
    REJECTED = "rejected"
    WAREHOUSE_CONFIRMED = "warehouse_confirmed"
    WAREHOUSE_REJECTED = "warehouse_rejected"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    PARTIAL_COMPLETE = "partial_complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """
        Check if the forward flow has ended.

        FAILED is terminal for fulfilment but sales may still resubmit or
        cancel the order.
        """
        return self in (
            OrderStatus.REJECTED,
            OrderStatus.COMPLETED,
            OrderStatus.PARTIAL_COMPLETE,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
        )


class HistoryAction(str, enum.Enum):
    """Kinds of entries written to an order's history."""

    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"
    ORDER_AMENDED = "order_amended"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [member.value for member in members],
        length=32,
    )


class Order(AuditedModel):
    """
    Order aggregate root.

    ``version`` is the optimistic concurrency token: every UPDATE is issued
    as ``... WHERE id = :id AND version = :expected`` and increments it.
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Customer contact
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    customer_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    actual_total: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )

    # Accountant review
    approved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rejected_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    edit_requested_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    edit_requested_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    edit_request_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resubmitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Warehouse
    warehouse_confirmed_by: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    warehouse_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    warehouse_rejected_by: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    warehouse_rejected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    warehouse_rejection_reason: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )

    # Shipping
    shipped_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    partially_completed_by: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    partially_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completion_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cancellation
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_created_by_status", "created_by", "status"),
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint(
            "actual_total IS NULL OR actual_total >= 0",
            name="ck_orders_actual_total_non_negative",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, order_number={self.order_number!r}, "
            f"status={self.status.value})>"
        )

    def compute_total(self) -> Decimal:
        """Sum of ``price * quantity`` across items."""
        return sum(
            (item.line_total for item in self.items), start=Decimal("0.00")
        )

    def snapshot(self) -> dict[str, Any]:
        """
        Editable fields as JSON-friendly values, used for history diffs.
        """
        return {
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "customer_address": self.customer_address,
            "items": [item.snapshot() for item in self.items],
            "total": str(self.total),
            "actual_total": (
                str(self.actual_total) if self.actual_total is not None else None
            ),
        }


class OrderItem(Base):
    """Line item of an order."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_shipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity_returned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint(
            "quantity_shipped >= 0 AND quantity_returned >= 0",
            name="ck_order_items_adjustments_non_negative",
        ),
    )

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.price) * self.quantity

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "sku": self.sku,
            "price": str(self.price),
            "quantity": self.quantity,
            "quantity_shipped": self.quantity_shipped or 0,
            "quantity_returned": self.quantity_returned or 0,
        }


class OrderHistoryEntry(BaseModel):
    """
    Immutable record of one mutation of an order.

    ``sequence`` is 1-based and unique per order so append order survives
    equal timestamps.
    """

    __tablename__ = "order_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[HistoryAction] = mapped_column(
        _enum_column(HistoryAction, "history_action"), nullable=False
    )
    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        _enum_column(OrderStatus, "order_status"), nullable=True
    )
    to_status: Mapped[Optional[OrderStatus]] = mapped_column(
        _enum_column(OrderStatus, "order_status"), nullable=True
    )
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    changes: Mapped[list["OrderHistoryChange"]] = relationship(
        "OrderHistoryChange",
        back_populates="entry",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderHistoryChange.position",
    )

    __table_args__ = (
        UniqueConstraint("order_id", "sequence", name="uq_order_history_sequence"),
        Index("ix_order_history_created", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderHistoryEntry(order_id={self.order_id}, "
            f"sequence={self.sequence}, action={self.action.value})>"
        )


class OrderHistoryChange(Base):
    """One changed field inside a history entry's diff."""

    __tablename__ = "order_history_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("order_history.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    field: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    entry: Mapped["OrderHistoryEntry"] = relationship(
        "OrderHistoryEntry", back_populates="changes"
    )
