"""
Order Pydantic schemas for API request and response validation.

Requests only enforce types and sizes; business validation (required
reasons, positive quantities, item ownership) happens in the order service
so that the same rules apply to every caller.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orderflow.database.models.order import HistoryAction, OrderStatus
from orderflow.services.orders.enums import OrderAction
from orderflow.services.orders.inputs import (
    CustomerInfo,
    ItemAdjustment,
    ItemInput,
    TransitionPayload,
)


class CustomerInfoRequest(BaseModel):
    """Customer contact details."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., max_length=255, description="Customer name")
    email: Optional[str] = Field(None, max_length=255, description="Customer email")
    phone: Optional[str] = Field(None, max_length=50, description="Customer phone")
    address: Optional[str] = Field(None, max_length=2000, description="Customer address")

    def to_domain(self) -> CustomerInfo:
        return CustomerInfo(
            name=self.name, email=self.email, phone=self.phone, address=self.address
        )


class OrderItemRequest(BaseModel):
    """Line item of a new or resubmitted order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., max_length=255, description="Product name")
    description: Optional[str] = Field(None, max_length=2000)
    sku: Optional[str] = Field(None, max_length=100)
    price: Decimal = Field(..., description="Unit price")
    quantity: int = Field(..., description="Ordered quantity")

    def to_domain(self) -> ItemInput:
        return ItemInput(
            name=self.name,
            description=self.description,
            sku=self.sku,
            price=self.price,
            quantity=self.quantity,
        )


class OrderCreateRequest(BaseModel):
    """Request to create an order."""

    customer: CustomerInfoRequest
    items: list[OrderItemRequest] = Field(default_factory=list)


class ItemAdjustmentRequest(BaseModel):
    item_id: UUID
    quantity_shipped: Optional[int] = Field(None, ge=0)
    quantity_returned: Optional[int] = Field(None, ge=0)


class TransitionRequest(BaseModel):
    """
    Request to apply a workflow action.

    Only the fields relevant to ``action`` are read: ``reason`` for
    reject/request_edit/fail/cancel, ``tracking_number`` and ``notes`` for
    ship, ``customer``/``items`` for resubmit, ``item_adjustments`` and
    ``actual_total`` for amend.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    action: OrderAction
    reason: Optional[str] = Field(None, max_length=2000)
    notes: Optional[str] = Field(None, max_length=2000)
    tracking_number: Optional[str] = Field(None, max_length=100)
    customer: Optional[CustomerInfoRequest] = None
    items: Optional[list[OrderItemRequest]] = None
    item_adjustments: list[ItemAdjustmentRequest] = Field(default_factory=list)
    actual_total: Optional[Decimal] = None

    def to_payload(self) -> TransitionPayload:
        return TransitionPayload(
            reason=self.reason,
            notes=self.notes,
            tracking_number=self.tracking_number,
            customer=self.customer.to_domain() if self.customer else None,
            items=[i.to_domain() for i in self.items] if self.items is not None else None,
            item_adjustments=[
                ItemAdjustment(
                    item_id=str(adj.item_id),
                    quantity_shipped=adj.quantity_shipped,
                    quantity_returned=adj.quantity_returned,
                )
                for adj in self.item_adjustments
            ],
            actual_total=self.actual_total,
        )


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: Optional[str] = None
    sku: Optional[str] = None
    price: Decimal
    quantity: int
    quantity_shipped: int
    quantity_returned: int


class OrderResponse(BaseModel):
    """Order with items and per-stage fields."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: OrderStatus
    version: int
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    total: Decimal
    actual_total: Optional[Decimal] = None
    created_by: str
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    edit_requested_by: Optional[str] = None
    edit_requested_at: Optional[datetime] = None
    edit_request_reason: Optional[str] = None
    resubmitted_at: Optional[datetime] = None
    warehouse_confirmed_by: Optional[str] = None
    warehouse_confirmed_at: Optional[datetime] = None
    warehouse_rejected_by: Optional[str] = None
    warehouse_rejected_at: Optional[datetime] = None
    warehouse_rejection_reason: Optional[str] = None
    shipped_by: Optional[str] = None
    shipped_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
    shipping_notes: Optional[str] = None
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    partially_completed_by: Optional[str] = None
    partially_completed_at: Optional[datetime] = None
    completion_notes: Optional[str] = None
    failed_by: Optional[str] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    items: list[OrderItemResponse] = Field(default_factory=list)
    allowed_actions: list[OrderAction] = Field(default_factory=list)


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    skip: int
    limit: int


class FieldChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    old_value: Any = None
    new_value: Any = None


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    sequence: int
    action: HistoryAction
    from_status: Optional[OrderStatus] = None
    to_status: Optional[OrderStatus] = None
    performed_by: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    changes: list[FieldChangeResponse] = Field(default_factory=list)
