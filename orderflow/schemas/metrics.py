"""Dashboard metrics Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from orderflow.database.models.order import OrderStatus
from orderflow.database.models.user import UserRole


class PriorityOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    order_number: str
    customer_name: str
    total: Decimal
    status: OrderStatus
    created_at: datetime
    urgency: str


class ActivityItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    action: str
    performed_by: str
    created_at: datetime
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: Optional[str] = None


class DashboardMetricsResponse(BaseModel):
    """Role-scoped dashboard figures."""

    model_config = ConfigDict(from_attributes=True)

    role: UserRole
    total_orders: int
    status_counts: dict[str, int]
    completed_revenue: Decimal
    average_order_value: Decimal
    role_metrics: dict[str, Any] = Field(default_factory=dict)
    priority_orders: list[PriorityOrderResponse] = Field(default_factory=list)
    recent_activity: list[ActivityItemResponse] = Field(default_factory=list)
