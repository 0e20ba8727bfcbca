"""
Dashboard metrics reducer.

Metrics are recomputed on every request from the orders visible to the
viewer's role and the most recent history entries. The reducer holds no
state and performs no I/O; ``now`` is injected so "today" and "this month"
are deterministic.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Sequence

from orderflow.database.models.order import Order, OrderHistoryEntry, OrderStatus
from orderflow.database.models.user import UserRole
from orderflow.services.identity.permissions import Actor
from orderflow.services.orders.enums import ROLE_VIEWS, RoleView

ZERO = Decimal("0.00")
HIGH_URGENCY_TOTAL = Decimal("1000")
MEDIUM_URGENCY_TOTAL = Decimal("500")


@dataclass
class PriorityOrder:
    order_id: str
    order_number: str
    customer_name: str
    total: Decimal
    status: OrderStatus
    created_at: datetime
    urgency: str


@dataclass
class ActivityItem:
    order_id: str
    action: str
    performed_by: str
    created_at: datetime
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class DashboardMetrics:
    role: UserRole
    total_orders: int
    status_counts: dict[str, int]
    completed_revenue: Decimal
    average_order_value: Decimal
    role_metrics: dict[str, Any] = field(default_factory=dict)
    priority_orders: list[PriorityOrder] = field(default_factory=list)
    recent_activity: list[ActivityItem] = field(default_factory=list)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ratio(numerator: float, denominator: float) -> float:
    """Percentage rounded to two places, 0.0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


def urgency_for(total: Decimal) -> str:
    if total > HIGH_URGENCY_TOTAL:
        return "high"
    if total > MEDIUM_URGENCY_TOTAL:
        return "medium"
    return "low"


def _money(values: Iterable[Decimal]) -> Decimal:
    return sum((Decimal(v) for v in values), start=ZERO).quantize(ZERO)


class DashboardMetricsReducer:
    """Computes role-scoped dashboard metrics."""

    def __init__(self, priority_limit: int = 5, activity_limit: int = 10):
        self.priority_limit = priority_limit
        self.activity_limit = activity_limit
        self._role_metrics: dict[
            UserRole, Callable[[list[Order], list[Order], Actor, datetime], dict[str, Any]]
        ] = {
            UserRole.SALES: self._sales_metrics,
            UserRole.ACCOUNTANT: self._accountant_metrics,
            UserRole.WAREHOUSE: self._warehouse_metrics,
            UserRole.SHIPPER: self._shipper_metrics,
            UserRole.ADMIN: self._admin_metrics,
        }

    @staticmethod
    def visible_orders(orders: Iterable[Order], actor: Actor) -> list[Order]:
        view = ROLE_VIEWS[actor.role]
        return [o for o in orders if view.includes(o.status, o.created_by, actor.id)]

    def reduce(
        self,
        actor: Actor,
        orders: Sequence[Order],
        history: Sequence[OrderHistoryEntry] = (),
        now: Optional[datetime] = None,
    ) -> DashboardMetrics:
        """
        Compute metrics for ``actor``.

        Args:
            actor: Viewer; the role selects the order subset and extra figures
            orders: Candidate orders, filtered here by the role's view. The
                accountant approval rate counts every candidate.
            history: Recent history entries, newest first
            now: Reference time, defaults to the current UTC time

        Returns:
            Metrics with every count and ratio defined, including on empty input
        """
        now = as_utc(now) or datetime.now(timezone.utc)
        view = ROLE_VIEWS[actor.role]
        visible = self.visible_orders(orders, actor)

        status_counts = {status.value: 0 for status in OrderStatus}
        for order in visible:
            status_counts[order.status.value] += 1

        completed = [o for o in visible if o.status == OrderStatus.COMPLETED]
        completed_revenue = _money(o.total for o in completed)
        average = (
            (completed_revenue / len(completed)).quantize(ZERO) if completed else ZERO
        )

        visible_ids = {str(o.id) for o in visible}
        activity = [
            ActivityItem(
                order_id=str(entry.order_id),
                action=entry.action.value,
                performed_by=entry.performed_by,
                created_at=as_utc(entry.created_at),
                from_status=entry.from_status.value if entry.from_status else None,
                to_status=entry.to_status.value if entry.to_status else None,
                reason=entry.reason,
            )
            for entry in history
            if str(entry.order_id) in visible_ids
        ][: self.activity_limit]

        return DashboardMetrics(
            role=actor.role,
            total_orders=len(visible),
            status_counts=status_counts,
            completed_revenue=completed_revenue,
            average_order_value=average,
            role_metrics=self._role_metrics[actor.role](visible, list(orders), actor, now),
            priority_orders=self._priority(visible, view, actor.role),
            recent_activity=activity,
        )

    def _priority(
        self, orders: list[Order], view: RoleView, role: UserRole
    ) -> list[PriorityOrder]:
        candidates = [o for o in orders if o.status in view.actionable]
        if role == UserRole.ACCOUNTANT:
            candidates.sort(key=lambda o: (-Decimal(o.total), as_utc(o.created_at)))
        else:
            candidates.sort(key=lambda o: as_utc(o.created_at))
        return [
            PriorityOrder(
                order_id=str(o.id),
                order_number=o.order_number,
                customer_name=o.customer_name,
                total=Decimal(o.total),
                status=o.status,
                created_at=as_utc(o.created_at),
                urgency=urgency_for(Decimal(o.total)),
            )
            for o in candidates[: self.priority_limit]
        ]

    @staticmethod
    def _same_day(value: Optional[datetime], now: datetime) -> bool:
        value = as_utc(value)
        return value is not None and value.date() == now.date()

    @staticmethod
    def _same_month(value: Optional[datetime], now: datetime) -> bool:
        value = as_utc(value)
        return (
            value is not None
            and value.year == now.year
            and value.month == now.month
        )

    def _monthly(self, orders: list[Order], now: datetime) -> dict[str, Any]:
        monthly = [o for o in orders if self._same_month(o.created_at, now)]
        revenue = _money(
            o.total
            for o in orders
            if o.status == OrderStatus.COMPLETED
            and self._same_month(o.completed_at, now)
        )
        return {"monthly_orders": len(monthly), "monthly_revenue": revenue}

    def _sales_metrics(
        self, orders: list[Order], candidates: list[Order], actor: Actor,
        now: datetime,
    ) -> dict[str, Any]:
        completed = sum(1 for o in orders if o.status == OrderStatus.COMPLETED)
        return {
            "my_orders": len(orders),
            **self._monthly(orders, now),
            "conversion_rate": ratio(completed, len(orders)),
        }

    def _accountant_metrics(
        self, orders: list[Order], candidates: list[Order], actor: Actor,
        now: datetime,
    ) -> dict[str, Any]:
        # Decisions are counted over every candidate; approved orders leave
        # the accountant's view as they move downstream.
        approved_ever = sum(1 for o in candidates if o.approved_at is not None)
        rejected = sum(1 for o in candidates if o.status == OrderStatus.REJECTED)
        return {
            "approved_today": sum(
                1 for o in orders if self._same_day(o.approved_at, now)
            ),
            "pending_value": _money(
                o.total for o in orders if o.status == OrderStatus.PENDING
            ),
            "approval_rate": ratio(approved_ever, approved_ever + rejected),
        }

    def _warehouse_metrics(
        self, orders: list[Order], candidates: list[Order], actor: Actor,
        now: datetime,
    ) -> dict[str, Any]:
        return {
            "awaiting_confirmation": sum(
                1 for o in orders if o.status == OrderStatus.APPROVED
            ),
            "confirmed_today": sum(
                1 for o in orders if self._same_day(o.warehouse_confirmed_at, now)
            ),
        }

    @staticmethod
    def _delivered_at(order: Order) -> Optional[datetime]:
        if order.status == OrderStatus.PARTIAL_COMPLETE:
            return order.partially_completed_at
        return order.completed_at

    def _shipper_metrics(
        self, orders: list[Order], candidates: list[Order], actor: Actor,
        now: datetime,
    ) -> dict[str, Any]:
        delivered = [
            o
            for o in orders
            if o.status in (OrderStatus.COMPLETED, OrderStatus.PARTIAL_COMPLETE)
        ]
        failed = sum(1 for o in orders if o.status == OrderStatus.FAILED)
        return {
            "ready_to_ship": sum(
                1 for o in orders if o.status == OrderStatus.WAREHOUSE_CONFIRMED
            ),
            "in_transit": sum(1 for o in orders if o.status == OrderStatus.SHIPPED),
            "delivered_today": sum(
                1 for o in delivered if self._same_day(self._delivered_at(o), now)
            ),
            "delivery_rate": ratio(len(delivered), len(delivered) + failed),
        }

    def _admin_metrics(
        self, orders: list[Order], candidates: list[Order], actor: Actor,
        now: datetime,
    ) -> dict[str, Any]:
        return self._monthly(orders, now)
