"""Workflow action enum and the per-role order visibility tables.

``ROLE_VIEWS`` is the single definition of which orders each role works
with. Order listings and dashboard metrics both read it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from orderflow.database.models.order import OrderStatus
from orderflow.database.models.user import UserRole


class OrderAction(str, Enum):
    """Actions a user can take on an order."""

    CREATE = "create"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_EDIT = "request_edit"
    RESUBMIT = "resubmit"
    CANCEL = "cancel"
    CONFIRM = "confirm"
    SHIP = "ship"
    COMPLETE = "complete"
    PARTIAL_COMPLETE = "partial_complete"
    FAIL = "fail"
    AMEND = "amend"

    @classmethod
    def from_string(cls, value: str) -> "OrderAction":
        """Convert string to OrderAction enum.

        Raises:
            ValueError: If value is not a valid action
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join(a.value for a in cls)
            raise ValueError(
                f"Invalid order action: {value}. Valid values are: {valid_values}"
            )

    @property
    def changes_status(self) -> bool:
        return self not in (OrderAction.CREATE, OrderAction.AMEND)


ALL_STATUSES: frozenset[OrderStatus] = frozenset(OrderStatus)


@dataclass(frozen=True)
class RoleView:
    """Orders a role sees.

    Attributes:
        statuses: Statuses visible to the role
        owner_only: Restrict to orders the viewer created
        actionable: Statuses awaiting this role's action, used for priority
    """

    statuses: frozenset[OrderStatus]
    owner_only: bool = False
    actionable: frozenset[OrderStatus] = frozenset()

    def includes(self, status: OrderStatus, created_by: Optional[str] = None,
                 viewer_id: Optional[str] = None) -> bool:
        if status not in self.statuses:
            return False
        if self.owner_only and created_by != viewer_id:
            return False
        return True


ROLE_VIEWS: dict[UserRole, RoleView] = {
    UserRole.SALES: RoleView(
        statuses=ALL_STATUSES,
        owner_only=True,
        actionable=frozenset(
            {
                OrderStatus.EDIT_REQUESTED,
                OrderStatus.WAREHOUSE_REJECTED,
                OrderStatus.FAILED,
            }
        ),
    ),
    UserRole.ACCOUNTANT: RoleView(
        statuses=frozenset(
            {
                OrderStatus.PENDING,
                OrderStatus.APPROVED,
                OrderStatus.EDIT_REQUESTED,
                OrderStatus.REJECTED,
            }
        ),
        actionable=frozenset({OrderStatus.PENDING}),
    ),
    UserRole.WAREHOUSE: RoleView(
        statuses=frozenset(
            {
                OrderStatus.APPROVED,
                OrderStatus.WAREHOUSE_CONFIRMED,
                OrderStatus.WAREHOUSE_REJECTED,
            }
        ),
        actionable=frozenset({OrderStatus.APPROVED}),
    ),
    UserRole.SHIPPER: RoleView(
        statuses=frozenset(
            {
                OrderStatus.WAREHOUSE_CONFIRMED,
                OrderStatus.SHIPPED,
                OrderStatus.COMPLETED,
                OrderStatus.PARTIAL_COMPLETE,
                OrderStatus.FAILED,
            }
        ),
        actionable=frozenset(
            {OrderStatus.WAREHOUSE_CONFIRMED, OrderStatus.SHIPPED}
        ),
    ),
    UserRole.ADMIN: RoleView(
        statuses=ALL_STATUSES,
        actionable=frozenset({OrderStatus.PENDING}),
    ),
}


def roles_viewing(status: OrderStatus) -> list[UserRole]:
    """Roles whose view contains ``status``, ignoring ownership filters."""
    return [
        role
        for role, view in ROLE_VIEWS.items()
        if status in view.statuses and not view.owner_only
    ]
