"""
Role permission gate.

Roles form a closed enum and capabilities are a static table, so every
permission decision is a set lookup.
"""

from dataclasses import dataclass
from typing import Optional

from orderflow.core.logging import get_logger
from orderflow.database.models.user import UserRole
from orderflow.services.orders.enums import OrderAction
from orderflow.services.orders.errors import UnauthorizedError

logger = get_logger(__name__)

ORDERS_RESOURCE = "orders"

CAPABILITIES: dict[UserRole, frozenset[OrderAction]] = {
    UserRole.SALES: frozenset(
        {OrderAction.CREATE, OrderAction.RESUBMIT, OrderAction.CANCEL}
    ),
    UserRole.ACCOUNTANT: frozenset(
        {
            OrderAction.APPROVE,
            OrderAction.REJECT,
            OrderAction.REQUEST_EDIT,
            OrderAction.CANCEL,
            OrderAction.AMEND,
        }
    ),
    UserRole.WAREHOUSE: frozenset({OrderAction.CONFIRM, OrderAction.REJECT}),
    UserRole.SHIPPER: frozenset(
        {
            OrderAction.SHIP,
            OrderAction.COMPLETE,
            OrderAction.PARTIAL_COMPLETE,
            OrderAction.FAIL,
        }
    ),
    UserRole.ADMIN: frozenset({OrderAction.CANCEL}),
}


@dataclass(frozen=True)
class Actor:
    """Authenticated user performing an operation."""

    id: str
    role: UserRole
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class PermissionGate:
    """Answers whether a role may perform an action on a resource."""

    def __init__(
        self, capabilities: Optional[dict[UserRole, frozenset[OrderAction]]] = None
    ):
        self._capabilities = capabilities or CAPABILITIES

    def has_permission(
        self,
        role: UserRole,
        action: OrderAction,
        resource: str = ORDERS_RESOURCE,
    ) -> bool:
        """
        Check a role against the capability table.

        Args:
            role: Role of the acting user
            action: Requested action
            resource: Resource type, only ``orders`` carries capabilities

        Returns:
            True if the role may perform the action
        """
        if resource != ORDERS_RESOURCE:
            return False
        return action in self._capabilities.get(role, frozenset())

    def ensure_allowed(self, actor: Actor, action: OrderAction) -> None:
        """
        Raise unless ``actor`` may perform ``action``.

        Raises:
            UnauthorizedError: If the role lacks the capability
        """
        if not self.has_permission(actor.role, action):
            logger.warning(
                "Permission denied",
                actor_id=actor.id,
                role=actor.role.value,
                action=action.value,
            )
            raise UnauthorizedError(
                f"Role '{actor.role.value}' may not perform '{action.value}'",
                role=actor.role.value,
                action=action.value,
            )

    def allowed_actions(self, role: UserRole) -> frozenset[OrderAction]:
        return self._capabilities.get(role, frozenset())
