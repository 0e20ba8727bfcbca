"""
Notification fan-out planning.

Turns a transition outcome into the list of notifications to deliver. The
planner is pure: role membership is passed in, nothing is read from or
written to storage here.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from orderflow.database.models.notification import NotificationType
from orderflow.database.models.order import Order, OrderStatus
from orderflow.database.models.user import UserRole
from orderflow.services.identity.permissions import Actor
from orderflow.services.notifications.templates import TemplateEngine
from orderflow.services.orders.enums import OrderAction


class Audience(str, Enum):
    """Where a rule finds its recipients."""

    CREATOR = "creator"
    ROLE = "role"
    APPROVER = "approver"
    CONFIRMER = "confirmer"


@dataclass(frozen=True)
class RecipientRule:
    audience: Audience
    role: Optional[UserRole] = None

    @property
    def template_suffix(self) -> str:
        if self.audience is Audience.ROLE:
            return self.role.value
        return self.audience.value


@dataclass(frozen=True)
class TransitionOutcome:
    """Facts about a completed transition that notifications draw on."""

    action: OrderAction
    actor: Actor
    order_id: uuid.UUID
    order_number: str
    created_by: str
    customer_name: str
    total: Decimal
    to_status: OrderStatus
    from_status: Optional[OrderStatus] = None
    approved_by: Optional[str] = None
    warehouse_confirmed_by: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    actual_total: Optional[Decimal] = None

    @classmethod
    def from_order(
        cls,
        order: Order,
        action: OrderAction,
        actor: Actor,
        from_status: Optional[OrderStatus] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> "TransitionOutcome":
        return cls(
            action=action,
            actor=actor,
            order_id=order.id,
            order_number=order.order_number,
            created_by=order.created_by,
            customer_name=order.customer_name,
            total=order.total,
            to_status=order.status,
            from_status=from_status,
            approved_by=order.approved_by,
            warehouse_confirmed_by=order.warehouse_confirmed_by,
            reason=reason,
            notes=notes,
            tracking_number=order.tracking_number,
            actual_total=order.actual_total,
        )

    @property
    def event(self) -> str:
        """Name of the notification event this outcome triggers."""
        if self.action is OrderAction.CREATE:
            return "order_created"
        if self.action is OrderAction.AMEND:
            return "order_amended"
        if self.action is OrderAction.RESUBMIT:
            return "order_resubmitted"
        return self.to_status.value

    @property
    def status_changed(self) -> bool:
        return self.from_status is not None and self.from_status != self.to_status

    def template_context(self) -> dict[str, Any]:
        return {
            "order_number": self.order_number,
            "customer_name": self.customer_name,
            "total": self.total,
            "actor_name": self.actor.display_name,
            "reason": self.reason,
            "notes": self.notes,
            "tracking_number": self.tracking_number,
            "actual_total": self.actual_total,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
        }


@dataclass(frozen=True)
class PlannedNotification:
    recipient_id: str
    title: str
    message: str
    type: NotificationType
    order_id: Optional[uuid.UUID]


def _creator() -> RecipientRule:
    return RecipientRule(Audience.CREATOR)


def _role(role: UserRole) -> RecipientRule:
    return RecipientRule(Audience.ROLE, role)


FANOUT_RULES: dict[str, tuple[RecipientRule, ...]] = {
    "order_created": (_creator(), _role(UserRole.ACCOUNTANT)),
    "approved": (_creator(), _role(UserRole.WAREHOUSE)),
    "rejected": (_creator(),),
    "edit_requested": (_creator(),),
    "order_resubmitted": (_creator(), _role(UserRole.ACCOUNTANT)),
    "cancelled": (_creator(), _role(UserRole.ADMIN)),
    "warehouse_confirmed": (_creator(), _role(UserRole.SHIPPER)),
    "warehouse_rejected": (_creator(), RecipientRule(Audience.APPROVER)),
    "shipped": (_creator(),),
    "completed": (_creator(), _role(UserRole.ADMIN)),
    "partial_complete": (_creator(), _role(UserRole.ADMIN)),
    "failed": (_creator(), RecipientRule(Audience.CONFIRMER)),
    "order_amended": (_creator(),),
}


@dataclass
class NotificationPlanner:
    """Plans recipients and renders messages for transition outcomes."""

    templates: TemplateEngine = field(default_factory=TemplateEngine)
    rules: dict[str, tuple[RecipientRule, ...]] = field(
        default_factory=lambda: dict(FANOUT_RULES)
    )

    def required_roles(self, outcome: TransitionOutcome) -> set[UserRole]:
        """Roles whose membership the plan for ``outcome`` needs."""
        return {
            rule.role
            for rule in self.rules.get(outcome.event, ())
            if rule.audience is Audience.ROLE
        }

    def _recipients_for(
        self,
        rule: RecipientRule,
        outcome: TransitionOutcome,
        role_members: dict[UserRole, list[str]],
    ) -> list[str]:
        if rule.audience is Audience.CREATOR:
            return [outcome.created_by]
        if rule.audience is Audience.APPROVER:
            return [outcome.approved_by] if outcome.approved_by else []
        if rule.audience is Audience.CONFIRMER:
            return (
                [outcome.warehouse_confirmed_by]
                if outcome.warehouse_confirmed_by
                else []
            )
        return list(role_members.get(rule.role, []))

    def plan(
        self,
        outcome: TransitionOutcome,
        role_members: dict[UserRole, list[str]],
    ) -> list[PlannedNotification]:
        """
        Notifications for ``outcome``.

        Rules are applied in order and a recipient already covered by an
        earlier rule is skipped, so nobody is notified twice for one event.

        Args:
            outcome: Completed transition
            role_members: Active user ids per role

        Returns:
            Planned notifications in delivery order
        """
        planned: list[PlannedNotification] = []
        seen: set[str] = set()
        context = outcome.template_context()

        for rule in self.rules.get(outcome.event, ()):
            recipients: list[str] = []
            for recipient_id in self._recipients_for(rule, outcome, role_members):
                if recipient_id not in seen:
                    seen.add(recipient_id)
                    recipients.append(recipient_id)
            if not recipients:
                continue
            title, message = self.templates.render(
                f"{outcome.event}.{rule.template_suffix}", context
            )
            for recipient_id in recipients:
                planned.append(
                    PlannedNotification(
                        recipient_id=recipient_id,
                        title=title,
                        message=message,
                        type=NotificationType.ORDER_STATUS,
                        order_id=outcome.order_id,
                    )
                )
        return planned
