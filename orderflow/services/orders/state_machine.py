"""Order state machine with role-gated transition rules.

Each rule names the role allowed to take an action, the statuses the
action may start from, the resulting status, the inputs it requires and the
side effect that stamps the action's fields onto the order. The machine
itself never touches the database; the order service loads, locks and
persists around it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order, OrderStatus
from orderflow.database.models.user import UserRole
from orderflow.services.identity.permissions import Actor
from orderflow.services.orders.enums import OrderAction
from orderflow.services.orders.errors import InvalidStateError, UnauthorizedError
from orderflow.services.orders.inputs import (
    TransitionPayload,
    ensure_valid,
)

logger = get_logger(__name__)

Effect = Callable[[Order, Actor, TransitionPayload, datetime], None]

SALES_CANCELLABLE = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.EDIT_REQUESTED,
        OrderStatus.WAREHOUSE_REJECTED,
        OrderStatus.FAILED,
    }
)

STAFF_CANCELLABLE = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.APPROVED,
        OrderStatus.EDIT_REQUESTED,
        OrderStatus.WAREHOUSE_CONFIRMED,
        OrderStatus.WAREHOUSE_REJECTED,
        OrderStatus.SHIPPED,
    }
)

RESUBMITTABLE = frozenset(
    {
        OrderStatus.EDIT_REQUESTED,
        OrderStatus.WAREHOUSE_REJECTED,
        OrderStatus.FAILED,
    }
)


@dataclass(frozen=True)
class TransitionRule:
    """
    One row of the transition table.

    Attributes:
        action: Action the rule handles
        role: Role allowed to take the action under this rule
        from_statuses: Statuses the order must be in
        to_status: Resulting status, None for actions that keep the status
        required: Payload fields that must be non-blank
        effect: Stamps action-specific fields onto the order
        owner_only: Only the order's creator may take the action
    """

    action: OrderAction
    role: UserRole
    from_statuses: frozenset[OrderStatus]
    to_status: Optional[OrderStatus]
    effect: Effect
    required: tuple[str, ...] = ()
    owner_only: bool = False

    @property
    def changes_status(self) -> bool:
        return self.to_status is not None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _effect_approved(order: Order, actor: Actor, payload: TransitionPayload,
                     now: datetime) -> None:
    order.approved_by = actor.id
    order.approved_at = now


def _effect_rejected(order: Order, actor: Actor, payload: TransitionPayload,
                     now: datetime) -> None:
    order.rejected_by = actor.id
    order.rejected_at = now
    order.rejection_reason = _clean(payload.reason)


def _effect_edit_requested(order: Order, actor: Actor, payload: TransitionPayload,
                           now: datetime) -> None:
    order.edit_requested_by = actor.id
    order.edit_requested_at = now
    order.edit_request_reason = _clean(payload.reason)


def _effect_resubmitted(order: Order, actor: Actor, payload: TransitionPayload,
                        now: datetime) -> None:
    order.resubmitted_at = now


def _effect_cancelled(order: Order, actor: Actor, payload: TransitionPayload,
                      now: datetime) -> None:
    order.cancelled_by = actor.id
    order.cancelled_at = now
    order.cancellation_reason = _clean(payload.reason)


def _effect_warehouse_confirmed(order: Order, actor: Actor,
                                payload: TransitionPayload, now: datetime) -> None:
    order.warehouse_confirmed_by = actor.id
    order.warehouse_confirmed_at = now


def _effect_warehouse_rejected(order: Order, actor: Actor,
                               payload: TransitionPayload, now: datetime) -> None:
    order.warehouse_rejected_by = actor.id
    order.warehouse_rejected_at = now
    order.warehouse_rejection_reason = _clean(payload.reason)


def _effect_shipped(order: Order, actor: Actor, payload: TransitionPayload,
                    now: datetime) -> None:
    order.shipped_by = actor.id
    order.shipped_at = now
    order.tracking_number = _clean(payload.tracking_number)
    order.shipping_notes = _clean(payload.notes)


def _effect_completed(order: Order, actor: Actor, payload: TransitionPayload,
                      now: datetime) -> None:
    order.completed_by = actor.id
    order.completed_at = now
    order.completion_notes = _clean(payload.notes)


def _effect_partially_completed(order: Order, actor: Actor,
                                  payload: TransitionPayload, now: datetime) -> None:
    order.partially_completed_by = actor.id
    order.partially_completed_at = now
    order.completion_notes = _clean(payload.notes)


def _effect_failed(order: Order, actor: Actor, payload: TransitionPayload,
                   now: datetime) -> None:
    order.failed_by = actor.id
    order.failed_at = now
    order.failure_reason = _clean(payload.reason)


def _effect_amended(order: Order, actor: Actor, payload: TransitionPayload,
                    now: datetime) -> None:
    # Quantities and the actual total are applied by the service, which
    # also records the diff.
    return None


TRANSITION_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        action=OrderAction.APPROVE,
        role=UserRole.ACCOUNTANT,
        from_statuses=frozenset({OrderStatus.PENDING}),
        to_status=OrderStatus.APPROVED,
        effect=_effect_approved,
    ),
    TransitionRule(
        action=OrderAction.REJECT,
        role=UserRole.ACCOUNTANT,
        from_statuses=frozenset({OrderStatus.PENDING}),
        to_status=OrderStatus.REJECTED,
        effect=_effect_rejected,
        required=("reason",),
    ),
    TransitionRule(
        action=OrderAction.REQUEST_EDIT,
        role=UserRole.ACCOUNTANT,
        from_statuses=frozenset({OrderStatus.PENDING}),
        to_status=OrderStatus.EDIT_REQUESTED,
        effect=_effect_edit_requested,
        required=("reason",),
    ),
    TransitionRule(
        action=OrderAction.RESUBMIT,
        role=UserRole.SALES,
        from_statuses=RESUBMITTABLE,
        to_status=OrderStatus.PENDING,
        effect=_effect_resubmitted,
        owner_only=True,
    ),
    TransitionRule(
        action=OrderAction.CANCEL,
        role=UserRole.SALES,
        from_statuses=SALES_CANCELLABLE,
        to_status=OrderStatus.CANCELLED,
        effect=_effect_cancelled,
        owner_only=True,
    ),
    TransitionRule(
        action=OrderAction.CANCEL,
        role=UserRole.ACCOUNTANT,
        from_statuses=STAFF_CANCELLABLE,
        to_status=OrderStatus.CANCELLED,
        effect=_effect_cancelled,
    ),
    TransitionRule(
        action=OrderAction.CANCEL,
        role=UserRole.ADMIN,
        from_statuses=STAFF_CANCELLABLE,
        to_status=OrderStatus.CANCELLED,
        effect=_effect_cancelled,
    ),
    TransitionRule(
        action=OrderAction.CONFIRM,
        role=UserRole.WAREHOUSE,
        from_statuses=frozenset({OrderStatus.APPROVED}),
        to_status=OrderStatus.WAREHOUSE_CONFIRMED,
        effect=_effect_warehouse_confirmed,
    ),
    TransitionRule(
        action=OrderAction.REJECT,
        role=UserRole.WAREHOUSE,
        from_statuses=frozenset({OrderStatus.APPROVED}),
        to_status=OrderStatus.WAREHOUSE_REJECTED,
        effect=_effect_warehouse_rejected,
        required=("reason",),
    ),
    TransitionRule(
        action=OrderAction.SHIP,
        role=UserRole.SHIPPER,
        from_statuses=frozenset({OrderStatus.WAREHOUSE_CONFIRMED}),
        to_status=OrderStatus.SHIPPED,
        effect=_effect_shipped,
    ),
    TransitionRule(
        action=OrderAction.COMPLETE,
        role=UserRole.SHIPPER,
        from_statuses=frozenset({OrderStatus.SHIPPED}),
        to_status=OrderStatus.COMPLETED,
        effect=_effect_completed,
    ),
    TransitionRule(
        action=OrderAction.PARTIAL_COMPLETE,
        role=UserRole.SHIPPER,
        from_statuses=frozenset({OrderStatus.SHIPPED}),
        to_status=OrderStatus.PARTIAL_COMPLETE,
        effect=_effect_partially_completed,
    ),
    TransitionRule(
        action=OrderAction.FAIL,
        role=UserRole.SHIPPER,
        from_statuses=frozenset({OrderStatus.SHIPPED}),
        to_status=OrderStatus.FAILED,
        effect=_effect_failed,
        required=("reason",),
    ),
    TransitionRule(
        action=OrderAction.AMEND,
        role=UserRole.ACCOUNTANT,
        from_statuses=frozenset({OrderStatus.PARTIAL_COMPLETE}),
        to_status=None,
        effect=_effect_amended,
    ),
)


class OrderStateMachine:
    """Looks up, validates and applies transition rules."""

    def __init__(self, rules: tuple[TransitionRule, ...] = TRANSITION_RULES):
        self._rules: dict[tuple[OrderAction, UserRole], TransitionRule] = {}
        for rule in rules:
            key = (rule.action, rule.role)
            if key in self._rules:
                raise ValueError(
                    f"Duplicate transition rule for {rule.action.value}/{rule.role.value}"
                )
            self._rules[key] = rule

    def get_rule(self, action: OrderAction, role: UserRole) -> TransitionRule:
        """
        Rule governing ``action`` for ``role``.

        Raises:
            UnauthorizedError: If no rule lets the role take the action
        """
        rule = self._rules.get((action, role))
        if rule is None:
            raise UnauthorizedError(
                f"Role '{role.value}' may not perform '{action.value}'",
                role=role.value,
                action=action.value,
            )
        return rule

    def validate_transition(
        self,
        order: Order,
        actor: Actor,
        rule: TransitionRule,
        payload: TransitionPayload,
    ) -> None:
        """
        Check ownership, current status and required inputs.

        Raises:
            UnauthorizedError: If the rule is owner-only and the actor is not the creator
            InvalidStateError: If the order's status is not a valid start state
            ValidationFailedError: If required inputs are missing
        """
        if rule.owner_only and order.created_by != actor.id:
            raise UnauthorizedError(
                "Only the order's creator may perform this action",
                role=actor.role.value,
                action=rule.action.value,
                order_id=str(order.id),
            )

        if order.status not in rule.from_statuses:
            logger.info(
                "Transition refused by current status",
                order_id=str(order.id),
                action=rule.action.value,
                current_status=order.status.value,
            )
            raise InvalidStateError(
                f"Cannot {rule.action.value} an order that is {order.status.value}",
                current_status=order.status.value,
                action=rule.action.value,
                allowed_from=[s.value for s in rule.from_statuses],
                order_id=str(order.id),
            )

        errors = {
            name: f"{name.replace('_', ' ').capitalize()} is required"
            for name in rule.required
            if not _clean(getattr(payload, name, None))
        }
        ensure_valid(errors, order_id=str(order.id), action=rule.action.value)

    def apply_transition(
        self,
        order: Order,
        actor: Actor,
        rule: TransitionRule,
        payload: TransitionPayload,
        now: datetime,
    ) -> Optional[OrderStatus]:
        """
        Apply status and side-effect fields in memory.

        Returns:
            Status before the transition
        """
        from_status = order.status
        rule.effect(order, actor, payload, now)
        if rule.to_status is not None:
            order.status = rule.to_status
        order.updated_by = actor.id
        order.updated_at = now
        return from_status

    def get_allowed_actions(self, order: Order, actor: Actor) -> list[OrderAction]:
        """Actions ``actor`` could take on ``order`` in its current status."""
        return [
            action
            for (action, role), rule in self._rules.items()
            if role == actor.role
            and order.status in rule.from_statuses
            and (not rule.owner_only or order.created_by == actor.id)
        ]


def get_order_state_machine() -> OrderStateMachine:
    """Factory for the default state machine."""
    return OrderStateMachine()
