"""
Test suite for OrderStateMachine.

Tests cover the transition table, ownership checks, required inputs,
side-effect fields and allowed-action queries. Orders are transient model
instances; the machine never touches the database.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from orderflow.database.models.order import Order, OrderStatus
from orderflow.database.models.user import UserRole
from orderflow.services.identity.permissions import Actor
from orderflow.services.orders.enums import OrderAction
from orderflow.services.orders.errors import (
    InvalidStateError,
    UnauthorizedError,
    ValidationFailedError,
)
from orderflow.services.orders.inputs import TransitionPayload
from orderflow.services.orders.state_machine import (
    RESUBMITTABLE,
    SALES_CANCELLABLE,
    STAFF_CANCELLABLE,
    TRANSITION_RULES,
    OrderStateMachine,
    TransitionRule,
    get_order_state_machine,
)

NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def machine() -> OrderStateMachine:
    return get_order_state_machine()


def make_order(status: OrderStatus = OrderStatus.PENDING, created_by: str = "sales-1") -> Order:
    return Order(
        id=uuid4(),
        order_number="ORD-TEST",
        status=status,
        created_by=created_by,
        customer_name="Acme",
        total=Decimal("100.00"),
    )


def actor(role: UserRole, user_id: str = None) -> Actor:
    return Actor(id=user_id or f"{role.value}-1", role=role)


def apply(machine: OrderStateMachine, order: Order, who: Actor,
          action: OrderAction, **payload) -> OrderStatus:
    rule = machine.get_rule(action, who.role)
    body = TransitionPayload(**payload)
    machine.validate_transition(order, who, rule, body)
    return machine.apply_transition(order, who, rule, body, NOW)


# ============================================================================
# Rule Table Tests
# ============================================================================


class TestTransitionTable:
    """Test the shape of the transition table."""

    def test_rules_are_unique_per_action_and_role(self) -> None:
        keys = [(rule.action, rule.role) for rule in TRANSITION_RULES]
        assert len(keys) == len(set(keys))

    def test_terminal_statuses(self) -> None:
        assert {s for s in OrderStatus if s.is_terminal} == {
            OrderStatus.REJECTED,
            OrderStatus.COMPLETED,
            OrderStatus.PARTIAL_COMPLETE,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
        }
        assert OrderStatus("partial_complete") is OrderStatus.PARTIAL_COMPLETE

    def test_duplicate_rule_rejected(self) -> None:
        rule = TRANSITION_RULES[0]
        with pytest.raises(ValueError, match="Duplicate transition rule"):
            OrderStateMachine(rules=(rule, rule))

    def test_create_has_no_transition_rule(self, machine: OrderStateMachine) -> None:
        for role in UserRole:
            with pytest.raises(UnauthorizedError):
                machine.get_rule(OrderAction.CREATE, role)

    @pytest.mark.parametrize(
        "action,role,to_status",
        [
            (OrderAction.APPROVE, UserRole.ACCOUNTANT, OrderStatus.APPROVED),
            (OrderAction.REJECT, UserRole.ACCOUNTANT, OrderStatus.REJECTED),
            (OrderAction.REQUEST_EDIT, UserRole.ACCOUNTANT, OrderStatus.EDIT_REQUESTED),
            (OrderAction.RESUBMIT, UserRole.SALES, OrderStatus.PENDING),
            (OrderAction.CONFIRM, UserRole.WAREHOUSE, OrderStatus.WAREHOUSE_CONFIRMED),
            (OrderAction.REJECT, UserRole.WAREHOUSE, OrderStatus.WAREHOUSE_REJECTED),
            (OrderAction.SHIP, UserRole.SHIPPER, OrderStatus.SHIPPED),
            (OrderAction.COMPLETE, UserRole.SHIPPER, OrderStatus.COMPLETED),
            (OrderAction.PARTIAL_COMPLETE, UserRole.SHIPPER, OrderStatus.PARTIAL_COMPLETE),
            (OrderAction.FAIL, UserRole.SHIPPER, OrderStatus.FAILED),
            (OrderAction.CANCEL, UserRole.ADMIN, OrderStatus.CANCELLED),
        ],
    )
    def test_rule_targets(
        self, machine: OrderStateMachine, action, role, to_status
    ) -> None:
        rule = machine.get_rule(action, role)
        assert isinstance(rule, TransitionRule)
        assert rule.to_status == to_status
        assert rule.changes_status

    def test_amend_keeps_status(self, machine: OrderStateMachine) -> None:
        rule = machine.get_rule(OrderAction.AMEND, UserRole.ACCOUNTANT)
        assert rule.to_status is None
        assert not rule.changes_status
        assert rule.from_statuses == frozenset({OrderStatus.PARTIAL_COMPLETE})

    def test_reject_rule_depends_on_role(self, machine: OrderStateMachine) -> None:
        accountant_rule = machine.get_rule(OrderAction.REJECT, UserRole.ACCOUNTANT)
        warehouse_rule = machine.get_rule(OrderAction.REJECT, UserRole.WAREHOUSE)
        assert accountant_rule.from_statuses == frozenset({OrderStatus.PENDING})
        assert warehouse_rule.from_statuses == frozenset({OrderStatus.APPROVED})

    def test_unknown_role_action_pair(self, machine: OrderStateMachine) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            machine.get_rule(OrderAction.SHIP, UserRole.SALES)
        assert exc_info.value.role == "sales"
        assert exc_info.value.action == "ship"

    def test_cancellable_sets(self) -> None:
        assert OrderStatus.APPROVED not in SALES_CANCELLABLE
        assert OrderStatus.SHIPPED in STAFF_CANCELLABLE
        assert OrderStatus.COMPLETED not in STAFF_CANCELLABLE
        assert RESUBMITTABLE <= SALES_CANCELLABLE


# ============================================================================
# Validation Tests
# ============================================================================


class TestValidateTransition:
    """Test ownership, status and input checks."""

    def test_invalid_state_lists_allowed_from(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.APPROVED)
        with pytest.raises(InvalidStateError) as exc_info:
            apply(machine, order, actor(UserRole.ACCOUNTANT), OrderAction.APPROVE)

        error = exc_info.value
        assert error.current_status == "approved"
        assert error.action == "approve"
        assert error.allowed_from == ["pending"]
        assert order.status == OrderStatus.APPROVED

    def test_reason_required_for_reject(self, machine: OrderStateMachine) -> None:
        order = make_order()
        with pytest.raises(ValidationFailedError) as exc_info:
            apply(machine, order, actor(UserRole.ACCOUNTANT), OrderAction.REJECT, reason="   ")
        assert "reason" in exc_info.value.fields
        assert order.status == OrderStatus.PENDING

    @pytest.mark.parametrize(
        "status,role,action",
        [
            (OrderStatus.PENDING, UserRole.ACCOUNTANT, OrderAction.REQUEST_EDIT),
            (OrderStatus.APPROVED, UserRole.WAREHOUSE, OrderAction.REJECT),
            (OrderStatus.SHIPPED, UserRole.SHIPPER, OrderAction.FAIL),
        ],
    )
    def test_reason_required(self, machine, status, role, action) -> None:
        with pytest.raises(ValidationFailedError):
            apply(machine, make_order(status), actor(role), action)

    def test_status_checked_before_inputs(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.REJECTED)
        with pytest.raises(InvalidStateError):
            apply(machine, order, actor(UserRole.ACCOUNTANT), OrderAction.REJECT)

    def test_resubmit_is_owner_only(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.EDIT_REQUESTED, created_by="sales-1")
        with pytest.raises(UnauthorizedError):
            apply(machine, order, actor(UserRole.SALES, "sales-2"), OrderAction.RESUBMIT)

    def test_sales_cancel_is_owner_only(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.PENDING, created_by="sales-1")
        with pytest.raises(UnauthorizedError):
            apply(machine, order, actor(UserRole.SALES, "sales-2"), OrderAction.CANCEL)

    def test_sales_cannot_cancel_approved(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.APPROVED, created_by="sales-1")
        with pytest.raises(InvalidStateError):
            apply(machine, order, actor(UserRole.SALES, "sales-1"), OrderAction.CANCEL)

    @pytest.mark.parametrize(
        "status",
        [
            OrderStatus.REJECTED,
            OrderStatus.COMPLETED,
            OrderStatus.PARTIAL_COMPLETE,
            OrderStatus.CANCELLED,
        ],
    )
    def test_closed_orders_cannot_be_cancelled(self, machine, status) -> None:
        with pytest.raises(InvalidStateError):
            apply(machine, make_order(status), actor(UserRole.ADMIN), OrderAction.CANCEL)


# ============================================================================
# Side Effect Tests
# ============================================================================


class TestApplyTransition:
    """Test status changes and per-stage fields."""

    def test_approve_stamps_approver(self, machine: OrderStateMachine) -> None:
        order = make_order()
        who = actor(UserRole.ACCOUNTANT)

        from_status = apply(machine, order, who, OrderAction.APPROVE)

        assert from_status == OrderStatus.PENDING
        assert order.status == OrderStatus.APPROVED
        assert order.approved_by == who.id
        assert order.approved_at == NOW
        assert order.updated_by == who.id

    def test_reject_stores_trimmed_reason(self, machine: OrderStateMachine) -> None:
        order = make_order()
        apply(machine, order, actor(UserRole.ACCOUNTANT), OrderAction.REJECT,
              reason="  Credit limit exceeded ")
        assert order.status == OrderStatus.REJECTED
        assert order.rejection_reason == "Credit limit exceeded"
        assert order.rejected_at == NOW

    def test_ship_records_tracking(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.WAREHOUSE_CONFIRMED)
        apply(machine, order, actor(UserRole.SHIPPER), OrderAction.SHIP,
              tracking_number="1Z999", notes="Leave at dock")
        assert order.status == OrderStatus.SHIPPED
        assert order.tracking_number == "1Z999"
        assert order.shipping_notes == "Leave at dock"

    def test_warehouse_reject_keeps_approval(self, machine: OrderStateMachine) -> None:
        order = make_order()
        apply(machine, order, actor(UserRole.ACCOUNTANT), OrderAction.APPROVE)
        apply(machine, order, actor(UserRole.WAREHOUSE), OrderAction.REJECT,
              reason="Out of stock")

        assert order.status == OrderStatus.WAREHOUSE_REJECTED
        assert order.warehouse_rejection_reason == "Out of stock"
        assert order.approved_by == "accountant-1"

    def test_partial_complete_keeps_completion_fields_clear(self, machine) -> None:
        order = make_order(OrderStatus.SHIPPED)
        apply(machine, order, actor(UserRole.SHIPPER), OrderAction.PARTIAL_COMPLETE,
              notes="2 of 3 boxes")
        assert order.status == OrderStatus.PARTIAL_COMPLETE
        assert order.partially_completed_by == "shipper-1"
        assert order.partially_completed_at is not None
        assert order.completed_by is None
        assert order.completed_at is None
        assert order.completion_notes == "2 of 3 boxes"

    def test_amend_leaves_status(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.PARTIAL_COMPLETE)
        from_status = apply(machine, order, actor(UserRole.ACCOUNTANT), OrderAction.AMEND)
        assert from_status == OrderStatus.PARTIAL_COMPLETE
        assert order.status == OrderStatus.PARTIAL_COMPLETE

    def test_full_happy_path(self, machine: OrderStateMachine) -> None:
        order = make_order()
        steps = [
            (UserRole.ACCOUNTANT, OrderAction.APPROVE, OrderStatus.APPROVED),
            (UserRole.WAREHOUSE, OrderAction.CONFIRM, OrderStatus.WAREHOUSE_CONFIRMED),
            (UserRole.SHIPPER, OrderAction.SHIP, OrderStatus.SHIPPED),
            (UserRole.SHIPPER, OrderAction.COMPLETE, OrderStatus.COMPLETED),
        ]
        for role, action, expected in steps:
            apply(machine, order, actor(role), action)
            assert order.status == expected
        assert order.status.is_terminal


# ============================================================================
# Allowed Action Tests
# ============================================================================


class TestAllowedActions:
    """Test allowed action queries."""

    def test_accountant_on_pending(self, machine: OrderStateMachine) -> None:
        allowed = machine.get_allowed_actions(make_order(), actor(UserRole.ACCOUNTANT))
        assert set(allowed) == {
            OrderAction.APPROVE,
            OrderAction.REJECT,
            OrderAction.REQUEST_EDIT,
            OrderAction.CANCEL,
        }

    def test_owner_sees_resubmit(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.FAILED, created_by="sales-1")
        owner = actor(UserRole.SALES, "sales-1")
        stranger = actor(UserRole.SALES, "sales-2")

        assert set(machine.get_allowed_actions(order, owner)) == {
            OrderAction.RESUBMIT,
            OrderAction.CANCEL,
        }
        assert machine.get_allowed_actions(order, stranger) == []

    def test_nothing_allowed_on_cancelled(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.CANCELLED)
        for role in UserRole:
            assert machine.get_allowed_actions(order, actor(role, "sales-1")) == []
