"""
Tests for notification fan-out planning and templates.
"""

import uuid
from decimal import Decimal

import pytest

from orderflow.database.models.notification import NotificationType
from orderflow.database.models.order import OrderStatus
from orderflow.database.models.user import UserRole
from orderflow.services.identity.permissions import Actor
from orderflow.services.notifications.fanout import (
    FANOUT_RULES,
    NotificationPlanner,
    TransitionOutcome,
)
from orderflow.services.notifications.templates import (
    NOTIFICATION_TEMPLATES,
    TemplateEngine,
    TemplateNotFoundError,
    TemplateRenderError,
    format_currency,
)
from orderflow.services.orders.enums import OrderAction

ACCOUNTANT = Actor(id="acct-1", role=UserRole.ACCOUNTANT, name="Alex")
SHIPPER = Actor(id="ship-1", role=UserRole.SHIPPER, name="Shay")
SALES = Actor(id="sales-1", role=UserRole.SALES, name="Sam")


def outcome(action: OrderAction, to_status: OrderStatus, actor: Actor = ACCOUNTANT,
            **overrides) -> TransitionOutcome:
    fields = dict(
        action=action,
        actor=actor,
        order_id=uuid.uuid4(),
        order_number="ORD-1",
        created_by="sales-1",
        customer_name="Acme",
        total=Decimal("1250.00"),
        to_status=to_status,
        from_status=OrderStatus.PENDING,
    )
    fields.update(overrides)
    return TransitionOutcome(**fields)


@pytest.fixture
def planner() -> NotificationPlanner:
    return NotificationPlanner()


# ============================================================================
# Template Tests
# ============================================================================


class TestTemplates:
    """Test template rendering."""

    def test_every_rule_has_templates(self) -> None:
        engine = TemplateEngine()
        for event, rules in FANOUT_RULES.items():
            for rule in rules:
                key = f"{event}.{rule.template_suffix}"
                assert key in NOTIFICATION_TEMPLATES
                assert engine.has_template(key)

    def test_currency_filter(self) -> None:
        assert format_currency(Decimal("1250")) == "$1,250.00"
        assert format_currency(None) == ""

    def test_unknown_key(self) -> None:
        with pytest.raises(TemplateNotFoundError) as exc_info:
            TemplateEngine().render("nope.creator", {})
        assert exc_info.value.template_name == "nope.creator"

    def test_missing_variable_fails(self) -> None:
        engine = TemplateEngine({"x.creator": ("Title", "Hello {{ who }}")})
        with pytest.raises(TemplateRenderError):
            engine.render("x.creator", {})

    def test_optional_reason_omitted(self) -> None:
        _, message = TemplateEngine().render(
            "cancelled.creator",
            {"order_number": "ORD-1", "actor_name": "Ada", "reason": None},
        )
        assert message == "Order ORD-1 has been cancelled by Ada."


# ============================================================================
# Planner Tests
# ============================================================================


class TestNotificationPlanner:
    """Test recipient resolution."""

    def test_event_names(self) -> None:
        assert outcome(OrderAction.CREATE, OrderStatus.PENDING, SALES).event == "order_created"
        assert outcome(OrderAction.RESUBMIT, OrderStatus.PENDING, SALES).event == "order_resubmitted"
        assert outcome(OrderAction.AMEND, OrderStatus.PARTIAL_COMPLETE).event == "order_amended"
        assert outcome(OrderAction.APPROVE, OrderStatus.APPROVED).event == "approved"

    def test_required_roles(self, planner: NotificationPlanner) -> None:
        assert planner.required_roles(
            outcome(OrderAction.APPROVE, OrderStatus.APPROVED)
        ) == {UserRole.WAREHOUSE}
        assert planner.required_roles(
            outcome(OrderAction.REJECT, OrderStatus.REJECTED, reason="x")
        ) == set()

    def test_rejection_goes_to_creator_only(self, planner) -> None:
        planned = planner.plan(
            outcome(OrderAction.REJECT, OrderStatus.REJECTED, reason="Out of budget"),
            {},
        )

        assert [p.recipient_id for p in planned] == ["sales-1"]
        assert "Out of budget" in planned[0].message
        assert planned[0].type == NotificationType.ORDER_STATUS

    def test_approval_reaches_warehouse(self, planner) -> None:
        planned = planner.plan(
            outcome(OrderAction.APPROVE, OrderStatus.APPROVED),
            {UserRole.WAREHOUSE: ["wh-1", "wh-2"]},
        )

        assert [(p.recipient_id, p.title) for p in planned] == [
            ("sales-1", "Order Approved"),
            ("wh-1", "Order Ready for Warehouse"),
            ("wh-2", "Order Ready for Warehouse"),
        ]

    def test_failure_reaches_confirmer(self, planner) -> None:
        planned = planner.plan(
            outcome(
                OrderAction.FAIL,
                OrderStatus.FAILED,
                SHIPPER,
                from_status=OrderStatus.SHIPPED,
                warehouse_confirmed_by="wh-1",
                reason="Customer refused",
            ),
            {},
        )

        assert [p.recipient_id for p in planned] == ["sales-1", "wh-1"]
        assert all("Customer refused" in p.message for p in planned)

    def test_missing_approver_skipped(self, planner) -> None:
        planned = planner.plan(
            outcome(
                OrderAction.REJECT,
                OrderStatus.WAREHOUSE_REJECTED,
                reason="Damaged",
                approved_by=None,
            ),
            {},
        )
        assert [p.recipient_id for p in planned] == ["sales-1"]

    def test_recipient_notified_once(self, planner) -> None:
        # Creator also holds the admin role and appears in the member list twice.
        planned = planner.plan(
            outcome(OrderAction.CANCEL, OrderStatus.CANCELLED, reason="dup"),
            {UserRole.ADMIN: ["sales-1", "admin-1", "admin-1"]},
        )
        assert [p.recipient_id for p in planned] == ["sales-1", "admin-1"]

    def test_actor_is_not_excluded(self, planner) -> None:
        planned = planner.plan(
            outcome(OrderAction.CREATE, OrderStatus.PENDING, SALES, from_status=None),
            {UserRole.ACCOUNTANT: ["acct-1"]},
        )
        assert [p.recipient_id for p in planned] == ["sales-1", "acct-1"]
        assert "$1,250.00" in planned[1].message

    def test_unknown_event_plans_nothing(self) -> None:
        planner = NotificationPlanner(rules={})
        assert planner.plan(outcome(OrderAction.APPROVE, OrderStatus.APPROVED), {}) == []
