"""
Order service orchestrating the order lifecycle.

Every mutating operation follows the same path: permission gate, load
under lock, status and input checks, in-memory apply, one flush that
compares the version column, one history entry, commit. Notification
fan-out runs only after the commit and never changes the result.
"""

import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger, log_performance
from orderflow.database.base import utcnow
from orderflow.database.connection import get_session
from orderflow.database.models.order import (
    HistoryAction,
    Order,
    OrderHistoryEntry,
    OrderStatus,
)
from orderflow.database.models.user import UserRole
from orderflow.services.history.ledger import (
    FieldChange,
    HistoryLedger,
    HistoryLedgerError,
    compute_field_diff,
)
from orderflow.services.identity.permissions import Actor, PermissionGate
from orderflow.services.metrics.reducer import DashboardMetrics, DashboardMetricsReducer
from orderflow.services.notifications.fanout import TransitionOutcome
from orderflow.services.notifications.service import (
    NotificationService,
    NotificationServiceError,
)
from orderflow.services.orders.enums import ALL_STATUSES, ROLE_VIEWS, OrderAction
from orderflow.services.orders.errors import (
    ConflictError,
    OrderNotFoundError,
    OrderPersistenceError,
    ValidationFailedError,
)
from orderflow.services.orders.inputs import (
    MAX_AMOUNT,
    CustomerInfo,
    ItemInput,
    TransitionPayload,
    calculate_total,
    ensure_valid,
    parse_money,
    parse_quantity,
    validate_customer,
    validate_items,
)
from orderflow.services.orders.repository import (
    DuplicateOrderNumberError,
    OrderCreationError,
    OrderRepository,
)
from orderflow.services.orders.state_machine import (
    OrderStateMachine,
    TransitionRule,
    get_order_state_machine,
)

logger = get_logger(__name__)

RESUBMIT_DIFF_FIELDS = (
    "customer_name",
    "customer_email",
    "customer_phone",
    "customer_address",
    "items",
    "total",
)


class OrderService:
    """
    Entry point for creating, transitioning and querying orders.

    Attributes:
        gate: Role permission gate
        state_machine: Transition rule table
        notifications: Fan-out dispatcher, optional
        reducer: Dashboard metrics reducer
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifications: Optional[NotificationService] = None,
        gate: Optional[PermissionGate] = None,
        state_machine: Optional[OrderStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.notifications = notifications
        self.gate = gate or PermissionGate()
        self.state_machine = state_machine or get_order_state_machine()
        self.settings = settings or get_settings()
        self.reducer = DashboardMetricsReducer(
            priority_limit=self.settings.priority_orders_limit,
            activity_limit=self.settings.recent_activity_limit,
        )

    def _generate_order_number(self, now: Optional[datetime] = None) -> str:
        """
        Generate an order number.

        Format: ``<PREFIX>-<yyyymmddHHMMSSmmm>-<10 hex chars>``, a
        millisecond timestamp plus 40 random bits.
        """
        now = now or utcnow()
        millis = now.microsecond // 1000
        return (
            f"{self.settings.order_number_prefix}-"
            f"{now:%Y%m%d%H%M%S}{millis:03d}-{uuid.uuid4().hex[:10].upper()}"
        )

    async def create_order(
        self,
        actor: Actor,
        customer: CustomerInfo,
        items: list[ItemInput],
    ) -> Order:
        """
        Create a pending order.

        Args:
            actor: Creating user, must hold the sales role
            customer: Customer contact details
            items: At least one item

        Returns:
            Created order with items

        Raises:
            UnauthorizedError: If the actor may not create orders
            ValidationFailedError: If customer or item data is invalid
            OrderPersistenceError: If the order cannot be stored
        """
        self.gate.ensure_allowed(actor, OrderAction.CREATE)
        ensure_valid({**validate_customer(customer), **validate_items(items)})
        total = calculate_total(items)

        order: Optional[Order] = None
        attempts = self.settings.order_number_attempts
        for attempt in range(1, attempts + 1):
            order_number = self._generate_order_number()
            try:
                async with get_session(self._session_factory) as session:
                    repository = OrderRepository(session)
                    order = await repository.create_order_with_items(
                        order_number=order_number,
                        created_by=actor.id,
                        customer_fields=customer.as_order_fields(),
                        items=items,
                        total=total,
                    )
                    await HistoryLedger(session).append(
                        order_id=order.id,
                        action=HistoryAction.ORDER_CREATED,
                        performed_by=actor.id,
                        to_status=OrderStatus.PENDING,
                    )
                break
            except DuplicateOrderNumberError:
                logger.warning(
                    "Order number collision, regenerating",
                    order_number=order_number,
                    attempt=attempt,
                )
                order = None
            except (OrderCreationError, HistoryLedgerError, SQLAlchemyError) as e:
                raise OrderPersistenceError(
                    "Failed to create order", order_number=order_number
                ) from e

        if order is None:
            raise OrderPersistenceError(
                "Could not generate a unique order number", attempts=attempts
            )

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            created_by=actor.id,
            total=str(order.total),
            item_count=len(order.items),
        )

        await self._send_order_notification(
            TransitionOutcome.from_order(order, OrderAction.CREATE, actor)
        )
        return order

    async def transition(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        action: Union[OrderAction, str],
        payload: Optional[TransitionPayload] = None,
    ) -> Order:
        """
        Apply a workflow action to an order.

        Args:
            actor: Acting user
            order_id: Target order
            action: Action to take
            payload: Action-specific inputs

        Returns:
            Updated order

        Raises:
            UnauthorizedError: If the actor's role may not take the action
            OrderNotFoundError: If the order does not exist
            InvalidStateError: If the order's status does not allow the action
            ValidationFailedError: If required inputs are missing or invalid
            ConflictError: If another transition on the order won the race
            OrderPersistenceError: If the store fails
        """
        action = self._coerce_action(action)
        payload = payload or TransitionPayload()

        self.gate.ensure_allowed(actor, action)
        rule = self.state_machine.get_rule(action, actor.role)

        with log_performance(
            logger, "order_transition", order_id=str(order_id), action=action.value
        ):
            try:
                async with get_session(self._session_factory) as session:
                    order, from_status = await self._apply(
                        session, actor, order_id, rule, payload
                    )
            except (StaleDataError, IntegrityError) as e:
                raise self._conflict(order_id, action, e) from e
            except HistoryLedgerError as e:
                # A duplicate history sequence means another writer appended first.
                if isinstance(e.__cause__, IntegrityError):
                    raise self._conflict(order_id, action, e) from e
                raise OrderPersistenceError(
                    "Failed to save order transition",
                    order_id=str(order_id),
                    action=action.value,
                ) from e
            except SQLAlchemyError as e:
                raise OrderPersistenceError(
                    "Failed to save order transition",
                    order_id=str(order_id),
                    action=action.value,
                ) from e

        logger.info(
            "Order transitioned",
            order_id=str(order.id),
            order_number=order.order_number,
            action=action.value,
            from_status=from_status.value,
            to_status=order.status.value,
            performed_by=actor.id,
        )

        await self._send_order_notification(
            TransitionOutcome.from_order(
                order,
                action,
                actor,
                from_status=from_status,
                reason=payload.reason,
                notes=payload.notes,
            )
        )
        return order

    @staticmethod
    def _conflict(
        order_id: uuid.UUID, action: OrderAction, error: Exception
    ) -> ConflictError:
        logger.warning(
            "Concurrent transition detected",
            order_id=str(order_id),
            action=action.value,
            error_type=type(error).__name__,
        )
        return ConflictError(
            "Order was modified concurrently, reload and retry",
            order_id=str(order_id),
            action=action.value,
        )

    @staticmethod
    def _coerce_action(action: Union[OrderAction, str]) -> OrderAction:
        if isinstance(action, OrderAction):
            parsed = action
        else:
            try:
                parsed = OrderAction.from_string(action)
            except ValueError as e:
                raise ValidationFailedError(
                    str(e), fields={"action": "Unknown action"}
                ) from e
        if parsed is OrderAction.CREATE:
            raise ValidationFailedError(
                "Orders are created with create_order",
                fields={"action": "Create is not a transition"},
            )
        return parsed

    async def _apply(
        self,
        session: AsyncSession,
        actor: Actor,
        order_id: uuid.UUID,
        rule: TransitionRule,
        payload: TransitionPayload,
    ) -> tuple[Order, OrderStatus]:
        repository = OrderRepository(session)
        order = await repository.get_order_by_id(order_id, for_update=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        self.state_machine.validate_transition(order, actor, rule, payload)
        if rule.action is OrderAction.RESUBMIT:
            self._validate_resubmission(payload)
        elif rule.action is OrderAction.AMEND:
            self._validate_amendment(order, payload)

        now = utcnow()
        before = order.snapshot()
        from_status = self.state_machine.apply_transition(
            order, actor, rule, payload, now
        )

        changes: list[FieldChange] = []
        if rule.action is OrderAction.RESUBMIT:
            await self._apply_resubmission(repository, order, payload)
            changes = compute_field_diff(
                before, order.snapshot(), fields=RESUBMIT_DIFF_FIELDS
            )
        elif rule.action is OrderAction.AMEND:
            changes = self._apply_amendment(order, payload)

        await session.flush()

        await HistoryLedger(session).append(
            order_id=order.id,
            action=(
                HistoryAction.STATUS_CHANGED
                if rule.changes_status
                else HistoryAction.ORDER_AMENDED
            ),
            performed_by=actor.id,
            from_status=from_status,
            to_status=order.status,
            reason=(payload.reason or "").strip() or None,
            notes=(payload.notes or "").strip() or None,
            changes=changes,
        )
        return order, from_status

    @staticmethod
    def _validate_resubmission(payload: TransitionPayload) -> None:
        errors: dict[str, str] = {}
        if payload.customer is not None:
            errors.update(validate_customer(payload.customer))
        if payload.items is not None:
            errors.update(validate_items(payload.items))
        ensure_valid(errors, action=OrderAction.RESUBMIT.value)

    @staticmethod
    async def _apply_resubmission(
        repository: OrderRepository, order: Order, payload: TransitionPayload
    ) -> None:
        if payload.customer is not None:
            for name, value in payload.customer.as_order_fields().items():
                setattr(order, name, value)
        if payload.items is not None:
            await repository.replace_items(order, payload.items)
            order.total = calculate_total(payload.items)

    @staticmethod
    def _validate_amendment(order: Order, payload: TransitionPayload) -> None:
        errors: dict[str, str] = {}
        if not payload.item_adjustments and payload.actual_total is None:
            errors["item_adjustments"] = (
                "Provide item adjustments or an actual total"
            )

        items = {str(item.id): item for item in order.items}
        for index, adjustment in enumerate(payload.item_adjustments):
            prefix = f"item_adjustments[{index}]"
            item = items.get(str(adjustment.item_id))
            if item is None:
                errors[f"{prefix}.item_id"] = "Item does not belong to this order"
                continue
            shipped = (
                item.quantity_shipped
                if adjustment.quantity_shipped is None
                else parse_quantity(adjustment.quantity_shipped)
            )
            returned = (
                item.quantity_returned
                if adjustment.quantity_returned is None
                else parse_quantity(adjustment.quantity_returned)
            )
            if shipped is None or shipped < 0 or shipped > item.quantity:
                errors[f"{prefix}.quantity_shipped"] = (
                    f"Must be between 0 and {item.quantity}"
                )
            elif returned is None or returned < 0 or returned > shipped:
                errors[f"{prefix}.quantity_returned"] = (
                    f"Must be between 0 and {shipped}"
                )

        if payload.actual_total is not None:
            amount = parse_money(payload.actual_total)
            if amount is None or amount < 0:
                errors["actual_total"] = "Actual total must be a non-negative number"
            elif amount > MAX_AMOUNT:
                errors["actual_total"] = "Actual total is too large"

        ensure_valid(errors, action=OrderAction.AMEND.value, order_id=str(order.id))

    @staticmethod
    def _apply_amendment(order: Order, payload: TransitionPayload) -> list[FieldChange]:
        changes: list[FieldChange] = []
        items = {str(item.id): item for item in order.items}

        for adjustment in payload.item_adjustments:
            item = items[str(adjustment.item_id)]
            for name in ("quantity_shipped", "quantity_returned"):
                requested = getattr(adjustment, name)
                if requested is None:
                    continue
                new_value = parse_quantity(requested)
                old_value = getattr(item, name)
                if new_value != old_value:
                    setattr(item, name, new_value)
                    changes.append(
                        FieldChange(
                            field=f"items[{item.position}].{name}",
                            old_value=old_value,
                            new_value=new_value,
                        )
                    )

        if payload.actual_total is not None:
            amount = parse_money(payload.actual_total)
            old_amount = order.actual_total
            if old_amount is None or amount != old_amount:
                order.actual_total = amount
                changes.append(
                    FieldChange(
                        field="actual_total",
                        old_value=str(old_amount) if old_amount is not None else None,
                        new_value=str(amount),
                    )
                )
        return changes

    async def _send_order_notification(self, outcome: TransitionOutcome) -> None:
        """Dispatch notifications; failures are logged and never raised."""
        if self.notifications is None:
            return
        try:
            await self.notifications.dispatch(outcome)
        except NotificationServiceError as e:
            # The committed transition stands regardless of delivery.
            logger.error(
                "Failed to send order notification",
                order_id=str(outcome.order_id),
                notification_event=outcome.event,
                error=e.message,
            )
        except Exception as e:
            logger.error(
                "Unexpected error sending order notification",
                order_id=str(outcome.order_id),
                notification_event=outcome.event,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    async def get_order(self, actor: Actor, order_id: uuid.UUID) -> Order:
        """
        Load one order visible to ``actor``.

        Raises:
            OrderNotFoundError: If it does not exist or is outside the actor's view
        """
        async with self._session_factory() as session:
            order = await OrderRepository(session).get_order_by_id(order_id)

        view = ROLE_VIEWS[actor.role]
        if order is None or not view.includes(order.status, order.created_by, actor.id):
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def list_orders(
        self,
        actor: Actor,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        """
        Page of orders in the actor's role view, newest first.

        Returns:
            Tuple of (orders, total matching count)
        """
        view = ROLE_VIEWS[actor.role]
        statuses = set(view.statuses)
        if status is not None:
            statuses &= {status}
        if not statuses:
            return [], 0

        async with self._session_factory() as session:
            return await OrderRepository(session).list_orders(
                statuses=statuses,
                created_by=actor.id if view.owner_only else None,
                skip=skip,
                limit=limit,
            )

    async def get_history(self, order_id: uuid.UUID) -> list[OrderHistoryEntry]:
        """
        History of an order, newest first.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        async with self._session_factory() as session:
            order = await OrderRepository(session).get_order_by_id(order_id)
            if order is None:
                raise OrderNotFoundError("Order not found", order_id=str(order_id))
            return await HistoryLedger(session).query(order_id, newest_first=True)

    def allowed_actions(self, actor: Actor, order: Order) -> list[OrderAction]:
        return [
            action
            for action in self.state_machine.get_allowed_actions(order, actor)
            if self.gate.has_permission(actor.role, action)
        ]

    async def get_metrics(
        self, actor: Actor, now: Optional[datetime] = None
    ) -> DashboardMetrics:
        """Role-scoped dashboard metrics for ``actor``."""
        view = ROLE_VIEWS[actor.role]
        async with self._session_factory() as session:
            # The accountant's approval rate needs orders that left its view.
            orders = await OrderRepository(session).all_orders(
                statuses=None if actor.role == UserRole.ACCOUNTANT else view.statuses,
                created_by=actor.id if view.owner_only else None,
            )
            sees_everything = view.statuses == ALL_STATUSES and not view.owner_only
            visible = self.reducer.visible_orders(orders, actor)
            history = await HistoryLedger(session).recent(
                limit=self.settings.recent_activity_limit,
                order_ids=None if sees_everything else [o.id for o in visible],
            )

        with log_performance(logger, "dashboard_metrics", role=actor.role.value):
            return self.reducer.reduce(actor, orders, history, now=now)
