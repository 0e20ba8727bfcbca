"""
Order data access repository.

Async queries and writes for orders and their items. The repository works
inside the caller's session and never commits, so the order service decides
the transaction boundary.
"""

import uuid
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order, OrderItem, OrderStatus
from orderflow.services.orders.inputs import ItemInput, parse_money, parse_quantity

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""


class DuplicateOrderNumberError(OrderCreationError):
    """Raised when a generated order number is already taken."""


def build_items(items: Sequence[ItemInput]) -> list[OrderItem]:
    """Materialize validated item inputs as OrderItem rows."""
    return [
        OrderItem(
            position=position,
            name=item.name.strip(),
            description=(item.description or "").strip() or None,
            sku=(item.sku or "").strip() or None,
            price=parse_money(item.price),
            quantity=parse_quantity(item.quantity),
            quantity_shipped=0,
            quantity_returned=0,
        )
        for position, item in enumerate(items)
    ]


class OrderRepository:
    """Repository for order data access operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order_with_items(
        self,
        order_number: str,
        created_by: str,
        customer_fields: dict[str, Optional[str]],
        items: Sequence[ItemInput],
        total: Decimal,
    ) -> Order:
        """
        Insert an order together with its items and flush.

        Args:
            order_number: Generated unique order number
            created_by: Creating user id
            customer_fields: Customer contact columns
            items: Validated items
            total: Order total

        Returns:
            Flushed order with items loaded

        Raises:
            DuplicateOrderNumberError: If the order number is already in use
            OrderCreationError: If the insert fails for another reason
        """
        order = Order(
            id=uuid.uuid4(),
            order_number=order_number,
            status=OrderStatus.PENDING,
            created_by=created_by,
            updated_by=created_by,
            total=total,
            items=build_items(items),
            **customer_fields,
        )
        self.session.add(order)

        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            if await self.order_number_exists(order_number):
                raise DuplicateOrderNumberError(
                    "Order number already in use", order_number=order_number
                ) from e
            logger.error(
                "Order insert violated a constraint",
                order_number=order_number,
                error=str(e),
            )
            raise OrderCreationError(
                "Failed to create order", order_number=order_number
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Database error creating order",
                order_number=order_number,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise OrderCreationError(
                "Failed to create order", order_number=order_number
            ) from e

        logger.debug(
            "Order row inserted",
            order_id=str(order.id),
            order_number=order_number,
            item_count=len(order.items),
        )
        return order

    async def order_number_exists(self, order_number: str) -> bool:
        result = await self.session.execute(
            select(func.count(Order.id)).where(Order.order_number == order_number)
        )
        return result.scalar_one() > 0

    async def get_order_by_id(
        self, order_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Order]:
        """
        Load an order with its items.

        Args:
            order_id: Order id
            for_update: Lock the row until the transaction ends

        Returns:
            Order or None if it does not exist
        """
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        statuses: Iterable[OrderStatus],
        created_by: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        """
        Page of orders in ``statuses``, newest first.

        Args:
            statuses: Statuses to include
            created_by: Restrict to orders created by this user
            skip: Rows to skip
            limit: Maximum rows to return

        Returns:
            Tuple of (orders, total matching count)
        """
        status_list = list(statuses)
        conditions = [Order.status.in_(status_list)]
        if created_by is not None:
            conditions.append(Order.created_by == created_by)

        count_result = await self.session.execute(
            select(func.count(Order.id)).where(*conditions)
        )
        total = count_result.scalar_one()

        result = await self.session.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.order_number.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def all_orders(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
        created_by: Optional[str] = None,
    ) -> list[Order]:
        """Every order matching the filters, for aggregate computations."""
        stmt = select(Order)
        if statuses is not None:
            stmt = stmt.where(Order.status.in_(list(statuses)))
        if created_by is not None:
            stmt = stmt.where(Order.created_by == created_by)
        result = await self.session.execute(stmt.order_by(Order.created_at))
        return list(result.scalars().all())

    async def replace_items(self, order: Order, items: Sequence[ItemInput]) -> None:
        """Swap the order's items for a new set."""
        order.items.clear()
        await self.session.flush()
        order.items.extend(build_items(items))
