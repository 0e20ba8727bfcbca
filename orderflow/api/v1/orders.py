"""
Order workflow API endpoints.

Workflow errors raised by the order service propagate to the application
exception handlers, which map them to HTTP status codes.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from orderflow.api.deps import CurrentActor, OrderServiceDep
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order, OrderStatus
from orderflow.schemas.orders import (
    HistoryEntryResponse,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    TransitionRequest,
)
from orderflow.services.identity.permissions import Actor
from orderflow.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _to_response(service: OrderService, actor: Actor, order: Order) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    response.allowed_actions = service.allowed_actions(actor, order)
    return response


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Create a pending order on behalf of a sales user",
)
async def create_order(
    request: OrderCreateRequest,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Create a new order with its line items.

    Args:
        request: Customer details and line items
        actor: Calling user
        service: Order service

    Returns:
        OrderResponse: Created order in ``pending`` status
    """
    logger.info("Creating order", user_id=actor.id, item_count=len(request.items))

    order = await service.create_order(
        actor,
        request.customer.to_domain(),
        [item.to_domain() for item in request.items],
    )
    return _to_response(service, actor, order)


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
    description="Paginated list of the orders visible to the caller's role",
)
async def list_orders(
    actor: CurrentActor,
    service: OrderServiceDep,
    status_filter: Optional[OrderStatus] = Query(
        None, alias="status", description="Filter by order status"
    ),
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(20, ge=1, le=100, description="Maximum number of records to return"),
) -> OrderListResponse:
    orders, total = await service.list_orders(
        actor, status=status_filter, skip=skip, limit=limit
    )
    return OrderListResponse(
        orders=[_to_response(service, actor, order) for order in orders],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.get_order(actor, order_id)
    return _to_response(service, actor, order)


@router.post(
    "/{order_id}/transitions",
    response_model=OrderResponse,
    summary="Apply workflow action",
    description="Approve, reject, ship or otherwise move an order through the workflow",
)
async def transition_order(
    order_id: UUID,
    request: TransitionRequest,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Apply ``request.action`` to an order.

    Returns:
        OrderResponse: Order after the transition

    Raises:
        UnauthorizedError: Role may not perform the action (403)
        OrderNotFoundError: Order does not exist (404)
        InvalidStateError: Action not allowed from the current status (409)
        ValidationFailedError: Required fields missing or invalid (422)
        ConflictError: Concurrent modification detected (409)
    """
    logger.info(
        "Order transition requested",
        order_id=str(order_id),
        action=request.action.value,
        user_id=actor.id,
    )
    order = await service.transition(actor, order_id, request.action, request.to_payload())
    return _to_response(service, actor, order)


@router.get(
    "/{order_id}/history",
    response_model=list[HistoryEntryResponse],
    summary="Get order history",
    description="Audit trail of an order, newest first",
)
async def get_order_history(
    order_id: UUID,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> list[HistoryEntryResponse]:
    # Visibility check before exposing the trail.
    await service.get_order(actor, order_id)
    entries = await service.get_history(order_id)
    return [HistoryEntryResponse.model_validate(entry) for entry in entries]
