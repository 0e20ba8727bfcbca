"""
Notification inbox and live event stream endpoints.
"""

from typing import AsyncIterator
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import StreamingResponse

from orderflow.api.deps import AppSettings, Channel, CurrentActor, NotificationServiceDep
from orderflow.core.logging import get_logger
from orderflow.schemas.notifications import (
    BulkUpdateResponse,
    NotificationListResponse,
    NotificationResponse,
)
from orderflow.services.notifications.channel import DeliveryChannel, LiveConnection

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get(
    "",
    response_model=NotificationListResponse,
    summary="List notifications",
    description="Newest notifications of the caller with the unread count",
)
async def list_notifications(
    actor: CurrentActor,
    service: NotificationServiceDep,
    unread_only: bool = Query(False, description="Only return unread notifications"),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of notifications"),
) -> NotificationListResponse:
    notifications, unread = await service.list_notifications(
        actor.id, unread_only=unread_only, limit=limit
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread,
    )


async def _event_frames(
    channel: DeliveryChannel, connection: LiveConnection, keepalive_seconds: float
) -> AsyncIterator[str]:
    try:
        async for frame in connection.stream(keepalive_seconds=keepalive_seconds):
            yield frame
    finally:
        channel.disconnect(connection)
        logger.info("Live stream closed", user_id=connection.user_id)


@router.get(
    "/stream",
    summary="Live event stream",
    description="Server-sent events carrying new notifications and list refreshes",
)
async def stream_events(
    actor: CurrentActor,
    channel: Channel,
    settings: AppSettings,
) -> StreamingResponse:
    """
    Open a server-sent event stream for the caller.

    A newer stream of the same user replaces this one. The first frame is a
    ``connected`` event; comment frames keep idle connections open.
    """
    connection = channel.connect(actor.id, actor.role)
    logger.info("Live stream opened", user_id=actor.id, role=actor.role.value)
    return StreamingResponse(
        _event_frames(channel, connection, settings.sse_keepalive_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post(
    "/read-all",
    response_model=BulkUpdateResponse,
    summary="Mark all notifications read",
)
async def mark_all_read(
    actor: CurrentActor,
    service: NotificationServiceDep,
) -> BulkUpdateResponse:
    return BulkUpdateResponse(updated=await service.mark_all_read(actor.id))


@router.post(
    "/{notification_id}/read",
    response_model=NotificationResponse,
    summary="Mark notification read",
)
async def mark_read(
    notification_id: UUID,
    actor: CurrentActor,
    service: NotificationServiceDep,
) -> NotificationResponse:
    notification = await service.mark_read(actor.id, notification_id)
    return NotificationResponse.model_validate(notification)


@router.post(
    "/{notification_id}/unread",
    response_model=NotificationResponse,
    summary="Mark notification unread",
)
async def mark_unread(
    notification_id: UUID,
    actor: CurrentActor,
    service: NotificationServiceDep,
) -> NotificationResponse:
    notification = await service.mark_unread(actor.id, notification_id)
    return NotificationResponse.model_validate(notification)


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete notification",
)
async def delete_notification(
    notification_id: UUID,
    actor: CurrentActor,
    service: NotificationServiceDep,
) -> None:
    await service.delete_notification(actor.id, notification_id)


@router.delete(
    "",
    response_model=BulkUpdateResponse,
    summary="Clear all notifications",
)
async def clear_notifications(
    actor: CurrentActor,
    service: NotificationServiceDep,
) -> BulkUpdateResponse:
    return BulkUpdateResponse(updated=await service.clear_all(actor.id))
