"""
FastAPI dependencies for actor resolution and service wiring.

Authentication is delegated to an upstream gateway, which forwards the
authenticated user's id in the ``X-User-Id`` header. The id is resolved to
an active user and role through the user directory on every request.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger, set_user_id
from orderflow.services.identity.directory import UserDirectory, UserDirectoryError
from orderflow.services.identity.permissions import Actor
from orderflow.services.notifications.channel import DeliveryChannel
from orderflow.services.notifications.service import NotificationService
from orderflow.services.orders.service import OrderService

logger = get_logger(__name__)


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_delivery_channel(request: Request) -> DeliveryChannel:
    return request.app.state.delivery_channel


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
Channel = Annotated[DeliveryChannel, Depends(get_delivery_channel)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]


def get_directory(session_factory: SessionFactory) -> UserDirectory:
    return UserDirectory(session_factory)


Directory = Annotated[UserDirectory, Depends(get_directory)]


async def get_current_actor(
    directory: Directory,
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """
    Resolve the calling user from the ``X-User-Id`` header.

    Raises:
        HTTPException: 401 if the header is missing, 403 if the user is
            unknown or inactive, 503 if the directory is unavailable
    """
    if not x_user_id:
        logger.warning("Actor resolution failed: No user id provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )

    try:
        actor = await directory.get_actor(x_user_id.strip())
    except UserDirectoryError as e:
        logger.error("User directory unavailable", user_id=x_user_id, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="User directory unavailable",
        ) from e

    if actor is None:
        logger.warning("Actor resolution failed: Unknown or inactive user", user_id=x_user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown or inactive user",
        )

    set_user_id(actor.id)
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]


def get_notification_service(
    session_factory: SessionFactory,
    channel: Channel,
    directory: Directory,
    settings: AppSettings,
) -> NotificationService:
    return NotificationService(
        session_factory=session_factory,
        channel=channel,
        directory=directory,
        settings=settings,
    )


NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]


def get_order_service(
    session_factory: SessionFactory,
    notifications: NotificationServiceDep,
    settings: AppSettings,
) -> OrderService:
    return OrderService(
        session_factory=session_factory,
        notifications=notifications,
        settings=settings,
    )


OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
