"""
Notification service.

Persists the notifications planned for a transition, then pushes them to
connected recipients and refreshes the order lists of affected roles.
Stored notifications are the durable record; live pushes are a best-effort
hint. Also exposes the recipient-side operations on stored notifications.
"""

import uuid
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger
from orderflow.database.base import utcnow
from orderflow.database.models.notification import Notification
from orderflow.services.identity.directory import UserDirectory, UserDirectoryError
from orderflow.services.notifications.channel import (
    DeliveryChannel,
    DeliveryFailureError,
    LiveEvent,
)
from orderflow.services.notifications.fanout import (
    NotificationPlanner,
    TransitionOutcome,
)
from orderflow.services.notifications.templates import TemplateEngineError
from orderflow.services.orders.enums import ROLE_VIEWS, OrderAction, roles_viewing
from orderflow.services.orders.errors import NotificationNotFoundError

logger = get_logger(__name__)


class NotificationServiceError(Exception):
    """Base exception for notification service errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class NotificationPersistenceError(NotificationServiceError):
    """Planned notifications could not be stored."""


class NotificationPlanningError(NotificationServiceError):
    """Recipients or messages could not be determined."""


def notification_payload(notification: Notification) -> dict[str, Any]:
    return {
        "id": str(notification.id),
        "title": notification.title,
        "message": notification.message,
        "type": notification.type.value,
        "order_id": str(notification.order_id) if notification.order_id else None,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
    }


class NotificationService:
    """Dispatches and manages in-app notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: DeliveryChannel,
        directory: UserDirectory,
        planner: Optional[NotificationPlanner] = None,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.channel = channel
        self.directory = directory
        self.planner = planner or NotificationPlanner()
        self.settings = settings or get_settings()

    async def dispatch(self, outcome: TransitionOutcome) -> list[Notification]:
        """
        Store and push the notifications for a completed transition.

        Args:
            outcome: Completed transition

        Returns:
            Stored notifications

        Raises:
            NotificationPlanningError: If recipients cannot be resolved
            NotificationPersistenceError: If storing fails; nothing is pushed then
        """
        try:
            role_members = await self.directory.role_members(
                self.planner.required_roles(outcome)
            )
            planned = self.planner.plan(outcome, role_members)
        except (UserDirectoryError, TemplateEngineError) as e:
            logger.error(
                "Failed to plan notifications",
                order_id=str(outcome.order_id),
                notification_event=outcome.event,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise NotificationPlanningError(
                "Failed to plan notifications",
                order_id=str(outcome.order_id),
                event=outcome.event,
            ) from e

        notifications = [
            Notification(
                id=uuid.uuid4(),
                user_id=item.recipient_id,
                title=item.title,
                message=item.message,
                type=item.type,
                order_id=item.order_id,
                is_read=False,
                created_at=utcnow(),
            )
            for item in planned
        ]

        if notifications:
            try:
                async with self._session_factory() as session:
                    session.add_all(notifications)
                    await session.commit()
            except SQLAlchemyError as e:
                logger.error(
                    "Failed to store notifications",
                    order_id=str(outcome.order_id),
                    notification_event=outcome.event,
                    recipient_count=len(notifications),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise NotificationPersistenceError(
                    "Failed to store notifications",
                    order_id=str(outcome.order_id),
                    event=outcome.event,
                ) from e

        logger.info(
            "Notifications stored",
            order_id=str(outcome.order_id),
            notification_event=outcome.event,
            recipients=[n.user_id for n in notifications],
        )

        for notification in notifications:
            await self._push_to_user(
                notification.user_id,
                LiveEvent(
                    type="new_notification",
                    data={"notification": notification_payload(notification)},
                ),
            )

        await self._push_list_refresh(outcome)
        return notifications

    async def _push_to_user(self, user_id: str, event: LiveEvent) -> None:
        try:
            await self.channel.send_to_user(user_id, event)
        except DeliveryFailureError as e:
            logger.warning(
                "Live notification push failed",
                recipient_id=user_id,
                event_type=event.type,
                error=e.message,
            )

    async def _push_list_refresh(self, outcome: TransitionOutcome) -> None:
        event = LiveEvent(
            type=(
                "order_created"
                if outcome.action is OrderAction.CREATE
                else "order_status_changed"
            ),
            data={
                "order_id": str(outcome.order_id),
                "order_number": outcome.order_number,
                "action": outcome.action.value,
                "status": outcome.to_status.value,
                "previous_status": (
                    outcome.from_status.value if outcome.from_status else None
                ),
                "performed_by": outcome.actor.id,
            },
        )
        actor_id = outcome.actor.id

        for role in roles_viewing(outcome.to_status):
            try:
                await self.channel.send_to_role(role, event, exclude_id=actor_id)
            except DeliveryFailureError as e:
                logger.warning(
                    "Live list refresh failed",
                    role=role.value,
                    order_id=str(outcome.order_id),
                    error=e.message,
                )

        owner_views = [view for view in ROLE_VIEWS.values() if view.owner_only]
        if outcome.created_by != actor_id and any(
            outcome.to_status in view.statuses for view in owner_views
        ):
            await self._push_to_user(outcome.created_by, event)

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> tuple[list[Notification], int]:
        """
        Newest notifications of ``user_id``.

        Returns:
            Tuple of (notifications, unread count)
        """
        page_size = min(
            limit or self.settings.notification_page_size,
            self.settings.notification_page_size,
        )
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))

        async with self._session_factory() as session:
            result = await session.execute(
                stmt.order_by(Notification.created_at.desc()).limit(page_size)
            )
            notifications = list(result.scalars().all())
            unread = await session.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            )
            return notifications, unread.scalar_one()

    async def _get_owned(
        self, session: AsyncSession, user_id: str, notification_id: uuid.UUID
    ) -> Notification:
        notification = await session.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotificationNotFoundError(
                "Notification not found", notification_id=str(notification_id)
            )
        return notification

    async def mark_read(self, user_id: str, notification_id: uuid.UUID) -> Notification:
        """
        Mark one notification read.

        Raises:
            NotificationNotFoundError: If it does not exist or belongs to someone else
        """
        async with self._session_factory() as session:
            notification = await self._get_owned(session, user_id, notification_id)
            notification.mark_read()
            await session.commit()
            return notification

    async def mark_unread(
        self, user_id: str, notification_id: uuid.UUID
    ) -> Notification:
        async with self._session_factory() as session:
            notification = await self._get_owned(session, user_id, notification_id)
            notification.mark_unread()
            await session.commit()
            return notification

    async def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of ``user_id`` read; returns the count."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
                .values(is_read=True, read_at=utcnow())
            )
            await session.commit()
        return result.rowcount

    async def delete_notification(
        self, user_id: str, notification_id: uuid.UUID
    ) -> None:
        async with self._session_factory() as session:
            notification = await self._get_owned(session, user_id, notification_id)
            await session.delete(notification)
            await session.commit()
        logger.info(
            "Notification deleted",
            recipient_id=user_id,
            notification_id=str(notification_id),
        )

    async def clear_all(self, user_id: str) -> int:
        """Delete every notification of ``user_id``; returns the count."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Notification).where(Notification.user_id == user_id)
            )
            await session.commit()
        logger.info("Notifications cleared", recipient_id=user_id, count=result.rowcount)
        return result.rowcount
