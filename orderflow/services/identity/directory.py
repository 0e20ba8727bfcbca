"""
User directory backed by the local users table.

Resolves actors for incoming requests and expands a role into the ids of
its active members for notification fan-out.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.logging import get_logger
from orderflow.database.models.user import User, UserRole
from orderflow.services.identity.permissions import Actor

logger = get_logger(__name__)


class UserDirectoryError(Exception):
    """Directory lookup failed."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class UserDirectory:
    """Read-mostly view of workflow users."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_actor(self, user_id: str) -> Optional[Actor]:
        """
        Resolve an active user into an Actor.

        Returns:
            Actor, or None when the user is unknown or inactive
        """
        async with self._session_factory() as session:
            user = await session.get(User, user_id)

        if user is None or not user.is_active:
            return None
        return Actor(id=user.id, role=user.role, name=user.name)

    async def users_with_role(self, role: UserRole) -> list[str]:
        """
        Ids of active users holding ``role``.

        Raises:
            UserDirectoryError: If the lookup fails
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(User.id)
                    .where(User.role == role, User.is_active.is_(True))
                    .order_by(User.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(
                "Failed to list users by role",
                role=role.value,
                error=str(e),
            )
            raise UserDirectoryError(
                "Failed to list users by role", role=role.value
            ) from e

    async def role_members(self, roles: set[UserRole]) -> dict[UserRole, list[str]]:
        """Active member ids for each of ``roles``."""
        return {role: await self.users_with_role(role) for role in roles}

    async def register(
        self,
        user_id: str,
        name: str,
        role: UserRole,
        email: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        """
        Insert or update a user projection.

        Returns:
            Stored user
        """
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                user = User(id=user_id, name=name, role=role, email=email,
                            is_active=is_active)
                session.add(user)
            else:
                user.name = name
                user.role = role
                user.email = email
                user.is_active = is_active
            await session.commit()

        logger.info("User registered", registered_user_id=user_id, role=role.value)
        return user
