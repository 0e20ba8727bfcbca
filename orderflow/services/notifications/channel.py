"""
Live event delivery to connected users.

The DeliveryChannel owns a ConnectionRegistry of open live connections,
one per user. A newer connection for the same user replaces the older one,
and connections are pruned when the client disconnects or when a push to
them fails. Delivery is at-most-once: an event pushed while a user is
offline is simply dropped, the stored notification remains the record.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Protocol

from orderflow.core.logging import get_logger
from orderflow.database.models.user import UserRole

logger = get_logger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"


class DeliveryFailureError(Exception):
    """An event could not be pushed to a live connection."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


@dataclass(frozen=True)
class LiveEvent:
    """Event pushed to live connections."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "timestamp": self.timestamp, **self.data}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LiveEvent":
        payload = dict(payload)
        event_type = payload.pop("type")
        timestamp = payload.pop("timestamp", None)
        if timestamp is None:
            return cls(type=event_type, data=payload)
        return cls(type=event_type, data=payload, timestamp=timestamp)

    def encode(self) -> str:
        """Server-sent events frame for this event."""
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"


class LiveConnection:
    """Buffered live connection of one user."""

    def __init__(self, user_id: str, role: Optional[UserRole], queue_size: int = 100):
        self.id = uuid.uuid4()
        self.user_id = user_id
        self.role = role
        self._queue: asyncio.Queue[Optional[LiveEvent]] = asyncio.Queue(
            maxsize=queue_size
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: LiveEvent) -> None:
        """
        Queue ``event`` for the client.

        Raises:
            DeliveryFailureError: If the connection is closed or its buffer is full
        """
        if self._closed:
            raise DeliveryFailureError(
                "Connection is closed", user_id=self.user_id, event_type=event.type
            )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull as e:
            raise DeliveryFailureError(
                "Connection buffer is full",
                user_id=self.user_id,
                event_type=event.type,
            ) from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader exits on its next keep-alive check.
            pass

    async def stream(self, keepalive_seconds: float = 15.0) -> AsyncIterator[str]:
        """
        Yield SSE frames until the connection is closed.

        A comment frame is emitted whenever no event arrives within
        ``keepalive_seconds``.
        """
        yield LiveEvent(type="connected", data={"user_id": self.user_id}).encode()
        while not self._closed or not self._queue.empty():
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=keepalive_seconds
                )
            except asyncio.TimeoutError:
                if self._closed:
                    break
                yield KEEPALIVE_FRAME
                continue
            if event is None:
                break
            yield event.encode()


class ConnectionRegistry:
    """Open live connections keyed by user id."""

    def __init__(self) -> None:
        self._connections: dict[str, LiveConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._connections

    def add(self, connection: LiveConnection) -> Optional[LiveConnection]:
        """
        Register ``connection``, closing any previous one of the same user.

        Returns:
            The replaced connection, if any
        """
        previous = self._connections.get(connection.user_id)
        self._connections[connection.user_id] = connection
        if previous is not None and previous is not connection:
            previous.close()
            return previous
        return None

    def remove(self, connection: LiveConnection) -> bool:
        """
        Unregister ``connection`` if it is still the user's current one.

        Returns:
            True if the connection was removed
        """
        current = self._connections.get(connection.user_id)
        connection.close()
        if current is connection:
            del self._connections[connection.user_id]
            return True
        return False

    def get(self, user_id: str) -> Optional[LiveConnection]:
        return self._connections.get(user_id)

    def for_role(self, role: UserRole) -> list[LiveConnection]:
        return [c for c in self._connections.values() if c.role == role]

    def all(self) -> list[LiveConnection]:
        return list(self._connections.values())

    def close_all(self) -> None:
        for connection in list(self._connections.values()):
            connection.close()
        self._connections.clear()


class EventPublisher(Protocol):
    async def publish(self, envelope: dict[str, Any]) -> None:
        ...


class DeliveryChannel:
    """
    Pushes live events to users, roles, or everyone.

    Without a publisher, events go straight to this process's connections.
    With one (e.g. the Redis relay), events are published and every worker
    delivers them to its own connections via ``deliver_envelope``.
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        publisher: Optional[EventPublisher] = None,
        queue_size: int = 100,
    ):
        self.registry = registry or ConnectionRegistry()
        self.publisher = publisher
        self.queue_size = queue_size

    def connect(self, user_id: str, role: Optional[UserRole]) -> LiveConnection:
        connection = LiveConnection(user_id, role, queue_size=self.queue_size)
        replaced = self.registry.add(connection)
        logger.info(
            "Live connection opened",
            recipient_id=user_id,
            role=role.value if role else None,
            replaced=replaced is not None,
            open_connections=len(self.registry),
        )
        return connection

    def disconnect(self, connection: LiveConnection) -> None:
        if self.registry.remove(connection):
            logger.info(
                "Live connection closed",
                recipient_id=connection.user_id,
                open_connections=len(self.registry),
            )

    def _push(self, connection: LiveConnection, event: LiveEvent) -> bool:
        try:
            connection.push(event)
            return True
        except DeliveryFailureError as e:
            self.registry.remove(connection)
            logger.warning(
                "Live push failed, connection pruned",
                recipient_id=connection.user_id,
                event_type=event.type,
                error=e.message,
            )
            return False

    def deliver_to_user(self, user_id: str, event: LiveEvent) -> bool:
        """
        Push to one user's local connection.

        Returns:
            False if the user has no open connection here

        Raises:
            DeliveryFailureError: If the user is connected but the push failed
        """
        connection = self.registry.get(user_id)
        if connection is None:
            return False
        if not self._push(connection, event):
            raise DeliveryFailureError(
                "Live push failed", user_id=user_id, event_type=event.type
            )
        return True

    def deliver_to_role(
        self, role: UserRole, event: LiveEvent, exclude_id: Optional[str] = None
    ) -> int:
        """Push to every local connection of ``role``; returns delivered count."""
        return sum(
            self._push(connection, event)
            for connection in self.registry.for_role(role)
            if connection.user_id != exclude_id
        )

    def deliver_broadcast(
        self, event: LiveEvent, exclude_id: Optional[str] = None
    ) -> int:
        """Push to every local connection; returns delivered count."""
        return sum(
            self._push(connection, event)
            for connection in self.registry.all()
            if connection.user_id != exclude_id
        )

    def deliver_envelope(self, envelope: dict[str, Any]) -> int:
        """Deliver a relayed envelope to local connections."""
        event = LiveEvent.from_dict(envelope["event"])
        target = envelope.get("target")
        exclude_id = envelope.get("exclude_id")

        if target == "user":
            try:
                return int(self.deliver_to_user(envelope["user_id"], event))
            except DeliveryFailureError:
                return 0
        if target == "role":
            return self.deliver_to_role(
                UserRole.from_string(envelope["role"]), event, exclude_id
            )
        if target == "all":
            return self.deliver_broadcast(event, exclude_id)

        logger.warning("Unknown live event envelope target", target=target)
        return 0

    async def _publish(self, envelope: dict[str, Any]) -> None:
        try:
            await self.publisher.publish(envelope)
        except DeliveryFailureError:
            raise
        except Exception as e:
            raise DeliveryFailureError(
                "Failed to publish live event",
                target=envelope.get("target"),
                error=str(e),
            ) from e

    async def send_to_user(self, user_id: str, event: LiveEvent) -> bool:
        """
        Push ``event`` to ``user_id``.

        Raises:
            DeliveryFailureError: If the push could not be handed off
        """
        if self.publisher is not None:
            await self._publish(
                {"target": "user", "user_id": user_id, "event": event.to_dict()}
            )
            return True
        return self.deliver_to_user(user_id, event)

    async def send_to_role(
        self, role: UserRole, event: LiveEvent, exclude_id: Optional[str] = None
    ) -> int:
        """Push ``event`` to every connected user of ``role`` except ``exclude_id``."""
        if self.publisher is not None:
            await self._publish(
                {
                    "target": "role",
                    "role": role.value,
                    "exclude_id": exclude_id,
                    "event": event.to_dict(),
                }
            )
            return 0
        return self.deliver_to_role(role, event, exclude_id)

    async def broadcast(self, event: LiveEvent, exclude_id: Optional[str] = None) -> int:
        """Push ``event`` to every connected user except ``exclude_id``."""
        if self.publisher is not None:
            await self._publish(
                {"target": "all", "exclude_id": exclude_id, "event": event.to_dict()}
            )
            return 0
        return self.deliver_broadcast(event, exclude_id)

    def close(self) -> None:
        self.registry.close_all()
