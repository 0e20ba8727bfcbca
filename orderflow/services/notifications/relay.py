"""
Redis pub/sub relay for live events.

With several API workers a user's live connection is held by exactly one of
them. The relay publishes every live event envelope to a Redis channel and
each worker's subscriber hands received envelopes to its local
DeliveryChannel.
"""

import asyncio
import json
from typing import Any, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from orderflow.core.logging import get_logger
from orderflow.services.notifications.channel import (
    DeliveryChannel,
    DeliveryFailureError,
)

logger = get_logger(__name__)


class RedisEventRelay:
    """Publishes and consumes live event envelopes over Redis."""

    def __init__(
        self,
        url: str,
        channel_name: str,
        client: Optional[Redis] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ):
        """
        Args:
            url: Redis connection URL
            channel_name: Pub/sub channel carrying envelopes
            client: Pre-built client, mainly for tests
            socket_timeout: Socket operation timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
        """
        self._url = url
        self.channel_name = channel_name
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = client

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Strip credentials from a Redis URL for logging."""
        if "@" in url:
            protocol, rest = url.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """
        Create the connection pool and verify connectivity.

        Raises:
            ConnectionError: If Redis is unreachable
        """
        if self._client is not None:
            return

        self._pool = ConnectionPool.from_url(
            self._url,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_connect_timeout,
            retry_on_timeout=True,
            retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
            decode_responses=True,
        )
        client = Redis(connection_pool=self._pool)
        try:
            await client.ping()
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                url=self._sanitize_url(self._url),
                error=str(e),
            )
            await client.aclose()
            await self._pool.aclose()
            self._pool = None
            raise ConnectionError(f"Redis connection failed: {e}") from e

        self._client = client
        logger.info(
            "Redis event relay connected",
            url=self._sanitize_url(self._url),
            channel=self.channel_name,
        )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
        logger.info("Redis event relay disconnected")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    async def publish(self, envelope: dict[str, Any]) -> None:
        """
        Publish an envelope to every worker.

        Raises:
            DeliveryFailureError: If the relay is not connected or publish fails
        """
        if self._client is None:
            raise DeliveryFailureError(
                "Redis event relay is not connected", channel=self.channel_name
            )
        try:
            await self._client.publish(
                self.channel_name, json.dumps(envelope, default=str)
            )
        except RedisError as e:
            raise DeliveryFailureError(
                "Failed to publish live event",
                channel=self.channel_name,
                error=str(e),
            ) from e

    def handle_message(self, channel: DeliveryChannel, message: dict[str, Any]) -> int:
        """Deliver one pub/sub message locally; malformed messages are skipped."""
        if message.get("type") != "message":
            return 0
        try:
            envelope = json.loads(message["data"])
            return channel.deliver_envelope(envelope)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(
                "Discarded malformed live event envelope",
                channel=self.channel_name,
                error=str(e),
            )
            return 0

    async def run(self, channel: DeliveryChannel) -> None:
        """
        Subscribe and forward envelopes to ``channel`` until cancelled.

        Connection errors are retried with a short backoff.
        """
        if self._client is None:
            raise DeliveryFailureError(
                "Redis event relay is not connected", channel=self.channel_name
            )

        backoff = 0.5
        while True:
            pubsub = self._client.pubsub()
            try:
                await pubsub.subscribe(self.channel_name)
                logger.info("Subscribed to live events", channel=self.channel_name)
                backoff = 0.5
                async for message in pubsub.listen():
                    self.handle_message(channel, message)
            except asyncio.CancelledError:
                raise
            except RedisError as e:
                logger.warning(
                    "Live event subscription interrupted",
                    channel=self.channel_name,
                    error=str(e),
                    retry_in=backoff,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 10.0)
            finally:
                await pubsub.aclose()
