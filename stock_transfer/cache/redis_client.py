"""
Redis client for change-notification pub/sub.

This module wraps ``redis.asyncio`` with connection pooling, retry with
exponential backoff and health checks. The service only uses Redis as a
broadcast channel for document change events; nothing is cached and no
core operation depends on Redis being reachable.
"""

import json
from typing import Any, AsyncIterator, Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError,
    RedisError,
    TimeoutError,
)

from stock_transfer.core.config import get_settings
from stock_transfer.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.

    Exposes publish/subscribe for change notifications plus a ping based
    health check used by the readiness endpoint.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        """
        Initialize Redis client settings; no connection is opened yet.

        Args:
            url: Redis connection URL (defaults to settings.redis_url)
            max_connections: Maximum pool connections (defaults to settings)
            socket_timeout: Socket operation timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
            health_check_interval: Health check interval in seconds
        """
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False
        self._published = 0

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """
        Sanitize Redis URL for logging (remove password).

        Args:
            url: Redis connection URL

        Returns:
            Sanitized URL safe for logging
        """
        if "@" in url:
            protocol, rest = url.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> None:
        """
        Establish Redis connection with retry logic.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            logger.warning("Redis client already connected")
            return

        try:
            retry = Retry(
                ExponentialBackoff(base=0.1, cap=2.0),
                retries=3,
            )

            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                health_check_interval=self._health_check_interval,
                retry=retry,
                decode_responses=True,
            )

            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._is_connected = True

            logger.info(
                "Redis connection established",
                url=self._sanitize_url(self._url),
                pool_size=self._max_connections,
            )

        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self._release()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def _release(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.aclose()
            self._pool = None
        self._is_connected = False

    async def disconnect(self) -> None:
        """Close Redis connection and release the pool."""
        if not self._is_connected:
            return

        try:
            await self._release()
            logger.info("Redis connection closed", published=self._published)
        except RedisError as e:
            logger.error(
                "Error during Redis disconnect",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    async def health_check(self) -> bool:
        """
        Perform Redis health check.

        Returns:
            True if Redis is healthy and responsive, False otherwise
        """
        if not self._is_connected or not self._client:
            logger.warning("Redis health check failed: not connected")
            return False

        try:
            await self._client.ping()
            return True
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Redis health check failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    def _ensure_connected(self) -> None:
        """
        Ensure Redis client is connected.

        Raises:
            ConnectionError: If client is not connected
        """
        if not self._is_connected or not self._client:
            raise ConnectionError("Redis client is not connected")

    async def publish_json(self, channel: str, payload: dict[str, Any]) -> int:
        """
        Publish a JSON payload on a channel.

        Args:
            channel: Channel name
            payload: JSON-serializable message

        Returns:
            Number of subscribers that received the message

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        self._ensure_connected()

        try:
            receivers = await self._client.publish(channel, json.dumps(payload))
            self._published += 1
            logger.debug("Redis PUBLISH operation", channel=channel, receivers=receivers)
            return receivers
        except RedisError as e:
            logger.error("Redis PUBLISH operation failed", channel=channel, error=str(e))
            raise

    async def listen_json(self, *channels: str) -> AsyncIterator[dict[str, Any]]:
        """
        Subscribe to channels and yield decoded JSON messages.

        Args:
            *channels: Channel names to subscribe to

        Yields:
            Decoded message payloads
        """
        self._ensure_connected()
        pubsub = self._client.pubsub()
        await pubsub.subscribe(*channels)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError as e:
                    logger.warning(
                        "Discarding malformed change message",
                        channel=message.get("channel"),
                        error=str(e),
                    )
        finally:
            await pubsub.unsubscribe(*channels)
            await pubsub.aclose()


class ChannelKeyManager:
    """
    Channel name management with namespace prefixing.

    Example:
        >>> ChannelKeyManager("stock-transfers").make_channel("orders")
        'stock-transfers:orders'
    """

    def __init__(self, namespace: str = "stock-transfers"):
        self.namespace = namespace

    def make_channel(self, *parts: Union[str, int]) -> str:
        """Build a namespaced channel name from the given parts."""
        return ":".join([self.namespace, *(str(part) for part in parts)])

    def collection_channel(self, collection: str) -> str:
        return self.make_channel(collection)


_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create global Redis client instance.

    Raises:
        ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def close_redis_client() -> None:
    """Close global Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
