"""
Test suite for change notification publishing.

Tests cover the in-memory fan-out, the Redis publisher over a mocked client,
best-effort delivery and the Redis client wrapper itself.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from stock_transfer.cache.redis_client import ChannelKeyManager, RedisClient
from stock_transfer.services.notifications.publisher import (
    ChangeEvent,
    ChangePublishError,
    InMemoryChangePublisher,
    NullChangePublisher,
    RedisChangePublisher,
    publish_quietly,
)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def event() -> ChangeEvent:
    """Order change event."""
    return ChangeEvent(
        collection="orders",
        document_id="order-1",
        event="order.sent",
        status="sent",
        site_ids=["branch-north", "factory-central"],
    )


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Mock RedisClient for publisher tests."""
    client = MagicMock(spec=RedisClient)
    client.publish_json = AsyncMock(return_value=1)
    return client


@pytest.fixture
def connected_client() -> RedisClient:
    """RedisClient with a mocked connection."""
    client = RedisClient(url="redis://:secret@localhost:6379/0")
    client._client = AsyncMock()
    client._client.publish = AsyncMock(return_value=2)
    client._client.ping = AsyncMock(return_value=True)
    client._is_connected = True
    return client


# ============================================================================
# Publisher Tests
# ============================================================================


class TestInMemoryChangePublisher:
    """Test in-process fan-out."""

    async def test_events_recorded_and_fanned_out(self, event: ChangeEvent) -> None:
        publisher = InMemoryChangePublisher()
        subscriber = publisher.subscribe()

        await publisher.publish(event)

        assert publisher.events == [event]
        assert subscriber.get_nowait() == event

    async def test_unsubscribed_queue_receives_nothing(self, event: ChangeEvent) -> None:
        publisher = InMemoryChangePublisher()
        subscriber = publisher.subscribe()
        publisher.unsubscribe(subscriber)

        await publisher.publish(event)

        assert subscriber.empty()


class TestRedisChangePublisher:
    """Test publishing over Redis."""

    async def test_publish_on_collection_channel(
        self, mock_redis_client: MagicMock, event: ChangeEvent
    ) -> None:
        publisher = RedisChangePublisher(mock_redis_client, ChannelKeyManager("transfers"))

        await publisher.publish(event)

        channel, payload = mock_redis_client.publish_json.await_args.args
        assert channel == "transfers:orders"
        assert payload["document_id"] == "order-1"
        assert payload["event"] == "order.sent"

    async def test_redis_error_wrapped(
        self, mock_redis_client: MagicMock, event: ChangeEvent
    ) -> None:
        mock_redis_client.publish_json.side_effect = RedisError("broken pipe")
        publisher = RedisChangePublisher(mock_redis_client, ChannelKeyManager("transfers"))

        with pytest.raises(ChangePublishError) as exc_info:
            await publisher.publish(event)

        assert exc_info.value.context["channel"] == "transfers:orders"


class TestPublishQuietly:
    """Test best-effort delivery."""

    async def test_failure_is_logged_not_raised(
        self, mock_redis_client: MagicMock, event: ChangeEvent
    ) -> None:
        mock_redis_client.publish_json.side_effect = RedisError("broken pipe")
        publisher = RedisChangePublisher(mock_redis_client, ChannelKeyManager())

        await publish_quietly(publisher, event)

        mock_redis_client.publish_json.assert_awaited_once()

    async def test_without_publisher(self, event: ChangeEvent) -> None:
        await publish_quietly(None, event)
        await publish_quietly(NullChangePublisher(), event)


# ============================================================================
# Redis Client Tests
# ============================================================================


class TestRedisClient:
    """Test the Redis client wrapper."""

    async def test_publish_json(self, connected_client: RedisClient) -> None:
        receivers = await connected_client.publish_json("transfers:orders", {"id": "order-1"})

        assert receivers == 2
        connected_client._client.publish.assert_awaited_once_with(
            "transfers:orders", json.dumps({"id": "order-1"})
        )

    async def test_publish_requires_connection(self) -> None:
        client = RedisClient(url="redis://localhost:6379/0")

        with pytest.raises(RedisConnectionError):
            await client.publish_json("transfers:orders", {})

    async def test_health_check(self, connected_client: RedisClient) -> None:
        assert await connected_client.health_check() is True

        connected_client._client.ping.side_effect = RedisConnectionError("down")
        assert await connected_client.health_check() is False

    async def test_health_check_when_disconnected(self) -> None:
        assert await RedisClient(url="redis://localhost:6379/0").health_check() is False

    def test_sanitize_url(self) -> None:
        assert (
            RedisClient._sanitize_url("redis://:secret@localhost:6379/0")
            == "redis://***@localhost:6379/0"
        )
        assert RedisClient._sanitize_url("redis://localhost:6379/0") == "redis://localhost:6379/0"

    def test_channel_names(self) -> None:
        channels = ChannelKeyManager("transfers")

        assert channels.make_channel("orders", 1) == "transfers:orders:1"
        assert channels.collection_channel("backorder_queues") == "transfers:backorder_queues"

    def test_connection_flag(self, connected_client: RedisClient) -> None:
        assert connected_client.is_connected is True
        assert RedisClient(url="redis://localhost:6379/0").is_connected is False

    async def test_listen_json_skips_malformed_messages(
        self, connected_client: RedisClient
    ) -> None:
        async def messages():
            yield {"type": "subscribe", "channel": "transfers:orders", "data": 1}
            yield {"type": "message", "channel": "transfers:orders", "data": "not json"}
            yield {"type": "message", "channel": "transfers:orders", "data": '{"id": "order-1"}'}

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.listen = messages
        connected_client._client.pubsub = MagicMock(return_value=pubsub)

        stream = connected_client.listen_json("transfers:orders")
        received = await stream.__anext__()
        await stream.aclose()

        assert received == {"id": "order-1"}
        pubsub.subscribe.assert_awaited_once_with("transfers:orders")
        pubsub.unsubscribe.assert_awaited_once_with("transfers:orders")
        pubsub.aclose.assert_awaited_once()
