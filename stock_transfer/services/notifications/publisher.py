"""
Change notification publishers.

After every committed write the services announce which document changed so
that connected clients can refresh. Delivery is best effort: a failing
publisher never fails the operation that produced the change.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from stock_transfer.cache.redis_client import ChannelKeyManager, RedisClient
from stock_transfer.core.logging import get_logger
from stock_transfer.schemas.orders import utc_now

logger = get_logger(__name__)


class ChangePublishError(Exception):
    """Raised when a change event cannot be delivered."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class ChangeEvent(BaseModel):
    """Announcement that a document was written."""

    collection: str
    document_id: str
    event: str = Field(..., description="What happened, e.g. 'order.sent'")
    status: Optional[str] = None
    site_ids: list[str] = Field(default_factory=list)
    occurred_at: datetime = Field(default_factory=utc_now)


class ChangePublisher(ABC):
    """Destination for change events."""

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """
        Deliver a change event.

        Raises:
            ChangePublishError: If the event could not be delivered
        """


class NullChangePublisher(ChangePublisher):
    """Publisher used when change notifications are disabled."""

    async def publish(self, event: ChangeEvent) -> None:
        return None


class InMemoryChangePublisher(ChangePublisher):
    """Fan-out to in-process subscriber queues; keeps a log of every event."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []
        self._subscribers: list[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def publish(self, event: ChangeEvent) -> None:
        self.events.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)


class RedisChangePublisher(ChangePublisher):
    """Publishes events on ``<prefix>:<collection>`` Redis channels."""

    def __init__(self, client: RedisClient, channels: ChannelKeyManager):
        self.client = client
        self.channels = channels

    async def publish(self, event: ChangeEvent) -> None:
        channel = self.channels.collection_channel(event.collection)
        try:
            await self.client.publish_json(channel, event.model_dump(mode="json"))
        except RedisError as e:
            raise ChangePublishError(
                f"Failed to publish change event on {channel}",
                channel=channel,
                document_id=event.document_id,
                error=str(e),
            ) from e


async def publish_quietly(
    publisher: Optional[ChangePublisher], event: ChangeEvent
) -> None:
    """Publish an event, logging instead of raising when delivery fails."""
    if publisher is None:
        return
    try:
        await publisher.publish(event)
    except ChangePublishError as e:
        logger.error(
            "Failed to publish change event",
            collection=event.collection,
            document_id=event.document_id,
            change=event.event,
            channel=e.context.get("channel"),
            error=str(e),
        )
