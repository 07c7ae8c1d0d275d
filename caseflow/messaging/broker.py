"""
Delivery queues for outbound notifications.

An in-process queue for single-node deployments and tests, and a Redis
Streams queue with consumer groups, acknowledgment and a dead letter stream.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
import itertools
from typing import Any, Optional

import redis.asyncio as redis
from pydantic import BaseModel, Field

from caseflow.config import get_settings
from caseflow.core.models import generate_id, utcnow


class DeliveryMessage(BaseModel):
    """A request to deliver one stored notification."""

    id: str = Field(default_factory=lambda: generate_id("msg"))
    notification_id: str
    user_id: str
    attempt: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)

    def to_stream(self) -> dict[str, str]:
        return {
            "id": self.id,
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "attempt": str(self.attempt),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_stream(cls, data: dict[str, Any]) -> "DeliveryMessage":
        return cls(
            id=data["id"],
            notification_id=data["notification_id"],
            user_id=data["user_id"],
            attempt=int(data.get("attempt", 1)),
            created_at=data["created_at"],
        )


class DeliveryQueue(ABC):
    """Queue between the dispatcher and its delivery consumer."""

    async def init(self) -> None:
        """Create underlying structures (streams, groups)."""

    @abstractmethod
    async def publish(self, message: DeliveryMessage) -> str:
        """Publish a message. Returns the queue message ID."""

    @abstractmethod
    async def consume(
        self,
        consumer_id: str,
        count: int = 1,
        block_ms: int = 1000,
    ) -> list[tuple[str, DeliveryMessage]]:
        """Wait up to block_ms for messages."""

    @abstractmethod
    async def acknowledge(self, message_id: str) -> None:
        """Acknowledge successful processing."""

    @abstractmethod
    async def reject(self, message_id: str, message: DeliveryMessage, error: str) -> None:
        """Acknowledge and move the message to the dead letter queue."""

    @abstractmethod
    async def get_pending_count(self) -> int:
        """Messages delivered to a consumer but not yet acknowledged."""

    @abstractmethod
    async def get_dlq_count(self) -> int:
        """Messages in the dead letter queue."""


class MemoryDeliveryQueue(DeliveryQueue):
    """In-process queue built on asyncio.Queue."""

    def __init__(self):
        self._queue: asyncio.Queue[tuple[str, DeliveryMessage]] = asyncio.Queue()
        self._pending: dict[str, DeliveryMessage] = {}
        self._dead_letters: list[tuple[DeliveryMessage, str]] = []
        self._ids = itertools.count(1)

    async def publish(self, message: DeliveryMessage) -> str:
        message_id = f"{next(self._ids)}-0"
        await self._queue.put((message_id, message))
        return message_id

    async def consume(
        self,
        consumer_id: str,
        count: int = 1,
        block_ms: int = 1000,
    ) -> list[tuple[str, DeliveryMessage]]:
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=block_ms / 1000)
        except asyncio.TimeoutError:
            return []

        batch = [first]
        while len(batch) < count and not self._queue.empty():
            batch.append(self._queue.get_nowait())

        for message_id, message in batch:
            self._pending[message_id] = message
        return batch

    async def acknowledge(self, message_id: str) -> None:
        if self._pending.pop(message_id, None) is not None:
            self._queue.task_done()

    async def reject(self, message_id: str, message: DeliveryMessage, error: str) -> None:
        self._dead_letters.append((message, error))
        await self.acknowledge(message_id)

    async def get_pending_count(self) -> int:
        return len(self._pending)

    async def get_dlq_count(self) -> int:
        return len(self._dead_letters)

    @property
    def dead_letters(self) -> list[tuple[DeliveryMessage, str]]:
        return list(self._dead_letters)

    async def join(self) -> None:
        """Wait until every published message has been acknowledged."""
        await self._queue.join()


class RedisDeliveryQueue(DeliveryQueue):
    """
    Delivery queue implementation using Redis Streams.

    Supports consumer groups for reliable processing and dead letter queue.
    """

    STREAM_PREFIX = "caseflow:stream:"
    DLQ_PREFIX = "caseflow:dlq:"

    def __init__(
        self,
        client: redis.Redis,
        stream_name: Optional[str] = None,
        consumer_group: Optional[str] = None,
    ):
        settings = get_settings()
        self.client = client
        self.stream_name = stream_name or settings.notifications.stream_name
        self.consumer_group = consumer_group or settings.notifications.consumer_group
        self.stream_key = f"{self.STREAM_PREFIX}{self.stream_name}"
        self.dlq_key = f"{self.DLQ_PREFIX}{self.stream_name}"
        self.max_length = settings.redis.stream_max_length

    async def init(self) -> None:
        """Initialize the stream and consumer group."""
        try:
            # Create consumer group (creates stream if not exists)
            await self.client.xgroup_create(
                self.stream_key,
                self.consumer_group,
                id="0",
                mkstream=True,
            )
        except redis.ResponseError as e:
            # Group already exists
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, message: DeliveryMessage) -> str:
        return await self.client.xadd(
            self.stream_key,
            message.to_stream(),
            maxlen=self.max_length,
            approximate=True,
        )

    async def consume(
        self,
        consumer_id: str,
        count: int = 1,
        block_ms: int = 5000,
    ) -> list[tuple[str, DeliveryMessage]]:
        """
        Consume messages using XREADGROUP.

        Returns list of (message_id, message) tuples.
        """
        try:
            messages = await self.client.xreadgroup(
                groupname=self.consumer_group,
                consumername=consumer_id,
                streams={self.stream_key: ">"},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                await self.init()
                return []
            raise

        result = []
        for _, stream_messages in messages or []:
            for msg_id, msg_data in stream_messages:
                result.append((msg_id, DeliveryMessage.from_stream(msg_data)))
        return result

    async def acknowledge(self, message_id: str) -> None:
        await self.client.xack(self.stream_key, self.consumer_group, message_id)

    async def reject(self, message_id: str, message: DeliveryMessage, error: str) -> None:
        await self.client.xack(self.stream_key, self.consumer_group, message_id)
        await self.client.xadd(self.dlq_key, {
            **message.to_stream(),
            "original_message_id": message_id,
            "error": error,
            "rejected_at": utcnow().isoformat(),
        })

    async def get_pending_count(self) -> int:
        try:
            info = await self.client.xpending(self.stream_key, self.consumer_group)
            return info["pending"] if info else 0
        except redis.ResponseError:
            return 0

    async def get_dlq_count(self) -> int:
        return await self.client.xlen(self.dlq_key)

    async def claim_stale_messages(
        self,
        consumer_id: str,
        min_idle_ms: int = 60000,
        count: int = 10,
    ) -> list[tuple[str, DeliveryMessage]]:
        """Claim messages left unacknowledged by a consumer that died."""
        try:
            result = await self.client.xautoclaim(
                self.stream_key,
                self.consumer_group,
                consumer_id,
                min_idle_time=min_idle_ms,
                count=count,
            )
        except redis.ResponseError:
            return []

        if not result or len(result) < 2:
            return []
        return [
            (msg_id, DeliveryMessage.from_stream(msg_data))
            for msg_id, msg_data in result[1]
            if msg_data  # Skip deleted messages
        ]

    async def retry_from_dlq(self, count: int = 10) -> int:
        """Move dead letters back onto the main stream. Returns count moved."""
        retried = 0
        for msg_id, msg_data in await self.client.xrange(self.dlq_key, count=count):
            retry_data = {
                k: v for k, v in msg_data.items()
                if k not in ("original_message_id", "error", "rejected_at")
            }
            retry_data["attempt"] = "1"
            await self.client.xadd(self.stream_key, retry_data)
            await self.client.xdel(self.dlq_key, msg_id)
            retried += 1
        return retried

    async def dead_letter_payloads(self, count: int = 100) -> list[dict[str, Any]]:
        """Raw dead letter entries, oldest first."""
        entries = await self.client.xrange(self.dlq_key, count=count)
        return [dict(data) for _, data in entries]
