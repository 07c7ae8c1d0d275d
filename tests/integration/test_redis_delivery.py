"""
Integration tests for the Redis Streams delivery queue.

Skipped unless a Redis server is reachable with the REDIS_* settings.
"""

import pytest
import pytest_asyncio
import redis.asyncio as redis

from caseflow.core.models import generate_id
from caseflow.messaging.broker import DeliveryMessage, RedisDeliveryQueue
from caseflow.storage.redis.connection import RedisConnection

pytestmark = pytest.mark.redis


@pytest_asyncio.fixture
async def redis_queue():
    connection = RedisConnection()
    try:
        await connection.init()
    except (redis.RedisError, OSError) as e:
        await connection.close()
        pytest.skip(f"Redis unavailable: {e}")

    stream = generate_id("test")
    queue = RedisDeliveryQueue(connection.client, stream_name=stream, consumer_group="test-group")
    await queue.init()
    yield queue
    await connection.client.delete(queue.stream_key, queue.dlq_key)
    await connection.close()


def make_message(attempt=1):
    return DeliveryMessage(notification_id=generate_id("notif"), user_id="alex", attempt=attempt)


class TestRedisDeliveryQueue:
    """Tests for stream consume, acknowledge and dead letters."""

    @pytest.mark.asyncio
    async def test_publish_consume_acknowledge(self, redis_queue):
        message = make_message()
        await redis_queue.publish(message)

        batch = await redis_queue.consume("worker-1", count=10, block_ms=100)

        assert [m.notification_id for _, m in batch] == [message.notification_id]
        assert await redis_queue.get_pending_count() == 1

        await redis_queue.acknowledge(batch[0][0])
        assert await redis_queue.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_reject_moves_to_dlq(self, redis_queue):
        await redis_queue.publish(make_message(attempt=3))
        [(msg_id, message)] = await redis_queue.consume("worker-1", block_ms=100)

        await redis_queue.reject(msg_id, message, "ConnectionError: channel down")

        assert await redis_queue.get_pending_count() == 0
        assert await redis_queue.get_dlq_count() == 1
        [payload] = await redis_queue.dead_letter_payloads()
        assert payload["error"] == "ConnectionError: channel down"
        assert payload["original_message_id"] == msg_id

    @pytest.mark.asyncio
    async def test_retry_from_dlq_resets_attempt(self, redis_queue):
        await redis_queue.publish(make_message(attempt=3))
        [(msg_id, message)] = await redis_queue.consume("worker-1", block_ms=100)
        await redis_queue.reject(msg_id, message, "boom")

        assert await redis_queue.retry_from_dlq() == 1

        [(_, retried)] = await redis_queue.consume("worker-1", block_ms=100)
        assert retried.notification_id == message.notification_id
        assert retried.attempt == 1
        assert await redis_queue.get_dlq_count() == 0

    @pytest.mark.asyncio
    async def test_stale_messages_claimed(self, redis_queue):
        message = make_message()
        await redis_queue.publish(message)
        await redis_queue.consume("crashed-worker", block_ms=100)

        claimed = await redis_queue.claim_stale_messages("worker-2", min_idle_ms=0)

        assert [m.notification_id for _, m in claimed] == [message.notification_id]
