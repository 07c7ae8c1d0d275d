"""
Delivery consumer for processing notification messages from the queue.

Uses a semaphore-controlled task pool:
- Configurable concurrency via NOTIFICATION_CONSUMER_CONCURRENCY
- Backpressure when the pool is full (the loop blocks on the semaphore)
- Failed deliveries are re-published with exponential backoff until the
  retries are exhausted, then moved to the dead letter queue
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import redis.exceptions

from caseflow.config import get_settings
from caseflow.core.models import RetryConfig
from caseflow.messaging.broker import DeliveryMessage, DeliveryQueue, RedisDeliveryQueue

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[DeliveryMessage], Awaitable[None]]
FailureHandler = Callable[[DeliveryMessage, str], Awaitable[None]]


class DeliveryConsumer:
    """
    Consumes delivery messages and hands them to a handler.

    The handler raises to signal a failed attempt; ``on_exhausted`` is
    called once the retries are exhausted.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        handler: DeliveryHandler,
        on_exhausted: Optional[FailureHandler] = None,
        consumer_id: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        concurrency: Optional[int] = None,
        block_ms: Optional[int] = None,
    ):
        settings = get_settings()
        notifications = settings.notifications

        self.queue = queue
        self.handler = handler
        self.on_exhausted = on_exhausted
        self.consumer_id = consumer_id or f"dispatcher-{uuid4().hex[:8]}"
        self.retry_config = retry_config or RetryConfig(
            max_retries=notifications.max_retries,
            initial_delay=notifications.initial_delay,
            max_delay=notifications.max_delay,
            exponential_base=notifications.exponential_base,
            jitter=notifications.jitter,
        )
        self.block_ms = block_ms if block_ms is not None else settings.redis.stream_block_ms
        self.shutdown_timeout = notifications.graceful_shutdown_timeout

        self._concurrency = concurrency or notifications.consumer_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._processing_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start consuming messages."""
        if self._running:
            return

        self._running = True
        self._semaphore = asyncio.Semaphore(self._concurrency)
        await self.queue.init()

        logger.info(
            f"Starting delivery consumer {self.consumer_id} "
            f"(concurrency: {self._concurrency})"
        )

        self._tasks.append(asyncio.create_task(self._consume_loop()))
        if isinstance(self.queue, RedisDeliveryQueue):
            self._tasks.append(asyncio.create_task(self._claim_stale_messages()))

    async def stop(self) -> None:
        """Stop consuming messages gracefully."""
        if not self._running:
            return

        self._running = False
        logger.info(f"Stopping delivery consumer {self.consumer_id}")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        # Wait for in-flight deliveries to complete (with timeout)
        if self._processing_tasks:
            logger.info(f"Waiting for {len(self._processing_tasks)} in-flight deliveries")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._processing_tasks, return_exceptions=True),
                    timeout=self.shutdown_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Graceful shutdown timed out, cancelling remaining deliveries")
                for task in self._processing_tasks:
                    task.cancel()
                await asyncio.gather(*self._processing_tasks, return_exceptions=True)

        self._processing_tasks.clear()

    async def _consume_loop(self) -> None:
        """Main consumption loop."""
        while self._running:
            acquired = False
            try:
                # Wait for a slot before pulling more messages than we can handle
                await self._semaphore.acquire()
                acquired = True

                if not self._running:
                    break

                messages = await self.queue.consume(
                    consumer_id=self.consumer_id,
                    count=1,
                    block_ms=self.block_ms,
                )
                if not messages:
                    continue

                for msg_id, message in messages:
                    self._spawn(msg_id, message)
                    acquired = False

            except asyncio.CancelledError:
                logger.debug(f"Consume loop for {self.consumer_id} cancelled")
                break
            except redis.exceptions.TimeoutError as e:
                logger.debug(f"Redis timeout on delivery stream, retrying: {e}")
            except redis.exceptions.ConnectionError as e:
                logger.warning(f"Redis connection error on delivery stream: {e}")
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"Error in delivery consume loop: {e}", exc_info=True)
                await asyncio.sleep(1)
            finally:
                if acquired:
                    self._semaphore.release()

    def _spawn(self, msg_id: str, message: DeliveryMessage) -> None:
        """Process a message in the pool; the caller already holds a slot."""
        task = asyncio.create_task(self._process_message_with_semaphore(msg_id, message))
        self._processing_tasks.add(task)
        task.add_done_callback(self._processing_tasks.discard)

    async def _process_message_with_semaphore(
        self,
        msg_id: str,
        message: DeliveryMessage,
    ) -> None:
        """Process a message and release semaphore when done."""
        try:
            await self.process_message(msg_id, message)
        finally:
            self._semaphore.release()

    async def process_message(self, msg_id: str, message: DeliveryMessage) -> None:
        """
        Deliver one message.

        On failure the message is re-published with an incremented attempt
        after a backoff delay; once retries are exhausted it is dead-lettered
        and ``on_exhausted`` is notified. Never raises for handler errors.
        """
        try:
            await self.handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            retries_used = message.attempt - 1

            if retries_used >= self.retry_config.max_retries:
                logger.error(
                    f"NotificationDeliveryFailed: notification {message.notification_id} "
                    f"after {message.attempt} attempts: {error}"
                )
                if self.on_exhausted is not None:
                    await self.on_exhausted(message, error)
                await self.queue.reject(msg_id, message, error)
                return

            delay = self.retry_config.compute_delay(message.attempt)
            logger.warning(
                f"Delivery of notification {message.notification_id} failed "
                f"(attempt {message.attempt}), retrying in {delay:.2f}s: {error}"
            )
            await asyncio.sleep(delay)

            # Re-publish before acknowledging so the message is never lost
            await self.queue.publish(message.model_copy(update={"attempt": message.attempt + 1}))
            await self.queue.acknowledge(msg_id)
            return

        await self.queue.acknowledge(msg_id)
        logger.debug(f"Delivered notification {message.notification_id} ({msg_id})")

    async def _claim_stale_messages(self, min_idle_ms: int = 60000, interval: float = 30.0) -> None:
        """Periodically claim messages left behind by dead consumers."""
        while self._running:
            try:
                claimed = await self.queue.claim_stale_messages(
                    consumer_id=self.consumer_id,
                    min_idle_ms=min_idle_ms,
                    count=5,
                )
                for msg_id, message in claimed:
                    logger.info(f"Claimed stale delivery message {msg_id}")
                    await self._semaphore.acquire()
                    self._spawn(msg_id, message)

                await asyncio.sleep(interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error claiming stale delivery messages: {e}")
                await asyncio.sleep(5)
