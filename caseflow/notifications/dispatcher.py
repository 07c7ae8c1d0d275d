"""
Notification dispatcher.

Stores notifications in per-user mailboxes and hands outbound delivery to a
background consumer, so callers never wait on a delivery channel.
"""

import asyncio
import logging
from typing import Optional

from caseflow.core.errors import NotificationNotFoundError
from caseflow.core.models import DeliveryStatus, Notification
from caseflow.messaging.broker import DeliveryMessage, DeliveryQueue, MemoryDeliveryQueue
from caseflow.messaging.consumer import DeliveryConsumer
from caseflow.notifications.channels import DeliveryChannel, LoggingChannel
from caseflow.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Per-user mailboxes with at-least-once delivery.

    Enqueueing with an idempotency key that the recipient already has
    returns the existing notification instead of creating a duplicate.
    """

    def __init__(
        self,
        store: WorkflowStore,
        queue: Optional[DeliveryQueue] = None,
        channel: Optional[DeliveryChannel] = None,
        consumer: Optional[DeliveryConsumer] = None,
    ):
        self.store = store
        self.queue = queue or MemoryDeliveryQueue()
        self.channel = channel or LoggingChannel()
        self.consumer = consumer or DeliveryConsumer(
            self.queue,
            handler=self.deliver,
            on_exhausted=self._on_delivery_exhausted,
        )
        self._enqueue_lock = asyncio.Lock()

    async def start(self) -> None:
        """Open the channel and start the delivery consumer."""
        await self.channel.open()
        await self.consumer.start()

    async def stop(self) -> None:
        await self.consumer.stop()
        await self.channel.close()

    # ==================== Mailbox ====================

    async def enqueue(
        self,
        notification: Notification,
        idempotency_key: Optional[str] = None,
    ) -> Notification:
        """
        Append a notification to its recipient's mailbox and queue delivery.

        Args:
            notification: Notification to store
            idempotency_key: Overrides notification.idempotency_key

        Returns:
            The stored notification (the earlier one on a duplicate key)
        """
        key = idempotency_key or notification.idempotency_key
        if key and key != notification.idempotency_key:
            notification = notification.model_copy(update={"idempotency_key": key})
        return (await self.enqueue_many([notification]))[0]

    async def enqueue_many(self, notifications: list[Notification]) -> list[Notification]:
        """
        Store a batch, then queue delivery for the newly stored ones.

        No delivery is published until the whole batch is in the mailboxes.
        """
        stored: list[Notification] = []
        created: list[Notification] = []
        async with self._enqueue_lock:
            for notification in notifications:
                key = notification.idempotency_key
                if key:
                    existing = await self.store.find_notification_by_key(notification.user_id, key)
                    if existing is not None:
                        logger.debug(
                            f"Suppressed duplicate notification {key} for {notification.user_id}"
                        )
                        stored.append(existing)
                        continue
                await self.store.add_notification(notification)
                stored.append(notification)
                created.append(notification)

        for notification in created:
            await self.queue.publish(DeliveryMessage(
                notification_id=notification.id,
                user_id=notification.user_id,
            ))
        return stored

    async def get_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
    ) -> list[Notification]:
        """A user's notifications, most recent first."""
        return await self.store.list_notifications(user_id, unread_only)

    async def mark_read(self, notification_id: str) -> Notification:
        notification = await self.store.mark_notification_read(notification_id)
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of a user as read. Returns the count."""
        return await self.store.mark_all_notifications_read(user_id)

    async def unread_count(self, user_id: str) -> int:
        return len(await self.store.list_notifications(user_id, unread_only=True))

    # ==================== Delivery ====================

    async def deliver(self, message: DeliveryMessage) -> None:
        """Push one notification through the channel; raises on failure."""
        notification = await self.store.get_notification(message.notification_id)
        if notification is None:
            logger.warning(f"Notification {message.notification_id} vanished before delivery")
            return
        if notification.delivery_status == DeliveryStatus.DELIVERED:
            return

        attempts = notification.delivery_attempts + 1
        try:
            await self.channel.send(notification)
        except Exception as e:
            await self.store.record_delivery(
                notification.id,
                notification.delivery_status,
                attempts,
                last_error=f"{type(e).__name__}: {e}",
            )
            raise

        await self.store.record_delivery(notification.id, DeliveryStatus.DELIVERED, attempts)

    async def _on_delivery_exhausted(self, message: DeliveryMessage, error: str) -> None:
        notification = await self.store.get_notification(message.notification_id)
        if notification is None:
            return
        await self.store.record_delivery(
            notification.id,
            DeliveryStatus.FAILED,
            notification.delivery_attempts,
            last_error=error,
        )
