"""
Outbound delivery channels for notifications.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from caseflow.core.models import Notification

logger = logging.getLogger(__name__)


class DeliveryChannel(ABC):
    """Transport that pushes a stored notification to its recipient."""

    name = "channel"

    async def open(self) -> None:
        """Acquire resources (HTTP clients, connections)."""

    async def close(self) -> None:
        """Release resources."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver the notification; raise on failure."""


class LoggingChannel(DeliveryChannel):
    """Writes deliveries to the log. Default when no webhook is configured."""

    name = "log"

    async def send(self, notification: Notification) -> None:
        logger.info(
            f"Notify {notification.user_id} [{notification.kind}] {notification.title}"
        )


class WebhookChannel(DeliveryChannel):
    """POSTs each notification as JSON to a webhook."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, notification: Notification) -> None:
        if self._client is None:
            await self.open()

        response = await self._client.post(
            self.url,
            json=notification.model_dump(mode="json"),
            headers={"Idempotency-Key": notification.idempotency_key or notification.id},
        )
        response.raise_for_status()
