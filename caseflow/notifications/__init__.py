"""Per-user notification mailboxes and delivery channels."""

from caseflow.notifications.channels import DeliveryChannel, LoggingChannel, WebhookChannel
from caseflow.notifications.dispatcher import NotificationDispatcher

__all__ = ["DeliveryChannel", "LoggingChannel", "WebhookChannel", "NotificationDispatcher"]
