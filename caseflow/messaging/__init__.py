"""Notification delivery queues and consumer."""

from caseflow.messaging.broker import (
    DeliveryMessage,
    DeliveryQueue,
    MemoryDeliveryQueue,
    RedisDeliveryQueue,
)
from caseflow.messaging.consumer import DeliveryConsumer

__all__ = [
    "DeliveryMessage",
    "DeliveryQueue",
    "MemoryDeliveryQueue",
    "RedisDeliveryQueue",
    "DeliveryConsumer",
]
