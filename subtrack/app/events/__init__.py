"""Domain event envelope, bus clients and consumers."""

from .bus import EventBus, InMemoryEventBus, RedisStreamConsumer, RedisStreamEventBus
from .models import DeliveryGuarantee, DomainEvent, Topic, UserEventType

__all__ = [
    "DeliveryGuarantee",
    "DomainEvent",
    "EventBus",
    "InMemoryEventBus",
    "RedisStreamConsumer",
    "RedisStreamEventBus",
    "Topic",
    "UserEventType",
]
