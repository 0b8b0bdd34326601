"""Publish/subscribe bus backends."""
from .base import BusMessage, MessageBus, Subscription
from .memory import InMemoryMessageBus
from .redis_bus import RedisMessageBus

__all__ = [
    "BusMessage",
    "MessageBus",
    "Subscription",
    "InMemoryMessageBus",
    "RedisMessageBus",
]
