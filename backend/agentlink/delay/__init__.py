"""Delayed-delivery queue backends."""
from .base import DelayedJob, DelayQueue
from .memory import InMemoryDelayQueue
from .redis_queue import RedisDelayQueue

__all__ = ["DelayedJob", "DelayQueue", "InMemoryDelayQueue", "RedisDelayQueue"]
