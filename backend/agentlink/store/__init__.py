"""Shared state store backends."""
from .base import AssignOutcome, AssignResult, StateStore
from .memory import InMemoryStateStore
from .redis_store import RedisStateStore, create_client

__all__ = [
    "AssignOutcome",
    "AssignResult",
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "create_client",
]
