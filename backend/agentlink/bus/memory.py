"""In-process MessageBus.

Several hubs sharing one instance behave like several nodes sharing a Redis
server, which is how the cross-node tests exercise fan-out.
"""
import asyncio
from typing import FrozenSet, Iterable, List

from .base import BusMessage, MessageBus, Subscription


class InMemorySubscription(Subscription):
    def __init__(self, bus: "InMemoryMessageBus", channels: FrozenSet[str]) -> None:
        self._bus = bus
        self.channels = channels
        self.queue: "asyncio.Queue[BusMessage]" = asyncio.Queue()

    async def get(self) -> BusMessage:
        return await self.queue.get()

    async def close(self) -> None:
        self._bus._detach(self)


class InMemoryMessageBus(MessageBus):
    """MessageBus that fans out through per-subscription asyncio queues."""

    def __init__(self) -> None:
        self._subscriptions: List[InMemorySubscription] = []

    async def publish(self, channel: str, data: str) -> int:
        delivered = 0
        for subscription in list(self._subscriptions):
            if channel in subscription.channels:
                subscription.queue.put_nowait(BusMessage(channel=channel, data=data))
                delivered += 1
        return delivered

    async def subscribe(self, channels: Iterable[str]) -> Subscription:
        subscription = InMemorySubscription(self, frozenset(channels))
        self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: InMemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
