"""Abstract MessageBus interface.

A bus is a set of named publish/subscribe channels reachable from every node.
Delivery is at-most-once: a subscriber only sees messages published while its
subscription is open.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class BusMessage:
    """One message received from a bus channel."""

    channel: str
    data: str


class Subscription(ABC):
    """An open subscription to one or more channels.

    Iterating yields messages in the order the bus delivered them, which for
    a single publisher is publish order.
    """

    @abstractmethod
    async def get(self) -> BusMessage:
        """Wait for the next message.

        Raises:
            DeliveryFailure: If the connection to the bus is lost.
        """

    @abstractmethod
    async def close(self) -> None:
        """Unsubscribe and release resources."""

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BusMessage:
        return await self.get()


class MessageBus(ABC):
    """Cluster-wide publish/subscribe bus."""

    @abstractmethod
    async def publish(self, channel: str, data: str) -> int:
        """Publish ``data`` on ``channel``.

        Returns:
            Number of subscriptions that received the message.

        Raises:
            DeliveryFailure: If the publish fails or times out.
        """

    @abstractmethod
    async def subscribe(self, channels: Iterable[str]) -> Subscription:
        """Open a subscription; it is active once this coroutine returns."""

    async def close(self) -> None:
        """Release bus connections."""
