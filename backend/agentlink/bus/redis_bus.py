"""Redis pub/sub MessageBus."""
import asyncio
import logging
from typing import Iterable

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from ..errors import DeliveryFailure
from .base import BusMessage, MessageBus, Subscription

logger = logging.getLogger(__name__)


class RedisSubscription(Subscription):
    """Subscription over a ``redis.asyncio`` PubSub connection."""

    def __init__(self, pubsub: PubSub, channels: Iterable[str]) -> None:
        self._pubsub = pubsub
        self._channels = list(channels)
        self._messages = pubsub.listen()

    async def get(self) -> BusMessage:
        while True:
            try:
                async for message in self._messages:
                    if message.get("type") != "message":
                        continue
                    return BusMessage(channel=message["channel"], data=message["data"])
            except UnicodeDecodeError as exc:
                # The failed generator is finished; the connection is still subscribed.
                logger.error("[Bus] Dropping undecodable message on %s: %s", ",".join(self._channels), exc)
                self._messages = self._pubsub.listen()
                continue
            except (RedisError, OSError) as exc:
                raise DeliveryFailure(str(exc), ",".join(self._channels)) from exc
            raise DeliveryFailure("subscription closed", ",".join(self._channels))

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe()
        except (RedisError, OSError) as exc:
            logger.debug("[Bus] Unsubscribe failed during close: %s", exc)
        await self._pubsub.aclose()


class RedisMessageBus(MessageBus):
    """MessageBus on top of Redis PUBLISH/SUBSCRIBE.

    Args:
        client: Async Redis client created with ``decode_responses=True``.
        publish_timeout_seconds: Upper bound on a single publish.
    """

    def __init__(self, client: aioredis.Redis, publish_timeout_seconds: float = 5.0) -> None:
        self._redis = client
        self._publish_timeout = publish_timeout_seconds

    async def publish(self, channel: str, data: str) -> int:
        try:
            return await asyncio.wait_for(
                self._redis.publish(channel, data), timeout=self._publish_timeout
            )
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            raise DeliveryFailure(str(exc) or type(exc).__name__, channel) from exc

    async def subscribe(self, channels: Iterable[str]) -> Subscription:
        channels = list(channels)
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(*channels)
        except (RedisError, OSError) as exc:
            await pubsub.aclose()
            raise DeliveryFailure(str(exc), ",".join(channels)) from exc
        logger.info("[Bus] Subscribed to %s", ", ".join(channels))
        return RedisSubscription(pubsub, channels)

    async def close(self) -> None:
        await self._redis.aclose()
