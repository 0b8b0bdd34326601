"""Cross-node message relay.

Publishing goes to the bus; delivery happens when this node's subscriber
receives the message back, so the sender's own node is handled exactly like
every other node. Re-delivery is strictly local: a node only writes to the
sockets in its own session table.

One subscriber task handles all four channels sequentially, which keeps
messages from a single publisher in publish order.
"""
import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, ValidationError

from ..bus import BusMessage, MessageBus, Subscription
from ..clock import Clock, now_ms
from ..config import BusSettings
from ..errors import DeliveryFailure, SerializationError
from .history import PUBLIC_SCOPE, HistoryLog, private_scope
from .schemas import (
    BroadcastPayload,
    ChatLogEntry,
    MessageKind,
    PresencePayload,
    ReassignPayload,
    RelayMessage,
    TargetedPayload,
)
from .sessions import LocalSessionTable

logger = logging.getLogger(__name__)

# Close code sent to a connection whose role was taken by a newer connection.
REASSIGNED_CLOSE_CODE = 4001


def _frame(frame_type: str, payload: BaseModel) -> dict:
    return {**payload.model_dump(mode="json"), "type": frame_type}


class MessageRelay:
    """Publishes client messages and re-delivers bus traffic to local sessions.

    Args:
        bus: Cluster message bus.
        sessions: This node's session table.
        history: Log that published messages are appended to.
        channels: Channel names and reconnect delay.
        clock: Millisecond clock for message timestamps.
    """

    def __init__(
        self,
        bus: MessageBus,
        sessions: LocalSessionTable,
        history: HistoryLog,
        channels: Optional[BusSettings] = None,
        clock: Clock = now_ms,
    ) -> None:
        self._bus = bus
        self._sessions = sessions
        self._history = history
        self._channels = channels or BusSettings()
        self._clock = clock
        self.ready = asyncio.Event()

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def publish_broadcast(self, content: str, sender_id: str) -> RelayMessage:
        message = RelayMessage(
            kind=MessageKind.BROADCAST,
            senderId=sender_id,
            content=content,
            timestamp=self._clock(),
        )
        await self._publish(self._channels.broadcast_channel, message)
        await self._history.append(PUBLIC_SCOPE, ChatLogEntry.from_relay(message))
        return message

    async def publish_targeted(
        self,
        content: str,
        sender_id: str,
        sender_display_name: Optional[str],
        recipient_id: str,
    ) -> RelayMessage:
        message = RelayMessage(
            kind=MessageKind.TARGETED,
            senderId=sender_id,
            senderDisplayName=sender_display_name,
            recipientId=recipient_id,
            content=content,
            timestamp=self._clock(),
        )
        await self._publish(self._channels.targeted_channel, message)

        entry = ChatLogEntry.from_relay(message)
        await self._history.append(private_scope(sender_id), entry)
        if recipient_id != sender_id:
            await self._history.append(private_scope(recipient_id), entry)
        return message

    async def _publish(self, channel: str, message: RelayMessage) -> None:
        try:
            receivers = await self._bus.publish(channel, message.to_payload().model_dump_json())
        except DeliveryFailure as exc:
            logger.error("[Relay] Dropped %s message from %s: %s", message.kind.value, message.senderId, exc)
            return
        logger.debug("[Relay] Published %s message to %s (%s subscribers)", message.kind.value, channel, receivers)

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def dispatch(self, message: BusMessage) -> int:
        """Deliver one bus message to local sessions.

        Never raises for malformed payloads; they are logged and dropped.

        Returns:
            Number of local sessions the message reached.
        """
        channels = self._channels
        try:
            if message.channel == channels.broadcast_channel:
                payload = _parse(BroadcastPayload, message.data)
                return await self._sessions.broadcast(_frame("broadcast", payload))

            if message.channel == channels.targeted_channel:
                payload = _parse(TargetedPayload, message.data)
                delivered = await self._sessions.send_to(payload.recipientId, _frame("private", payload))
                if not delivered:
                    logger.debug("[Relay] No local session for %s; dropping", payload.recipientId)
                return int(delivered)

            if message.channel == channels.presence_channel:
                payload = _parse(PresencePayload, message.data)
                return await self._sessions.broadcast(_frame("presence", payload))

            if message.channel == channels.reassign_channel:
                payload = _parse(ReassignPayload, message.data)
                return await self._evict(payload)
        except SerializationError as exc:
            logger.error("[Relay] Dropping malformed message on %s: %s", message.channel, exc)
            return 0

        logger.warning("[Relay] Message on unexpected channel %s", message.channel)
        return 0

    async def _evict(self, event: ReassignPayload) -> int:
        if event.oldId not in self._sessions:
            return 0
        delivered = await self._sessions.send_to(event.oldId, _frame("reassign", event))
        await self._sessions.close(
            event.oldId, code=REASSIGNED_CLOSE_CODE, reason=f"{event.agentName} reassigned"
        )
        logger.info("[Relay] Closed superseded %s connection %s", event.agentName, event.oldId)
        return int(delivered)

    # -------------------------------------------------------------------------
    # Subscriber loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Subscribe and dispatch until cancelled, re-subscribing after bus loss."""
        channels = [
            self._channels.broadcast_channel,
            self._channels.targeted_channel,
            self._channels.presence_channel,
            self._channels.reassign_channel,
        ]
        while True:
            subscription: Optional[Subscription] = None
            try:
                subscription = await self._bus.subscribe(channels)
                self.ready.set()
                async for message in subscription:
                    try:
                        await self.dispatch(message)
                    except Exception:
                        logger.exception("[Relay] Failed to dispatch message on %s", message.channel)
            except DeliveryFailure as exc:
                self.ready.clear()
                logger.warning(
                    "[Relay] Bus subscription lost (%s); retrying in %ss",
                    exc, self._channels.reconnect_delay_seconds,
                )
                await asyncio.sleep(self._channels.reconnect_delay_seconds)
            except Exception:
                self.ready.clear()
                logger.exception(
                    "[Relay] Subscriber failed; re-subscribing in %ss",
                    self._channels.reconnect_delay_seconds,
                )
                await asyncio.sleep(self._channels.reconnect_delay_seconds)
            finally:
                if subscription is not None:
                    await subscription.close()


def _parse(model, data: str):
    try:
        return model.model_validate_json(data)
    except ValidationError as exc:
        raise SerializationError(str(exc), payload=data) from exc
