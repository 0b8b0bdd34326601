"""Agent hub: wires the registry, presence, relay, liveness and history
components to one node's sessions and exposes the operations the WebSocket
and REST layers call.

The hub owns the node's two background tasks: the bus subscriber
(``MessageRelay.run``) and the delayed-job consumer
(``DeferredDispatcher.run``). Both are started in ``start()`` from the
FastAPI lifespan and cancelled in ``stop()``.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket

from ..bus import InMemoryMessageBus, MessageBus, RedisMessageBus
from ..clock import Clock, now_ms
from ..config import AppConfig
from ..delay import DelayQueue, InMemoryDelayQueue, RedisDelayQueue
from ..errors import StoreUnavailable
from ..store import InMemoryStateStore, RedisStateStore, StateStore, create_client
from .dispatcher import DeferredDispatcher
from .history import HistoryLog
from .liveness import RECHECK_JOB, LivenessMonitor
from .presence import PresenceTracker
from .registry import IdentityRegistry, new_identity
from .relay import MessageRelay
from .schemas import ChatLogEntry, PresenceStatus, RelayMessage, Role
from .sessions import LocalSessionTable

logger = logging.getLogger(__name__)

PRESENCE_ONLINE_JOB = "presence-online"

SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "System"


def _error(message: str) -> dict:
    return {"type": "error", "error": message}


class AgentHub:
    """One node's view of the agent cluster.

    Args:
        config: Node configuration.
        store: Shared state store.
        bus: Cluster message bus.
        queue: Delayed-delivery queue.
        clock: Millisecond clock shared by every component.
        id_factory: Identity generator for new connections.
    """

    def __init__(
        self,
        config: AppConfig,
        store: StateStore,
        bus: MessageBus,
        queue: DelayQueue,
        clock: Clock = now_ms,
        id_factory: Callable[[], str] = new_identity,
    ) -> None:
        self.config = config
        self.store = store
        self.bus = bus
        self.queue = queue
        self.clock = clock

        self.sessions = LocalSessionTable()
        self.registry = IdentityRegistry(
            store, bus, config.bus.reassign_channel, clock=clock, id_factory=id_factory
        )
        self.presence = PresenceTracker(
            store,
            self.registry,
            bus,
            presence_channel=config.bus.presence_channel,
            status_ttl_seconds=config.presence.status_ttl_seconds,
            clock=clock,
        )
        self.history = HistoryLog(
            store,
            capacity=config.history.capacity,
            retention_days=config.history.retention_days,
            default_page_size=config.history.default_page_size,
            max_page_size=config.history.max_page_size,
        )
        self.liveness = LivenessMonitor(
            store,
            queue,
            self.presence,
            interval_ms=config.heartbeat.interval_ms,
            check_delay_ms=config.heartbeat.check_delay_ms,
            clock=clock,
        )
        self.relay = MessageRelay(bus, self.sessions, self.history, config.bus, clock=clock)

        self.dispatcher = DeferredDispatcher(
            queue,
            poll_interval_ms=config.delay.poll_interval_ms,
            batch_size=config.delay.batch_size,
        )
        self.dispatcher.register(RECHECK_JOB, self.liveness.handle_job)
        self.dispatcher.register(PRESENCE_ONLINE_JOB, self._handle_presence_online)

        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_config(cls, config: AppConfig, clock: Clock = now_ms) -> "AgentHub":
        """Build a hub with the backends selected by ``config.backend``."""
        if config.backend == "memory":
            logger.info("[Hub] Using in-memory backends (single node only)")
            return cls(
                config,
                InMemoryStateStore(clock=clock),
                InMemoryMessageBus(),
                InMemoryDelayQueue(clock=clock),
                clock=clock,
            )

        timeout = config.redis.operation_timeout_seconds
        client = create_client(config.redis.url, timeout)
        bus_client = create_client(config.redis.url, timeout, blocking_reads=True)
        logger.info("[Hub] Using Redis backends at %s", config.redis.url)
        return cls(
            config,
            RedisStateStore(client),
            RedisMessageBus(bus_client, publish_timeout_seconds=timeout),
            RedisDelayQueue(client, queue_key=config.delay.queue_key, clock=clock),
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self.relay.run(), name="agentlink-relay"),
            asyncio.create_task(self.dispatcher.run(), name="agentlink-dispatcher"),
        ]
        try:
            await asyncio.wait_for(
                self.relay.ready.wait(), timeout=self.config.redis.operation_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("[Hub] Bus subscription not ready yet; relay keeps retrying")
        logger.info("[Hub] Started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for session_id in self.sessions.identities():
            await self.sessions.close(session_id, code=1001, reason="Server shutting down")

        await self.queue.close()
        await self.bus.close()
        await self.store.close()
        logger.info("[Hub] Stopped")

    # -------------------------------------------------------------------------
    # Connection events
    # -------------------------------------------------------------------------

    async def on_connect(self, role: Role) -> str:
        """Assign an identity for a new connection claiming ``role``.

        Raises:
            StoreUnavailable: The connection must be refused.
        """
        identity = await self.registry.assign_identity(role)
        try:
            await self.queue.schedule(
                PRESENCE_ONLINE_JOB, {"identity": identity}, self.config.presence.online_delay_ms
            )
        except StoreUnavailable as exc:
            logger.error("[Hub] Could not schedule presence update for %s: %s", identity, exc)
        return identity

    def attach_session(self, identity: str, role: Role, websocket: WebSocket) -> None:
        self.sessions.attach(identity, websocket, role)

    async def on_disconnect(self, identity: str, websocket: Optional[WebSocket] = None) -> None:
        self.sessions.detach(identity, websocket)
        await self.presence.mark_offline(identity)

    async def _handle_presence_online(self, payload: Dict[str, Any]) -> None:
        await self.presence.mark_online(str(payload["identity"]))

    async def on_client_frame(self, identity: str, data: Any) -> Optional[dict]:
        """Route one client frame.

        Returns:
            A frame to send back to the client, or None.
        """
        if not isinstance(data, dict):
            return _error("Invalid message format: expected a JSON object")

        frame_type = data.get("type")

        if frame_type == "heartbeat":
            try:
                observed = await self.liveness.record_heartbeat(identity)
            except StoreUnavailable as exc:
                logger.error("[Hub] Heartbeat from %s not recorded: %s", identity, exc)
                return _error("Heartbeat could not be recorded")
            return {"type": "heartbeat_ack", "timestamp": observed}

        if frame_type not in ("broadcast", "private"):
            return _error(f"Unknown message type: {frame_type}")

        content = data.get("content")
        if not isinstance(content, str) or not content.strip():
            return _error("Invalid message format: content is required")

        if frame_type == "broadcast":
            await self.relay.publish_broadcast(content, identity)
            return None

        recipient_id = data.get("recipientId") or data.get("id") or data.get("recipient") or identity
        if not isinstance(recipient_id, str):
            return _error("Invalid message format: recipientId must be a string")
        await self.relay.publish_targeted(content, identity, await self._display_name(identity), recipient_id)
        return None

    async def _display_name(self, identity: str) -> str:
        session = self.sessions.get(identity)
        role = session.role if session else await self.registry.resolve_role(identity)
        return role.display_name if role else identity

    # -------------------------------------------------------------------------
    # Server notifications
    # -------------------------------------------------------------------------

    async def notify_broadcast(self, content: str) -> RelayMessage:
        """Send a server-originated broadcast to every agent on every node."""
        return await self.relay.publish_broadcast(content, SYSTEM_SENDER_ID)

    async def notify_private(self, recipient_id: str, content: str) -> RelayMessage:
        """Send a server-originated private message to one identity."""
        return await self.relay.publish_targeted(content, SYSTEM_SENDER_ID, SYSTEM_SENDER_NAME, recipient_id)

    # -------------------------------------------------------------------------
    # REST projections
    # -------------------------------------------------------------------------

    async def get_role_status(self, role: Role) -> dict:
        identity = await self.registry.current_identity(role)
        status = await self.presence.get_status(role) or PresenceStatus.OFFLINE
        return {
            "agentType": role.value,
            "agentName": role.display_name,
            "identity": identity,
            "status": status.value,
        }

    async def check_identity_validity(self, role: Role, identity: str) -> bool:
        return await self.registry.is_valid(role, identity)

    async def get_history(self, scope: str, limit: int, offset: int = 0) -> List[ChatLogEntry]:
        return await self.history.read(scope, limit, offset)

    async def get_client_status(self, connection_id: str) -> dict:
        status = await self.liveness.get_client_status(connection_id) or PresenceStatus.OFFLINE
        return {"connectionId": connection_id, "status": status.value}


# Module-level singleton
_hub: Optional[AgentHub] = None


def get_hub() -> Optional[AgentHub]:
    return _hub


def set_hub(hub: Optional[AgentHub]) -> None:
    global _hub
    _hub = hub
