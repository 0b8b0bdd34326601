"""Presence tracker for the agent roles.

Status records expire on their own, so a node that dies without marking its
agent offline leaves a role that reads OFFLINE once the TTL passes.
"""
import logging
from typing import Optional

from ..bus import MessageBus
from ..clock import Clock, now_ms
from ..errors import DeliveryFailure, StoreUnavailable
from ..store import StateStore
from .registry import IdentityRegistry
from .schemas import PresencePayload, PresenceStatus, Role

logger = logging.getLogger(__name__)


def status_key(role: Role) -> str:
    return f"agent:{role.value}:status"


class PresenceTracker:
    """Writes role presence and announces changes on the presence channel."""

    def __init__(
        self,
        store: StateStore,
        registry: IdentityRegistry,
        bus: MessageBus,
        presence_channel: str = "presence-channel",
        status_ttl_seconds: int = 30,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bus = bus
        self._channel = presence_channel
        self._ttl_ms = status_ttl_seconds * 1000
        self._clock = clock

    async def mark_online(self, identity: str) -> Optional[Role]:
        return await self._update(identity, PresenceStatus.ONLINE)

    async def mark_offline(self, identity: str) -> Optional[Role]:
        return await self._update(identity, PresenceStatus.OFFLINE)

    async def refresh(self, identity: str, ttl_ms: Optional[int] = None) -> Optional[Role]:
        """Extend ONLINE presence for a live connection.

        Only a change of status is announced. A role already ONLINE just has
        its record rewritten with a fresh expiry.

        Args:
            identity: Connection that proved it is alive.
            ttl_ms: Expiry for the record; defaults to the status TTL.
        """
        ttl_ms = ttl_ms or self._ttl_ms
        try:
            role = await self._registry.resolve_role(identity)
            if role is None:
                return None
            if await self.get_status(role) == PresenceStatus.ONLINE:
                await self._store.set(status_key(role), PresenceStatus.ONLINE.value, ttl_ms=ttl_ms)
                return role
        except StoreUnavailable as exc:
            logger.error("[Presence] Could not refresh %s: %s", identity, exc)
            return None
        return await self._update(identity, PresenceStatus.ONLINE, ttl_ms=ttl_ms)

    async def get_status(self, role: Role) -> Optional[PresenceStatus]:
        raw = await self._store.get(status_key(role))
        return PresenceStatus(raw) if raw else None

    async def _update(
        self, identity: str, status: PresenceStatus, ttl_ms: Optional[int] = None
    ) -> Optional[Role]:
        """Resolve ``identity`` to its role, then record and announce ``status``.

        Returns:
            The role that changed, or None when the identity is stale,
            unknown, or the store could not be reached.
        """
        try:
            role = await self._registry.resolve_role(identity)
            if role is None:
                logger.debug("[Presence] Ignoring %s for unbound identity %s", status.value, identity)
                return None
            await self._store.set(status_key(role), status.value, ttl_ms=ttl_ms or self._ttl_ms)
        except StoreUnavailable as exc:
            logger.error("[Presence] Could not mark %s %s: %s", identity, status.value, exc)
            return None

        event = PresencePayload(
            agentType=role,
            agentName=role.display_name,
            status=status,
            timestamp=self._clock(),
        )
        try:
            await self._bus.publish(self._channel, event.model_dump_json())
        except DeliveryFailure as exc:
            logger.error("[Presence] %s change not announced: %s", role.display_name, exc)
        logger.info("[Presence] %s is %s", role.display_name, status.value)
        return role
