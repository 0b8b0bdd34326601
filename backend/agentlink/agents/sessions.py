"""Node-local table of attached agent sessions.

Only sessions physically attached to this node live here; the bus relay
uses it to re-deliver cluster-wide messages to local sockets.

Thread Safety:
    Designed for a single event loop. Not safe for use from multiple threads.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import WebSocket

from .schemas import Role

logger = logging.getLogger(__name__)


@dataclass
class LocalSession:
    """A WebSocket attached to this node under an assigned identity."""

    identity: str
    role: Role
    websocket: WebSocket


class LocalSessionTable:
    """Identity -> WebSocket map for this node.

    Sends go through ``_safe_send`` so one broken socket never fails a
    fan-out; sockets that fail a send are detached.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, LocalSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: str) -> bool:
        return identity in self._sessions

    def attach(self, identity: str, websocket: WebSocket, role: Role) -> LocalSession:
        session = LocalSession(identity=identity, role=role, websocket=websocket)
        self._sessions[identity] = session
        logger.info("[Sessions] Attached %s as %s (%d local)", identity, role.value, len(self))
        return session

    def detach(self, identity: str, websocket: Optional[WebSocket] = None) -> Optional[LocalSession]:
        """Remove a session.

        When ``websocket`` is given, the session is only removed if it is
        still bound to that socket.
        """
        session = self._sessions.get(identity)
        if session is None:
            return None
        if websocket is not None and session.websocket is not websocket:
            return None
        del self._sessions[identity]
        logger.info("[Sessions] Detached %s (%d local)", identity, len(self))
        return session

    def get(self, identity: str) -> Optional[LocalSession]:
        return self._sessions.get(identity)

    def identities(self) -> List[str]:
        return list(self._sessions)

    async def send_to(self, identity: str, message: dict) -> bool:
        """Send to one local session. Returns False if absent or the send failed."""
        session = self._sessions.get(identity)
        if session is None:
            return False
        if await self._safe_send(session.websocket, message):
            return True
        self.detach(identity, session.websocket)
        return False

    async def broadcast(self, message: dict) -> int:
        """Send to every local session concurrently.

        Returns:
            Number of sessions the message reached.
        """
        sessions = list(self._sessions.values())
        if not sessions:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(session.websocket, message) for session in sessions],
            return_exceptions=True,
        )

        delivered = 0
        for session, success in zip(sessions, results):
            if success is True:
                delivered += 1
            else:
                self.detach(session.identity, session.websocket)
        return delivered

    async def close(self, identity: str, code: int = 1000, reason: str = "") -> bool:
        """Detach a session and close its socket."""
        session = self.detach(identity)
        if session is None:
            return False
        try:
            await session.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("[Sessions] Close of %s failed: %s", identity, e)
        return True

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug("[Sessions] Failed to send to connection: %s", e)
            return False
