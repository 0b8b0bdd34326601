"""Heartbeat liveness monitor.

No per-connection timers: each heartbeat schedules one deferred recheck
through the delay queue, and the recheck decides from the stored heartbeat
whether the connection has gone silent.
"""
import logging
from typing import Optional

from ..clock import Clock, now_ms
from ..delay import DelayQueue
from ..store import StateStore
from .presence import PresenceTracker
from .schemas import PresenceStatus

logger = logging.getLogger(__name__)

RECHECK_JOB = "heartbeat-recheck"


def heartbeat_key(connection_id: str) -> str:
    return f"client:heartbeat:{connection_id}"


def client_status_key(connection_id: str) -> str:
    return f"client:status:{connection_id}"


class LivenessMonitor:
    """Records heartbeats and evaluates deferred rechecks.

    Args:
        store: Shared state store.
        queue: Delay queue the rechecks are scheduled on.
        presence: Tracker whose offline path runs on timeout.
        interval_ms: Expected heartbeat interval.
        check_delay_ms: Delay before a recheck fires; must exceed
            ``interval_ms``.
        clock: Millisecond clock.
    """

    def __init__(
        self,
        store: StateStore,
        queue: DelayQueue,
        presence: PresenceTracker,
        interval_ms: int = 30_000,
        check_delay_ms: int = 60_000,
        clock: Clock = now_ms,
    ) -> None:
        if check_delay_ms <= interval_ms:
            raise ValueError("check_delay_ms must be greater than interval_ms")
        self._store = store
        self._queue = queue
        self._presence = presence
        self._interval_ms = interval_ms
        self._check_delay_ms = check_delay_ms
        self._record_ttl_ms = 2 * check_delay_ms
        self._clock = clock

    async def record_heartbeat(self, connection_id: str) -> int:
        """Store the heartbeat, keep role presence alive and schedule the recheck.

        Returns:
            The observed timestamp carried by the recheck.
        """
        observed = self._clock()
        await self._store.set(heartbeat_key(connection_id), str(observed), ttl_ms=self._record_ttl_ms)
        await self._store.set(
            client_status_key(connection_id), PresenceStatus.ONLINE.value, ttl_ms=self._record_ttl_ms
        )
        await self._presence.refresh(connection_id, ttl_ms=self._record_ttl_ms)
        await self._queue.schedule(
            RECHECK_JOB,
            {"connectionId": connection_id, "observedTimestamp": observed},
            self._check_delay_ms,
        )
        logger.debug("[Liveness] Heartbeat from %s at %s", connection_id, observed)
        return observed

    async def handle_deferred_recheck(self, connection_id: str, observed_ms: int) -> bool:
        """Decide whether ``connection_id`` went silent after ``observed_ms``.

        Returns:
            True if the connection was declared timed out.
        """
        raw = await self._store.get(heartbeat_key(connection_id))
        now = self._clock()

        if raw is not None:
            last_seen = int(raw)
            if last_seen > observed_ms:
                logger.debug("[Liveness] Stale recheck for %s (%s > %s)", connection_id, last_seen, observed_ms)
                return False
            if now - observed_ms <= self._interval_ms:
                return False

        logger.info("[Liveness] %s timed out (last heartbeat %s, now %s)", connection_id, raw, now)
        await self._store.set(
            client_status_key(connection_id), PresenceStatus.OFFLINE.value, ttl_ms=self._record_ttl_ms
        )
        await self._presence.mark_offline(connection_id)
        return True

    async def handle_job(self, payload: dict) -> None:
        await self.handle_deferred_recheck(
            str(payload["connectionId"]), int(payload["observedTimestamp"])
        )

    async def get_client_status(self, connection_id: str) -> Optional[PresenceStatus]:
        raw = await self._store.get(client_status_key(connection_id))
        return PresenceStatus(raw) if raw else None
