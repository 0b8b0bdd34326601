"""Capped, ordered chat history per scope.

Scopes are ``public`` for broadcast messages and ``private:{identity}`` for
targeted ones. Each scope is one ordered collection in the store, scored by
message timestamp, trimmed to ``capacity`` on every append.
"""
import logging
from typing import List

from ..errors import StoreUnavailable
from ..store import StateStore
from .schemas import ChatLogEntry

logger = logging.getLogger(__name__)

PUBLIC_SCOPE = "public"

_DAY_MS = 24 * 60 * 60 * 1000


def private_scope(identity: str) -> str:
    return f"private:{identity}"


def history_key(scope: str) -> str:
    return f"chat:messages:{scope}"


class HistoryLog:
    """Append and page through capped per-scope logs.

    Args:
        store: Shared state store.
        capacity: Entries kept per scope.
        retention_days: Expiry of an idle scope, refreshed on every append.
        default_page_size: Page size used when the requested limit is < 1.
        max_page_size: Upper bound on a page.
    """

    def __init__(
        self,
        store: StateStore,
        capacity: int = 1000,
        retention_days: int = 30,
        default_page_size: int = 50,
        max_page_size: int = 100,
    ) -> None:
        self._store = store
        self._capacity = capacity
        self._retention_ms = retention_days * _DAY_MS
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def clamp(self, limit: int, offset: int):
        """Normalise paging arguments to ``(limit, offset)``."""
        if limit > self._max_page_size:
            limit = self._max_page_size
        elif limit < 1:
            limit = self._default_page_size
        return limit, max(offset, 0)

    async def append(self, scope: str, entry: ChatLogEntry) -> bool:
        """Insert ``entry`` and trim the scope. Store failures are logged, not raised."""
        try:
            await self._store.append_capped(
                history_key(scope),
                entry.model_dump_json(),
                entry.timestamp,
                self._capacity,
                ttl_ms=self._retention_ms,
            )
        except StoreUnavailable as exc:
            logger.error("[History] Append to %s dropped: %s", scope, exc)
            return False
        return True

    async def read(self, scope: str, limit: int, offset: int = 0) -> List[ChatLogEntry]:
        """Most-recent-first page of ``scope``.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        limit, offset = self.clamp(limit, offset)
        raw_entries = await self._store.read_recent(history_key(scope), offset, limit)

        entries = []
        for raw in raw_entries:
            try:
                entries.append(ChatLogEntry.model_validate_json(raw))
            except ValueError as exc:
                logger.error("[History] Skipping unreadable entry in %s: %s", scope, exc)
        return entries
