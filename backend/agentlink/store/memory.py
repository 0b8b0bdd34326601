"""In-memory StateStore for single-process deployments and tests.

Each coroutine body runs without awaiting, so on a single event loop every
operation is already atomic. Expiry is evaluated lazily against the injected
clock on read.
"""
import bisect
from typing import Dict, List, Optional, Tuple

from ..clock import Clock, now_ms
from .base import AssignOutcome, AssignResult, StateStore


class InMemoryStateStore(StateStore):
    """StateStore backed by process-local dicts.

    Args:
        clock: Millisecond clock used for expiry (default: wall clock).
    """

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        # key -> (value, expires_at_ms or None)
        self._values: Dict[str, Tuple[str, Optional[int]]] = {}
        # key -> sorted list of (score, member); ties order by member like a Redis zset
        self._collections: Dict[str, List[Tuple[float, str]]] = {}
        self._collection_expiry: Dict[str, int] = {}

    def _expired(self, expires_at: Optional[int]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def _read(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._values[key]
            return None
        return value

    def _collection(self, key: str) -> List[Tuple[float, str]]:
        if self._expired(self._collection_expiry.get(key)):
            self._collections.pop(key, None)
            self._collection_expiry.pop(key, None)
        return self._collections.setdefault(key, [])

    async def get(self, key: str) -> Optional[str]:
        return self._read(key)

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_ms if ttl_ms else None
        self._values[key] = (value, expires_at)

    async def compare_and_assign(
        self,
        key: str,
        value: str,
        *,
        meta_key: Optional[str] = None,
        meta: Optional[str] = None,
    ) -> AssignResult:
        previous = self._read(key)
        self._values[key] = (value, None)
        if meta_key is not None:
            self._values[meta_key] = (meta or "", None)

        if previous is None:
            return AssignResult(outcome=AssignOutcome.CREATED, current=value)
        if previous == value:
            return AssignResult(outcome=AssignOutcome.UNCHANGED, current=value)
        return AssignResult(outcome=AssignOutcome.REPLACED, current=value, previous=previous)

    async def append_capped(
        self,
        key: str,
        member: str,
        score: float,
        capacity: int,
        ttl_ms: Optional[int] = None,
    ) -> int:
        items = self._collection(key)
        for index, (_, existing) in enumerate(items):
            if existing == member:
                del items[index]
                break
        bisect.insort(items, (score, member))
        overflow = len(items) - capacity
        if overflow > 0:
            del items[:overflow]
        if ttl_ms:
            self._collection_expiry[key] = self._clock() + ttl_ms
        return len(items)

    async def read_recent(self, key: str, offset: int, limit: int) -> List[str]:
        if limit <= 0:
            return []
        items = self._collection(key)
        newest_first = [member for _, member in reversed(items)]
        return newest_first[offset:offset + limit]
