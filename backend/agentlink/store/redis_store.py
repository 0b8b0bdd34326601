"""Redis-backed StateStore.

Atomic operations are Lua scripts registered once per client; Redis runs a
script without interleaving other commands, which gives the single
indivisible check-and-set the identity registry and the history log rely on.

Key layout is owned by the callers; this module only knows about values,
ordered collections and the two scripts below.
"""
import asyncio
import logging
from typing import Any, Awaitable, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..errors import StoreUnavailable
from .base import AssignOutcome, AssignResult, StateStore

logger = logging.getLogger(__name__)

# KEYS[1] = value key, KEYS[2] = optional metadata key
# ARGV[1] = new value, ARGV[2] = metadata
# Returns {status, current[, previous]}
_ASSIGN_SCRIPT = """
local previous = redis.call('GET', KEYS[1])
redis.call('SET', KEYS[1], ARGV[1])
if KEYS[2] then
  redis.call('SET', KEYS[2], ARGV[2])
end
if not previous then
  return {'created', ARGV[1]}
end
if previous == ARGV[1] then
  return {'unchanged', ARGV[1]}
end
return {'replaced', ARGV[1], previous}
"""

# KEYS[1] = sorted set
# ARGV[1] = member, ARGV[2] = score, ARGV[3] = capacity, ARGV[4] = ttl ms (0 = none)
# Returns the size after trimming
_APPEND_CAPPED_SCRIPT = """
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
local size = redis.call('ZCARD', KEYS[1])
local capacity = tonumber(ARGV[3])
if size > capacity then
  redis.call('ZREMRANGEBYRANK', KEYS[1], 0, size - capacity - 1)
  size = capacity
end
local ttl = tonumber(ARGV[4])
if ttl > 0 then
  redis.call('PEXPIRE', KEYS[1], ttl)
end
return size
"""


def create_client(url: str, timeout_seconds: float, blocking_reads: bool = False) -> aioredis.Redis:
    """Create an async Redis client with bounded socket timeouts.

    A pub/sub client waits on its socket indefinitely between messages, so
    with ``blocking_reads`` only the connect is bounded.
    """
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=None if blocking_reads else timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )


class RedisStateStore(StateStore):
    """StateStore on top of a ``redis.asyncio`` client.

    Args:
        client: Async Redis client created with ``decode_responses=True``.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client
        self._assign_script = client.register_script(_ASSIGN_SCRIPT)
        self._append_script = client.register_script(_APPEND_CAPPED_SCRIPT)

    async def _run(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            logger.error("[Store] Redis %s failed: %s", op, exc)
            raise StoreUnavailable(f"Redis {op} failed: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("GET", self._redis.get(key))

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        await self._run("SET", self._redis.set(key, value, px=ttl_ms))

    async def compare_and_assign(
        self,
        key: str,
        value: str,
        *,
        meta_key: Optional[str] = None,
        meta: Optional[str] = None,
    ) -> AssignResult:
        keys = [key] if meta_key is None else [key, meta_key]
        result = await self._run(
            "assign script",
            self._assign_script(keys=keys, args=[value, meta or ""]),
        )
        if not result:
            raise StoreUnavailable(f"Assign script returned no result for {key}")

        outcome = AssignOutcome(str(result[0]).strip())
        previous = str(result[2]) if len(result) > 2 else None
        return AssignResult(outcome=outcome, current=str(result[1]), previous=previous)

    async def append_capped(
        self,
        key: str,
        member: str,
        score: float,
        capacity: int,
        ttl_ms: Optional[int] = None,
    ) -> int:
        size = await self._run(
            "append script",
            self._append_script(keys=[key], args=[member, score, capacity, ttl_ms or 0]),
        )
        return int(size)

    async def read_recent(self, key: str, offset: int, limit: int) -> List[str]:
        if limit <= 0:
            return []
        return await self._run(
            "ZREVRANGE", self._redis.zrevrange(key, offset, offset + limit - 1)
        )

    async def close(self) -> None:
        await self._redis.aclose()
