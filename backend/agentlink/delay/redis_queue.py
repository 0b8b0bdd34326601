"""Redis sorted-set delayed-delivery queue.

Jobs are members of one sorted set scored by due time. A Lua script pops
every member whose score is in the past, so two nodes polling the same queue
never receive the same job.
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, List

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..clock import Clock, now_ms
from ..errors import SerializationError, StoreUnavailable
from .base import DelayedJob, DelayQueue

logger = logging.getLogger(__name__)

# KEYS[1] = queue; ARGV[1] = now ms; ARGV[2] = max jobs
_CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
if #due > 0 then
  redis.call('ZREM', KEYS[1], unpack(due))
end
return due
"""


class RedisDelayQueue(DelayQueue):
    """DelayQueue stored in a Redis sorted set.

    Args:
        client: Async Redis client created with ``decode_responses=True``.
        queue_key: Sorted set holding pending jobs.
        clock: Millisecond clock (default: wall clock).
    """

    def __init__(
        self,
        client: aioredis.Redis,
        queue_key: str = "delay:jobs",
        clock: Clock = now_ms,
    ) -> None:
        self._redis = client
        self._key = queue_key
        self._clock = clock
        self._claim_script = client.register_script(_CLAIM_SCRIPT)

    async def _run(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            logger.error("[DelayQueue] Redis %s failed: %s", op, exc)
            raise StoreUnavailable(f"Redis {op} failed: {exc}") from exc

    async def schedule(self, kind: str, payload: Dict[str, Any], delay_ms: int) -> DelayedJob:
        job = DelayedJob(kind=kind, payload=payload, dueAt=self._clock() + delay_ms)
        await self._run("ZADD", self._redis.zadd(self._key, {job.to_json(): job.dueAt}))
        logger.debug("[DelayQueue] Scheduled %s job %s due at %s", kind, job.id, job.dueAt)
        return job

    async def claim_due(self, limit: int) -> List[DelayedJob]:
        raw_jobs = await self._run(
            "claim script",
            self._claim_script(keys=[self._key], args=[self._clock(), limit]),
        )
        jobs = []
        for raw in raw_jobs or []:
            try:
                jobs.append(DelayedJob.from_json(raw))
            except SerializationError as exc:
                logger.error("[DelayQueue] Dropping unreadable job: %s", exc)
        return jobs

    async def requeue(self, job: DelayedJob) -> None:
        retry = job.model_copy(update={"attempts": job.attempts + 1, "dueAt": self._clock()})
        await self._run("ZADD", self._redis.zadd(self._key, {retry.to_json(): retry.dueAt}))
