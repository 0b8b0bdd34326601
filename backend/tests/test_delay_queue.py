"""Tests for the delayed-delivery queue backends."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentlink.delay import DelayedJob, RedisDelayQueue
from agentlink.errors import SerializationError


class TestInMemoryQueue:
    @pytest.mark.asyncio
    async def test_job_not_due_before_delay(self, queue, clock):
        await queue.schedule("heartbeat-recheck", {"connectionId": "c1"}, 60_000)
        clock.advance(59_999)
        assert await queue.claim_due(10) == []
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_claim_removes_due_job(self, queue, clock):
        job = await queue.schedule("heartbeat-recheck", {"connectionId": "c1"}, 60_000)
        clock.advance(60_000)
        claimed = await queue.claim_due(10)
        assert [j.id for j in claimed] == [job.id]
        assert claimed[0].payload == {"connectionId": "c1"}
        assert await queue.claim_due(10) == []

    @pytest.mark.asyncio
    async def test_claim_oldest_first_and_limit(self, queue, clock):
        late = await queue.schedule("k", {"n": 2}, 200)
        early = await queue.schedule("k", {"n": 1}, 100)
        clock.advance(1000)
        first = await queue.claim_due(1)
        assert [j.id for j in first] == [early.id]
        assert [j.id for j in await queue.claim_due(10)] == [late.id]

    @pytest.mark.asyncio
    async def test_requeue_counts_attempt(self, queue, clock):
        await queue.schedule("k", {}, 0)
        job = (await queue.claim_due(1))[0]
        await queue.requeue(job)
        retried = (await queue.claim_due(1))[0]
        assert retried.id == job.id
        assert retried.attempts == 1


class TestDelayedJob:
    def test_json_round_trip(self):
        job = DelayedJob(kind="presence-online", payload={"identity": "abc"}, dueAt=5)
        assert DelayedJob.from_json(job.to_json()) == job

    def test_unreadable_json(self):
        with pytest.raises(SerializationError):
            DelayedJob.from_json("{not json")


class TestRedisQueue:
    @pytest.mark.asyncio
    async def test_schedule_scores_by_due_time(self, clock):
        client = MagicMock()
        client.zadd = AsyncMock(return_value=1)
        queue = RedisDelayQueue(client, queue_key="delay:jobs", clock=clock)

        job = await queue.schedule("heartbeat-recheck", {"connectionId": "c1"}, 60_000)

        assert job.dueAt == clock.now + 60_000
        client.zadd.assert_awaited_once_with("delay:jobs", {job.to_json(): job.dueAt})

    @pytest.mark.asyncio
    async def test_claim_drops_unreadable_jobs(self, clock):
        good = DelayedJob(kind="k", payload={}, dueAt=clock.now)
        claim_script = AsyncMock(return_value=[good.to_json(), "garbage"])
        client = MagicMock()
        client.register_script.return_value = claim_script
        queue = RedisDelayQueue(client, clock=clock)

        claimed = await queue.claim_due(50)

        assert claimed == [good]
        claim_script.assert_awaited_once_with(keys=["delay:jobs"], args=[clock.now, 50])
