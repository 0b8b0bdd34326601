"""In-process delayed-delivery queue driven by an injectable clock."""
import heapq
import itertools
from typing import Any, Dict, List, Tuple

from ..clock import Clock, now_ms
from .base import DelayedJob, DelayQueue


class InMemoryDelayQueue(DelayQueue):
    """DelayQueue kept in a heap ordered by due time.

    Args:
        clock: Millisecond clock (default: wall clock). Tests pass a fake
            clock and advance it to make jobs due.
    """

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._heap: List[Tuple[int, int, DelayedJob]] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def pending(self) -> List[DelayedJob]:
        """Jobs not yet claimed, in due order."""
        return [job for _, _, job in sorted(self._heap)]

    async def schedule(self, kind: str, payload: Dict[str, Any], delay_ms: int) -> DelayedJob:
        job = DelayedJob(kind=kind, payload=payload, dueAt=self._clock() + delay_ms)
        heapq.heappush(self._heap, (job.dueAt, next(self._seq), job))
        return job

    async def claim_due(self, limit: int) -> List[DelayedJob]:
        now = self._clock()
        claimed = []
        while self._heap and self._heap[0][0] <= now and len(claimed) < limit:
            claimed.append(heapq.heappop(self._heap)[2])
        return claimed

    async def requeue(self, job: DelayedJob) -> None:
        retry = job.model_copy(update={"attempts": job.attempts + 1, "dueAt": self._clock()})
        heapq.heappush(self._heap, (retry.dueAt, next(self._seq), retry))
