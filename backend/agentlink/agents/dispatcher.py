"""Consumer loop for the delayed-delivery queue.

Due jobs are claimed in batches and routed to the handler registered for
their kind. A failing job is requeued once; a second failure discards it so
a poisoned job can never loop forever.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict

from ..delay import DelayedJob, DelayQueue
from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict], Awaitable[None]]

MAX_ATTEMPTS = 2


class DeferredDispatcher:
    def __init__(self, queue: DelayQueue, poll_interval_ms: int = 100, batch_size: int = 100) -> None:
        self._queue = queue
        self._poll_interval = poll_interval_ms / 1000
        self._batch_size = batch_size
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    async def run_once(self) -> int:
        """Claim and handle every job that is due now.

        Returns:
            Number of jobs that completed successfully.
        """
        jobs = await self._queue.claim_due(self._batch_size)
        handled = 0
        for job in jobs:
            if await self._handle(job):
                handled += 1
        return handled

    async def _handle(self, job: DelayedJob) -> bool:
        handler = self._handlers.get(job.kind)
        if handler is None:
            logger.error("[Dispatcher] No handler for job kind %s; discarding %s", job.kind, job.id)
            return False

        try:
            await handler(job.payload)
            return True
        except Exception as exc:
            if job.attempts + 1 < MAX_ATTEMPTS:
                logger.warning("[Dispatcher] Job %s (%s) failed, retrying once: %s", job.id, job.kind, exc)
                try:
                    await self._queue.requeue(job)
                except StoreUnavailable as requeue_exc:
                    logger.error("[Dispatcher] Could not requeue job %s, dropping it: %s", job.id, requeue_exc)
            else:
                logger.error("[Dispatcher] Job %s (%s) failed again, discarding: %s", job.id, job.kind, exc)
            return False

    async def run(self) -> None:
        """Poll the queue until cancelled."""
        logger.info("[Dispatcher] Started (poll every %sms)", int(self._poll_interval * 1000))
        while True:
            try:
                await self.run_once()
            except StoreUnavailable as exc:
                logger.warning("[Dispatcher] Queue unavailable: %s", exc)
            except Exception:
                logger.exception("[Dispatcher] Poll failed")
            await asyncio.sleep(self._poll_interval)
