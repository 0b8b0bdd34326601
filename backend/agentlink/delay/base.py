"""Abstract delayed-delivery queue.

A job becomes visible to ``claim_due`` only once its due time has passed.
Claiming removes the job, so each job is handed to exactly one consumer
across the cluster; a consumer that fails may ``requeue`` it once.
"""
import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from pydantic import BaseModel, Field, ValidationError

from ..errors import SerializationError


class DelayedJob(BaseModel):
    """A unit of deferred work.

    Attributes:
        id: Unique job ID (keeps identical payloads distinct in the queue).
        kind: Handler name, e.g. ``heartbeat-recheck``.
        payload: Handler arguments.
        dueAt: Unix time in milliseconds when the job becomes deliverable.
        attempts: Number of failed deliveries so far.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    dueAt: int
    attempts: int = 0

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "DelayedJob":
        try:
            return cls.model_validate_json(raw)
        except (ValidationError, json.JSONDecodeError, ValueError) as exc:
            raise SerializationError(str(exc), payload=raw) from exc


class DelayQueue(ABC):
    """Cluster-wide delayed-delivery queue."""

    @abstractmethod
    async def schedule(self, kind: str, payload: Dict[str, Any], delay_ms: int) -> DelayedJob:
        """Enqueue a job that becomes due ``delay_ms`` from now."""

    @abstractmethod
    async def claim_due(self, limit: int) -> List[DelayedJob]:
        """Atomically remove and return up to ``limit`` due jobs, oldest first."""

    @abstractmethod
    async def requeue(self, job: DelayedJob) -> None:
        """Make a claimed job due again immediately, counting one more attempt."""

    async def close(self) -> None:
        """Release queue resources."""
