"""Abstract StateStore interface.

Every shared-state backend (Redis, in-memory) implements this interface so
the registry, presence, liveness and history components stay
backend-agnostic. Business logic never sees the backend's native commands or
scripting language.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class AssignOutcome(str, Enum):
    """Result of an atomic compare-and-assign.

    Attributes:
        CREATED: No prior value existed.
        UNCHANGED: The new value equals the prior value (idempotent retry).
        REPLACED: A different prior value was overwritten.
    """
    CREATED = "created"
    UNCHANGED = "unchanged"
    REPLACED = "replaced"


@dataclass(frozen=True)
class AssignResult:
    """Outcome of ``StateStore.compare_and_assign``."""

    outcome: AssignOutcome
    current: str
    previous: Optional[str] = None


class StateStore(ABC):
    """Cluster-visible key-value store.

    All methods raise ``StoreUnavailable`` when the backend cannot be reached.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value stored at ``key``, or None if absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        """Store ``value`` at ``key``, expiring after ``ttl_ms`` when given."""

    @abstractmethod
    async def compare_and_assign(
        self,
        key: str,
        value: str,
        *,
        meta_key: Optional[str] = None,
        meta: Optional[str] = None,
    ) -> AssignResult:
        """Overwrite ``key`` with ``value`` and report what it replaced.

        The read of the prior value, the write and the optional write of
        ``meta`` to ``meta_key`` happen as one indivisible step.
        """

    @abstractmethod
    async def append_capped(
        self,
        key: str,
        member: str,
        score: float,
        capacity: int,
        ttl_ms: Optional[int] = None,
    ) -> int:
        """Insert ``member`` into the ordered collection at ``key`` and trim it.

        Insert and trim execute atomically; the lowest-scored members beyond
        ``capacity`` are evicted.

        Returns:
            The collection size after trimming.
        """

    @abstractmethod
    async def read_recent(self, key: str, offset: int, limit: int) -> List[str]:
        """Return up to ``limit`` members, highest score first, skipping ``offset``."""

    async def close(self) -> None:
        """Release backend connections."""
