"""Identity registry: which connection currently owns each role.

Every connection gets a fresh identity which is installed as the role's
binding through the store's atomic compare-and-assign. When a different
identity was bound before, a reassignment event is published so the node
holding the superseded connection can close it.
"""
import logging
import uuid
from typing import Callable, Optional

from ..bus import MessageBus
from ..clock import Clock, now_ms
from ..errors import DeliveryFailure
from ..store import AssignOutcome, StateStore
from .schemas import ReassignPayload, Role, RoleBinding

logger = logging.getLogger(__name__)


def identity_key(role: Role) -> str:
    return f"agent:{role.value}:id"


def binding_key(role: Role) -> str:
    return f"agent:{role.value}:id:info"


def new_identity() -> str:
    return uuid.uuid4().hex


class IdentityRegistry:
    """Assigns and looks up role identities in the shared store.

    Args:
        store: Shared state store.
        bus: Bus used to announce reassignments.
        reassign_channel: Channel for reassignment events.
        clock: Millisecond clock for ``assignedAt`` and event timestamps.
        id_factory: Identity generator (uuid4 hex by default).
    """

    def __init__(
        self,
        store: StateStore,
        bus: MessageBus,
        reassign_channel: str = "reassign-channel",
        clock: Clock = now_ms,
        id_factory: Callable[[], str] = new_identity,
    ) -> None:
        self._store = store
        self._bus = bus
        self._reassign_channel = reassign_channel
        self._clock = clock
        self._id_factory = id_factory

    async def assign_identity(self, role: Role) -> str:
        """Bind a brand-new identity to ``role`` and return it.

        Raises:
            StoreUnavailable: If the store cannot be reached. The caller must
                refuse the connection; there is no local fallback identity.
        """
        identity = self._id_factory()
        binding = RoleBinding(role=role, identity=identity, assignedAt=self._clock())
        result = await self._store.compare_and_assign(
            identity_key(role),
            identity,
            meta_key=binding_key(role),
            meta=binding.model_dump_json(),
        )
        logger.info("[Registry] %s -> %s (%s)", role.display_name, identity, result.outcome.value)

        if result.outcome == AssignOutcome.REPLACED and result.previous is not None:
            await self._announce_reassignment(role, result.previous, identity)
        return identity

    async def _announce_reassignment(self, role: Role, old_id: str, new_id: str) -> None:
        event = ReassignPayload(
            agentType=role,
            oldId=old_id,
            newId=new_id,
            agentName=role.display_name,
            timestamp=self._clock(),
        )
        try:
            await self._bus.publish(self._reassign_channel, event.model_dump_json())
        except DeliveryFailure as exc:
            logger.error("[Registry] Reassignment of %s not announced: %s", role.display_name, exc)
            return
        logger.info("[Registry] %s reassigned from %s to %s", role.display_name, old_id, new_id)

    async def current_identity(self, role: Role) -> Optional[str]:
        return await self._store.get(identity_key(role))

    async def get_binding(self, role: Role) -> Optional[RoleBinding]:
        raw = await self._store.get(binding_key(role))
        if not raw:
            return None
        try:
            return RoleBinding.model_validate_json(raw)
        except ValueError as exc:
            logger.error("[Registry] Unreadable binding for %s: %s", role.display_name, exc)
            return None

    async def resolve_role(self, identity: str) -> Optional[Role]:
        """Return the role currently bound to ``identity``, if any."""
        if not identity:
            return None
        for role in Role:
            if await self.current_identity(role) == identity:
                return role
        return None

    async def is_valid(self, role: Role, identity: str) -> bool:
        """True if ``identity`` is the live identity of ``role``."""
        return bool(identity) and await self.current_identity(role) == identity
