"""Data models for agent roles, relayed messages and wire payloads.

Field names of the payload models are the JSON keys exchanged with clients
and carried on the bus, so serializing a model with ``model_dump_json()``
yields the wire format directly.
"""
import itertools
import uuid
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..clock import now_ms


# =============================================================================
# Roles and statuses
# =============================================================================


class Role(str, Enum):
    """Logical seat a connection can claim.

    Attributes:
        A: Agent A.
        B: Agent B.
    """
    A = "a"
    B = "b"

    @property
    def display_name(self) -> str:
        return f"Agent {self.value.upper()}"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role from a case-insensitive string such as ``"A"`` or ``"b"``.

        Raises:
            ValueError: If the value does not name a role.
        """
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValueError(f"Unknown agent type: {value!r}") from None


class PresenceStatus(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class MessageKind(str, Enum):
    BROADCAST = "broadcast"
    TARGETED = "targeted"


# =============================================================================
# Shared state records
# =============================================================================


class RoleBinding(BaseModel):
    """The identity currently bound to a role.

    Attributes:
        role: The bound role.
        identity: Opaque identity of the owning connection.
        assignedAt: Unix time in milliseconds of the assignment.
    """
    role: Role
    identity: str
    assignedAt: int


# =============================================================================
# Wire payloads
# =============================================================================


class BroadcastPayload(BaseModel):
    """Broadcast message as published on the bus."""
    content: str


class TargetedPayload(BaseModel):
    """Targeted (private) message as published on the bus."""
    type: Literal["private"] = "private"
    recipientId: str
    senderId: str
    senderName: str
    content: str
    timestamp: int


class PresencePayload(BaseModel):
    """Presence Changed event."""
    agentType: Role
    agentName: str
    status: PresenceStatus
    timestamp: int = Field(default_factory=now_ms)


class ReassignPayload(BaseModel):
    """Role Reassigned event; tells the holder of ``oldId`` to disconnect."""
    agentType: Role
    oldId: str
    newId: str
    agentName: str
    timestamp: int = Field(default_factory=now_ms)


# =============================================================================
# Relay and history
# =============================================================================


class RelayMessage(BaseModel):
    """A message handed to the relay. Never stored, only published.

    Attributes:
        kind: Broadcast or targeted.
        senderId: Identity of the sender.
        senderDisplayName: Sender's display name (targeted only).
        recipientId: Identity of the recipient (targeted only).
        content: Message text, relayed unchanged.
        timestamp: Unix time in milliseconds.
    """
    model_config = ConfigDict(frozen=True)

    kind: MessageKind
    senderId: str
    senderDisplayName: Optional[str] = None
    recipientId: Optional[str] = None
    content: str
    timestamp: int = Field(default_factory=now_ms)

    def to_payload(self) -> BaseModel:
        """Project onto the wire payload for this message's kind."""
        if self.kind == MessageKind.BROADCAST:
            return BroadcastPayload(content=self.content)
        return TargetedPayload(
            recipientId=self.recipientId or "",
            senderId=self.senderId,
            senderName=self.senderDisplayName or self.senderId,
            content=self.content,
            timestamp=self.timestamp,
        )


_entry_seq = itertools.count()


def new_entry_id() -> str:
    """Time-ordered entry ID: wall-clock ms, process sequence, random suffix."""
    return f"{now_ms():013d}-{next(_entry_seq):08d}-{uuid.uuid4().hex[:8]}"


class ChatLogEntry(BaseModel):
    """Persisted projection of a RelayMessage.

    Attributes:
        id: Unique entry ID that sorts in creation order. It is the first
            serialized field, so entries sharing a timestamp read back in
            the order this process wrote them.
        type: ``public`` for broadcast, ``private`` for targeted.
        senderId: Identity of the sender.
        senderName: Sender display name (falls back to the sender ID).
        content: Message text.
        timestamp: Unix time in milliseconds; orders the log.
        recipientId: Recipient identity for private entries.
    """
    id: str = Field(default_factory=new_entry_id)
    type: Literal["public", "private"]
    senderId: str
    senderName: str
    content: str
    timestamp: int
    recipientId: Optional[str] = None

    @classmethod
    def from_relay(cls, message: RelayMessage) -> "ChatLogEntry":
        is_broadcast = message.kind == MessageKind.BROADCAST
        return cls(
            type="public" if is_broadcast else "private",
            senderId=message.senderId,
            senderName=message.senderDisplayName or message.senderId,
            content=message.content,
            timestamp=message.timestamp,
            recipientId=None if is_broadcast else message.recipientId,
        )
