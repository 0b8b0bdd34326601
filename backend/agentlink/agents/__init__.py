"""Agent messaging: identities, presence, relay, liveness and history."""
from .schemas import Role
from .service import AgentHub, get_hub, set_hub

__all__ = ["AgentHub", "Role", "get_hub", "set_hub"]
