"""agentlink: two-role agent messaging core for a cluster of stateless nodes."""

__version__ = "0.1.0"
