"""Error taxonomy for the agent link core.

Backends translate their native failures (``redis.exceptions.RedisError``,
``asyncio.TimeoutError``) into these types so the service layer can decide
which failures are fatal and which are logged and dropped.
"""


class AgentLinkError(Exception):
    """Base exception for agent link errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class StoreUnavailable(AgentLinkError):
    """Raised when the shared state store cannot be reached."""
    def __init__(self, message: str = "Shared state store is unavailable"):
        super().__init__(message, status_code=503)


class SerializationError(AgentLinkError):
    """Raised when a bus or store payload cannot be decoded."""
    def __init__(self, message: str, payload: str = ""):
        self.payload = payload
        super().__init__(f"Malformed payload: {message}", status_code=400)


class DeliveryFailure(AgentLinkError):
    """Raised when a bus publish or subscribe does not complete in time."""
    def __init__(self, message: str, channel: str = ""):
        self.channel = channel
        super().__init__(f"Delivery to {channel or 'bus'} failed: {message}", status_code=503)
