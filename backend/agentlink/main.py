"""agentlink node application.

This is the main entry point for one agentlink node. Any number of nodes can
run behind a load balancer as long as they share one Redis instance and the
same channel names.

Modules:
    - agents: WebSocket agent connections, presence, relay, liveness, history
    - store: shared state store backends (Redis, in-memory)
    - bus: publish/subscribe backends (Redis, in-memory)
    - delay: delayed-delivery queue backends (Redis, in-memory)
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agentlink import __version__
from agentlink.agents.router import router as agents_router
from agentlink.agents.service import AgentHub, get_hub, set_hub
from agentlink.config import get_config
from agentlink.errors import AgentLinkError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in ("redis", "asyncio", "httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in agentlink.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Tests may install a hub wired to in-memory backends before startup.
    hub = get_hub()
    if hub is None:
        hub = AgentHub.from_config(config)
        set_hub(hub)
    await hub.start()

    yield  # Application runs here

    # Shutdown
    await hub.stop()
    set_hub(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="agentlink API",
    description="Two-role agent messaging over WebSocket for a cluster of stateless nodes",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(agents_router)


@app.exception_handler(AgentLinkError)
async def agentlink_error_handler(request: Request, exc: AgentLinkError) -> JSONResponse:
    logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Start a node with uvicorn using the configured host and port."""
    config = get_config()
    uvicorn.run(
        "agentlink.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )


if __name__ == "__main__":
    run()
