"""Agent router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/agent/{role}: agent connection for role ``a`` or ``b``
    - GET /api/agent/{role}: current identity of a role
    - GET /api/agent/{role}/status: identity and presence of a role
    - GET /api/agent/{role}/check/{identity}: whether an identity is still live
    - GET /api/chat/public: broadcast history
    - GET /api/chat/private: targeted history of one identity
    - GET /api/client/{connection_id}/status: heartbeat status of a connection
    - POST /api/notify: server broadcast to every agent
    - POST /api/notify/private: server message to one identity

Protocol Message Types (client -> server):
    - broadcast: {"type": "broadcast", "content"}
    - private: {"type": "private", "recipientId", "content"}
    - heartbeat: {"type": "heartbeat"}

Server -> client frames: connected, broadcast, private, presence, reassign,
heartbeat_ack, error.
"""
import json
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import StoreUnavailable
from .history import PUBLIC_SCOPE, private_scope
from .schemas import Role
from .service import AgentHub, get_hub

logger = logging.getLogger(__name__)

router = APIRouter()

# 1013 = Try Again Later
STORE_UNAVAILABLE_CLOSE_CODE = 1013


class NotifyRequest(BaseModel):
    """Request body for a server broadcast."""
    content: str = Field(..., min_length=1)


class PrivateNotifyRequest(BaseModel):
    """Request body for a server message to one identity."""
    recipientId: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


def _hub() -> AgentHub:
    hub = get_hub()
    if hub is None:
        raise HTTPException(status_code=503, detail="Agent hub is not running")
    return hub


def _role(value: str) -> Role:
    try:
        return Role.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/api/agent/{role}")
async def get_agent_identity(role: str) -> JSONResponse:
    agent_role = _role(role)
    identity = await _hub().registry.current_identity(agent_role)
    return JSONResponse({
        "agentType": agent_role.value,
        "agentName": agent_role.display_name,
        "identity": identity,
    })


@router.get("/api/agent/{role}/status")
async def get_agent_status(role: str) -> JSONResponse:
    """Identity currently bound to the role and its presence.

    Status reads OFFLINE once the presence record has expired.
    """
    return JSONResponse(await _hub().get_role_status(_role(role)))


@router.get("/api/agent/{role}/check/{identity}")
async def check_agent_identity(role: str, identity: str) -> JSONResponse:
    """Tell a client whether its identity still owns the role.

    A client that reconnected elsewhere, or was superseded, gets
    ``valid: false`` and should stop using the identity.
    """
    agent_role = _role(role)
    valid = await _hub().check_identity_validity(agent_role, identity)
    return JSONResponse({"agentType": agent_role.value, "identity": identity, "valid": valid})


@router.get("/api/chat/public")
async def get_public_history(
    limit: int = Query(50, description="Page size (clamped to 1-100)"),
    offset: int = Query(0, description="Entries to skip from the most recent"),
) -> JSONResponse:
    """Broadcast history, most recent first.

    Example:
        GET /api/chat/public?limit=20&offset=40
    """
    entries = await _hub().get_history(PUBLIC_SCOPE, limit, offset)
    return JSONResponse({"messages": [entry.model_dump() for entry in entries]})


@router.get("/api/chat/private")
async def get_private_history(
    userId: str = Query(..., min_length=1, description="Identity whose private history to read"),
    limit: int = Query(50, description="Page size (clamped to 1-100)"),
    offset: int = Query(0, description="Entries to skip from the most recent"),
) -> JSONResponse:
    entries = await _hub().get_history(private_scope(userId), limit, offset)
    return JSONResponse({"messages": [entry.model_dump() for entry in entries]})


@router.get("/api/client/{connection_id}/status")
async def get_client_status(connection_id: str) -> JSONResponse:
    return JSONResponse(await _hub().get_client_status(connection_id))


@router.post("/api/notify")
async def notify_all(request: NotifyRequest) -> JSONResponse:
    """Push a system message to every connected agent on every node.

    The message is relayed as a broadcast and kept in public history with
    sender ``system``.
    """
    message = await _hub().notify_broadcast(request.content)
    logger.info("[API] System broadcast sent")
    return JSONResponse(message.model_dump(mode="json"))


@router.post("/api/notify/private")
async def notify_one(request: PrivateNotifyRequest) -> JSONResponse:
    message = await _hub().notify_private(request.recipientId, request.content)
    logger.info("[API] System message sent to %s", request.recipientId)
    return JSONResponse(message.model_dump(mode="json"))


@router.websocket("/ws/agent/{role}")
async def websocket_agent_endpoint(websocket: WebSocket, role: str) -> None:
    """WebSocket endpoint for one agent connection.

    Protocol Flow:
        1. Client connects to /ws/agent/a or /ws/agent/b
           → Server assigns a fresh identity for the role
           → Server sends: {type: "connected", agentId, agentType, agentName}
        2. Client sends: {type: "broadcast" | "private" | "heartbeat", ...}
           → broadcast/private are relayed through the bus to every node
           → heartbeat is answered with {type: "heartbeat_ack", timestamp}
        3. Another connection claims the same role
           → Server sends: {type: "reassign", oldId, newId, ...} and closes
             this socket with code 4001
        4. On disconnect → presence for the role flips to OFFLINE

    Connections are refused before accept with 1008 for an unknown role and
    1013 when the shared store cannot be reached.
    """
    try:
        agent_role = Role.parse(role)
    except ValueError:
        logger.warning("[WS] Rejecting connection for unknown role %r", role)
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    hub = get_hub()
    if hub is None:
        logger.error("[WS] Agent hub not running; rejecting %s", agent_role.display_name)
        await websocket.close(code=STORE_UNAVAILABLE_CLOSE_CODE)
        return

    try:
        identity = await hub.on_connect(agent_role)
    except StoreUnavailable as exc:
        logger.error("[WS] Rejecting %s: %s", agent_role.display_name, exc)
        await websocket.close(code=STORE_UNAVAILABLE_CLOSE_CODE)
        return

    await websocket.accept()
    hub.attach_session(identity, agent_role, websocket)
    logger.info("[WS] %s connected as %s", agent_role.display_name, identity)

    try:
        await websocket.send_json({
            "type": "connected",
            "agentId": identity,
            "agentType": agent_role.value,
            "agentName": agent_role.display_name,
        })

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue

            logger.debug("[WS] %s received: type=%s", identity, data.get("type", "?") if isinstance(data, dict) else "?")
            reply = await hub.on_client_frame(identity, data)
            if reply is not None:
                await websocket.send_json(reply)

    except WebSocketDisconnect as exc:
        logger.info("[WS] %s disconnected (code=%s)", identity, exc.code)
    finally:
        await hub.on_disconnect(identity, websocket)
