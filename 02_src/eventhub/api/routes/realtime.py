"""Realtime routes: client WebSocket, internal push endpoints, health."""

import json
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from ...errors import AuthenticationError
from ...logging_config import get_logger
from ...models import utcnow
from ...realtime import Connection, bearer_token

logger = get_logger(__name__)


class BroadcastRequest(BaseModel):
    """Request model for a tenant-wide push."""

    tenant_id: str = Field(min_length=1)
    event: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class SendToUserRequest(BaseModel):
    """Request model for a push to one user."""

    tenant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    event: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class PushResponse(BaseModel):
    """Response model for internal pushes."""

    status: str
    delivered: int


class OnlineUser(BaseModel):
    """A user with at least one live connection."""

    userId: str
    role: str | None
    connections: int
    lastSeen: str


class OnlineUsersResponse(BaseModel):
    """Response model for online users."""

    tenant_id: str
    users: list[OnlineUser]


class HealthResponse(BaseModel):
    """Response model for health."""

    status: str
    instance_id: str
    connected_clients: int
    timestamp: str


def create_realtime_router(app) -> APIRouter:
    """Create realtime router."""
    router = APIRouter(tags=["realtime"])

    @router.websocket("/ws")
    async def client_socket(websocket: WebSocket) -> None:
        """Client session: authenticate once, then exchange JSON frames."""
        token = websocket.query_params.get("token") or bearer_token(
            websocket.headers.get("authorization")
        )
        try:
            identity = app.token_validator.decode(token)
        except AuthenticationError as e:
            logger.warning("Rejected realtime handshake: %s", e)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        async def close_socket() -> None:
            await websocket.close(code=status.WS_1001_GOING_AWAY)

        connection = Connection(send=websocket.send_json, on_close=close_socket)
        connection.authenticate(identity)
        gateway = app.gateway
        await gateway.register(connection)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring non-JSON frame from %s", connection.id)
                    continue
                if isinstance(message, dict):
                    await gateway.handle_client_message(connection, message)
        except WebSocketDisconnect:
            pass
        except RuntimeError:
            # Raised by receive once the gateway has closed the socket
            if connection.is_active:
                raise
        finally:
            await gateway.deregister(connection.id, close_transport=False)

    @router.get("/api/realtime/online/{tenant_id}", response_model=OnlineUsersResponse)
    async def online_users(tenant_id: str) -> dict:
        """Users of a tenant currently connected to any instance."""
        try:
            users = await app.gateway.online_users(tenant_id)
            return {"tenant_id": tenant_id, "users": users}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/api/realtime/broadcast", response_model=PushResponse)
    async def broadcast(request: BroadcastRequest) -> dict:
        """Push an event to every connection of a tenant."""
        try:
            delivered = await app.gateway.broadcast(request.tenant_id, request.event, request.data)
            return {"status": "ok", "delivered": delivered}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/api/realtime/send-to-user", response_model=PushResponse)
    async def send_to_user(request: SendToUserRequest) -> dict:
        """Push an event to every connection of one user."""
        try:
            delivered = await app.gateway.send_to_user(
                request.tenant_id, request.user_id, request.event, request.data
            )
            return {"status": "ok", "delivered": delivered}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/health", response_model=HealthResponse)
    async def health() -> dict:
        """Liveness and local connection count."""
        return {
            "status": "healthy",
            "instance_id": app.settings.instance_id,
            "connected_clients": app.gateway.connection_count,
            "timestamp": utcnow().isoformat(),
        }

    return router
