"""Realtime gateway data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .events import EventEnvelope


class ConnectionState(str, Enum):
    """Lifecycle of a client connection."""

    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ClientMessageType(str, Enum):
    """Messages a client may send over its session."""

    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SEND_CHAT = "send-chat"
    TYPING = "typing"
    HEARTBEAT = "heartbeat"
    SUBSCRIBE_DASHBOARD = "subscribe-dashboard"
    UNSUBSCRIBE_DASHBOARD = "unsubscribe-dashboard"


class ServerEvent(str, Enum):
    """Push names the server emits to clients."""

    NOTIFICATION = "notification"
    CHAT_MESSAGE = "chat:message"
    CHAT_TYPING = "chat:typing"
    ATTENDANCE_UPDATE = "attendance:update"
    LEAVE_UPDATE = "leave:update"
    DASHBOARD_REFRESH = "dashboard:refresh"
    USER_ONLINE = "user:online"
    USER_OFFLINE = "user:offline"


class RouteKind(str, Enum):
    """Which connection set a realtime message goes to."""

    USERS = "users"
    ROOM = "room"
    ROLES = "roles"
    TENANT = "tenant"


@dataclass(frozen=True)
class Route:
    """Target connection set within one tenant."""

    kind: RouteKind
    tenant_id: str
    user_ids: tuple[str, ...] = ()
    room_id: str | None = None
    roles: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "tenantId": self.tenant_id,
            "userIds": list(self.user_ids),
            "roomId": self.room_id,
            "roles": list(self.roles),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Route":
        return cls(
            kind=RouteKind(data["kind"]),
            tenant_id=data["tenantId"],
            user_ids=tuple(data.get("userIds") or ()),
            room_id=data.get("roomId"),
            roles=tuple(data.get("roles") or ()),
        )


@dataclass(frozen=True)
class RealtimeMessage:
    """An envelope plus the push name and route resolved for it.

    ``exclude_connection_id`` keeps ephemeral signals (typing) from echoing
    back to the connection that sent them.
    """

    envelope: EventEnvelope
    event_name: str
    route: Route
    exclude_connection_id: str | None = None

    def client_frame(self) -> dict[str, Any]:
        """JSON frame pushed to the client socket."""
        return {
            "event": self.event_name,
            "data": self.envelope.payload_dict(),
            "eventId": self.envelope.event_id,
            "eventType": self.envelope.event_type,
            "timestamp": self.envelope.timestamp.isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "envelope": self.envelope.to_dict(),
            "eventName": self.event_name,
            "route": self.route.to_dict(),
            "excludeConnectionId": self.exclude_connection_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RealtimeMessage":
        return cls(
            envelope=EventEnvelope.from_dict(data["envelope"]),
            event_name=data["eventName"],
            route=Route.from_dict(data["route"]),
            exclude_connection_id=data.get("excludeConnectionId"),
        )


@dataclass
class PresenceEntry:
    """One live connection of a user, as seen by every instance."""

    tenant_id: str
    user_id: str
    connection_id: str
    instance: str
    last_seen: datetime
    role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "connectionId": self.connection_id,
            "instance": self.instance,
            "lastSeen": self.last_seen.isoformat(),
            "role": self.role,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PresenceEntry":
        return cls(
            tenant_id=data["tenantId"],
            user_id=data["userId"],
            connection_id=data["connectionId"],
            instance=data["instance"],
            last_seen=datetime.fromisoformat(data["lastSeen"]),
            role=data.get("role"),
        )


@dataclass
class ClientIdentity:
    """Claims extracted from a validated handshake credential."""

    user_id: str
    tenant_id: str
    role: str
    employee_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
