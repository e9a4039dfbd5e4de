"""Envelope routing: push names and target connection sets."""

from typing import Iterable

from ..models import EventEnvelope, RealtimeMessage, Route, RouteKind, ServerEvent
from .connection import Connection

# Event domain -> roles allowed to see its broadcasts
ROLE_ALLOWLISTS: dict[str, tuple[str, ...]] = {
    "attendance": ("hr", "manager", "tenant_admin", "admin"),
}

_EXACT_NAMES = {
    "chat.message": ServerEvent.CHAT_MESSAGE,
    "chat.typing": ServerEvent.CHAT_TYPING,
    "user.online": ServerEvent.USER_ONLINE,
    "user.offline": ServerEvent.USER_OFFLINE,
}

_DOMAIN_NAMES = {
    "notification": ServerEvent.NOTIFICATION,
    "attendance": ServerEvent.ATTENDANCE_UPDATE,
    "leave": ServerEvent.LEAVE_UPDATE,
    "dashboard": ServerEvent.DASHBOARD_REFRESH,
    "chat": ServerEvent.CHAT_MESSAGE,
}


def event_name_for(event_type: str) -> str:
    """Client push name for an event type."""
    exact = _EXACT_NAMES.get(event_type)
    if exact:
        return exact.value
    domain = event_type.split(".", 1)[0]
    return _DOMAIN_NAMES.get(domain, ServerEvent.NOTIFICATION).value


def supplementary_recipients(envelope: EventEnvelope) -> list[str]:
    """Extra users named in the payload who also get a user-targeted event."""
    payload = envelope.payload
    if envelope.domain == "leave":
        keys = ("managerId", "manager_id")
    elif envelope.event_type == "chat.message":
        keys = ("senderId", "sender_id")
    else:
        return []
    return [str(payload[k]) for k in keys if payload.get(k)]


def resolve_route(envelope: EventEnvelope) -> Route:
    """Pick the connection set an envelope is pushed to."""
    tenant_id = envelope.tenant_id

    if envelope.target_user_id:
        users: list[str] = []
        for user_id in [envelope.target_user_id, *supplementary_recipients(envelope)]:
            if user_id not in users:
                users.append(user_id)
        return Route(kind=RouteKind.USERS, tenant_id=tenant_id, user_ids=tuple(users))

    if envelope.room_id:
        return Route(kind=RouteKind.ROOM, tenant_id=tenant_id, room_id=envelope.room_id)

    roles = ROLE_ALLOWLISTS.get(envelope.domain)
    if roles:
        return Route(kind=RouteKind.ROLES, tenant_id=tenant_id, roles=roles)

    return Route(kind=RouteKind.TENANT, tenant_id=tenant_id)


def build_message(
    envelope: EventEnvelope,
    event_name: str | None = None,
    exclude_connection_id: str | None = None,
) -> RealtimeMessage:
    return RealtimeMessage(
        envelope=envelope,
        event_name=event_name or event_name_for(envelope.event_type),
        route=resolve_route(envelope),
        exclude_connection_id=exclude_connection_id,
    )


def connection_matches(connection: Connection, route: Route) -> bool:
    """Is an active connection part of the route's target set?"""
    if not connection.is_active or connection.tenant_id != route.tenant_id:
        return False
    if route.kind is RouteKind.USERS:
        return connection.user_id in route.user_ids
    if route.kind is RouteKind.ROOM:
        return route.room_id in connection.rooms
    if route.kind is RouteKind.ROLES:
        return connection.role in route.roles
    return True


def select_connections(
    connections: Iterable[Connection],
    route: Route,
    exclude_connection_id: str | None = None,
) -> list[Connection]:
    return [
        c
        for c in connections
        if c.id != exclude_connection_id and connection_matches(c, route)
    ]
