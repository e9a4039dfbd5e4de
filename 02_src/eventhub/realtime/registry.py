"""Process-local connection registry."""

from datetime import datetime
from typing import Iterator

from ..models import Route
from .connection import Connection
from .routing import select_connections


class ConnectionRegistry:
    """Connections held by this instance, indexed by tenant.

    Routing reads only this registry; the presence index is for visibility.
    """

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._by_tenant: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def add(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        self._by_tenant.setdefault(connection.tenant_id, set()).add(connection.id)

    def remove(self, connection_id: str) -> Connection | None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        ids = self._by_tenant.get(connection.tenant_id)
        if ids is not None:
            ids.discard(connection_id)
            if not ids:
                del self._by_tenant[connection.tenant_id]
        return connection

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def for_tenant(self, tenant_id: str) -> list[Connection]:
        return [self._connections[i] for i in self._by_tenant.get(tenant_id, ())]

    def for_user(self, tenant_id: str, user_id: str) -> list[Connection]:
        return [c for c in self.for_tenant(tenant_id) if c.user_id == user_id]

    def select(self, route: Route, exclude_connection_id: str | None = None) -> list[Connection]:
        """Active connections of the route's tenant that the route targets."""
        return select_connections(self.for_tenant(route.tenant_id), route, exclude_connection_id)

    def stale(self, heartbeat_before: datetime) -> list[Connection]:
        return [c for c in self._connections.values() if c.last_heartbeat < heartbeat_before]
