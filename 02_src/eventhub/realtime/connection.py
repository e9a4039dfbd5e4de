"""A client session and its lifecycle."""

import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

from ..errors import InvalidTransitionError
from ..models import ClientIdentity, ConnectionState, PresenceEntry, utcnow

SendFunc = Callable[[dict[str, Any]], Awaitable[None]]
CloseFunc = Callable[[], Awaitable[None]]

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.AUTHENTICATED: frozenset(
        {ConnectionState.ACTIVE, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.ACTIVE: frozenset({ConnectionState.DISCONNECTED}),
    ConnectionState.DISCONNECTED: frozenset(),
}


class Connection:
    """One client socket.

    ``send`` pushes a JSON frame to the client; the gateway bounds it with a
    timeout and treats any failure as a disconnect. ``on_close`` shuts the
    underlying transport when the server drops the session.
    """

    def __init__(
        self,
        send: SendFunc,
        connection_id: str | None = None,
        now: datetime | None = None,
        on_close: CloseFunc | None = None,
    ):
        self.id = connection_id or str(uuid.uuid4())
        self.state = ConnectionState.CONNECTING
        self.identity: ClientIdentity | None = None
        self.rooms: set[str] = set()
        self.connected_at = now or utcnow()
        self.last_heartbeat = self.connected_at
        self._send = send
        self._on_close = on_close

    def __repr__(self) -> str:
        return f"Connection({self.id}, {self.state.value}, user={self.user_id})"

    @property
    def user_id(self) -> str | None:
        return self.identity.user_id if self.identity else None

    @property
    def tenant_id(self) -> str | None:
        return self.identity.tenant_id if self.identity else None

    @property
    def role(self) -> str | None:
        return self.identity.role if self.identity else None

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    def transition(self, new_state: ConnectionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Connection {self.id} cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def authenticate(self, identity: ClientIdentity) -> None:
        self.transition(ConnectionState.AUTHENTICATED)
        self.identity = identity

    def activate(self) -> None:
        self.transition(ConnectionState.ACTIVE)

    def close(self) -> bool:
        """Mark disconnected. Returns False if it already was."""
        if self.state is ConnectionState.DISCONNECTED:
            return False
        self.transition(ConnectionState.DISCONNECTED)
        return True

    def touch(self, now: datetime | None = None) -> None:
        self.last_heartbeat = now or utcnow()

    async def send(self, frame: dict[str, Any]) -> None:
        await self._send(frame)

    async def close_transport(self) -> None:
        if self._on_close is not None:
            await self._on_close()

    def presence_entry(self, instance: str) -> PresenceEntry:
        return PresenceEntry(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            connection_id=self.id,
            instance=instance,
            last_seen=self.last_heartbeat,
            role=self.role,
        )
