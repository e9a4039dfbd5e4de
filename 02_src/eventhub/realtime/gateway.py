"""Realtime gateway.

Owns this instance's client connections, maps envelopes to pushes and keeps
presence up to date. Every routed message is pushed to local connections
first and then handed to the fan-out channel for the other instances.
"""

import asyncio
from datetime import timedelta
from typing import Any, Callable, Mapping

from ..broker import EventPublisher
from ..errors import EventHubError
from ..logging_config import get_logger, log_context
from ..models import (
    ClientIdentity,
    ClientMessageType,
    EventEnvelope,
    RealtimeMessage,
    Route,
    RouteKind,
    ServerEvent,
    utcnow,
)
from .connection import Connection
from .fanout import IFanoutChannel
from .presence import IPresenceIndex
from .registry import ConnectionRegistry
from .routing import build_message

logger = get_logger(__name__)

GATEWAY_SOURCE = "realtime-gateway"


class RealtimeGateway:
    """Pushes events to connected clients across all instances."""

    def __init__(
        self,
        instance_id: str,
        presence: IPresenceIndex,
        fanout: IFanoutChannel,
        publisher: EventPublisher | None = None,
        send_timeout: float = 5.0,
        heartbeat_interval: float = 25.0,
        heartbeat_timeout: float = 60.0,
        clock: Callable = utcnow,
    ):
        self.instance_id = instance_id
        self.registry = ConnectionRegistry()
        self._presence = presence
        self._fanout = fanout
        self._publisher = publisher
        self._send_timeout = send_timeout
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_timeout = timedelta(seconds=heartbeat_timeout)
        self._clock = clock
        self._reaper_task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Join the fan-out channel and start the heartbeat reaper."""
        await self._fanout.start(self._on_fanout)
        self._running = True
        self._reaper_task = asyncio.create_task(self._reaper_loop(), name="heartbeat-reaper")
        logger.info("Realtime gateway %s started", self.instance_id)

    async def stop(self) -> None:
        """Disconnect local clients and leave the fan-out channel."""
        self._running = False
        if self._reaper_task:
            self._reaper_task.cancel()
            await asyncio.gather(self._reaper_task, return_exceptions=True)
            self._reaper_task = None

        for connection in self.registry:
            await self.deregister(connection.id, reason="shutdown")

        await self._fanout.stop()
        logger.info("Realtime gateway %s stopped", self.instance_id)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def register(
        self, connection: Connection, identity: ClientIdentity | None = None
    ) -> Connection:
        """Activate an authenticated connection and announce the user online."""
        if identity is not None:
            connection.authenticate(identity)
        connection.touch(self._clock())
        connection.activate()

        self.registry.add(connection)
        await self._presence.set(connection.presence_entry(self.instance_id))

        logger.info(
            "Client connected: %s (%s)",
            connection.user_id,
            connection.id,
            extra=log_context(tenant_id=connection.tenant_id, user_id=connection.user_id),
        )

        await self._announce(connection, ServerEvent.USER_ONLINE)
        return connection

    async def deregister(
        self,
        connection_id: str,
        reason: str = "disconnect",
        close_transport: bool = True,
    ) -> bool:
        """Remove a connection; announce offline once the user has none left.

        Unless the client already went away (``close_transport=False``), its
        socket is closed too so it cannot keep talking to a dead session.
        """
        connection = self.registry.remove(connection_id)
        if connection is None:
            return False
        connection.close()
        if close_transport:
            try:
                await connection.close_transport()
            except Exception as e:
                logger.debug("Closing socket of %s failed: %s", connection.id, e)

        await self._presence.remove(connection.tenant_id, connection.user_id, connection.id)
        logger.info(
            "Client disconnected: %s (%s, %s)",
            connection.user_id,
            connection.id,
            reason,
            extra=log_context(tenant_id=connection.tenant_id, user_id=connection.user_id),
        )

        remaining = await self._presence.online(connection.tenant_id, self._stale_before())
        if not any(e.user_id == connection.user_id for e in remaining):
            await self._announce(connection, ServerEvent.USER_OFFLINE)
        return True

    async def heartbeat(self, connection: Connection) -> None:
        if not connection.is_active:
            return
        connection.touch(self._clock())
        await self._presence.set(connection.presence_entry(self.instance_id))

    async def _announce(self, connection: Connection, event: ServerEvent) -> None:
        payload: dict[str, Any] = {"userId": connection.user_id}
        if event is ServerEvent.USER_ONLINE:
            payload["role"] = connection.role
        envelope = EventEnvelope.create(
            event.value.replace(":", "."),
            connection.tenant_id,
            payload,
            source=GATEWAY_SOURCE,
        )
        await self.route(build_message(envelope, event_name=event.value))

    def _stale_before(self):
        return self._clock() - self._heartbeat_timeout

    async def reap_stale(self) -> int:
        """Deregister connections whose last heartbeat is past the timeout."""
        stale = self.registry.stale(self._stale_before())
        for connection in stale:
            await self.deregister(connection.id, reason="heartbeat timeout")
        return len(stale)

    async def _reaper_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._heartbeat_interval)
                await self.reap_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Heartbeat reaper failed: %s", e, exc_info=True)

    # ------------------------------------------------------------------
    # Client messages
    # ------------------------------------------------------------------

    async def handle_client_message(
        self, connection: Connection, message: Mapping[str, Any]
    ) -> None:
        """Apply one message received from a client socket."""
        if not connection.is_active:
            logger.debug("Ignoring message on closed connection %s", connection.id)
            return

        try:
            kind = ClientMessageType(message.get("type"))
        except ValueError:
            logger.warning("Unknown client message type %r from %s", message.get("type"), connection.id)
            return

        data = message.get("data") or {}
        if not isinstance(data, Mapping):
            data = {"value": data}

        if kind is ClientMessageType.HEARTBEAT:
            await self.heartbeat(connection)
        elif kind is ClientMessageType.JOIN_ROOM:
            if data.get("roomId"):
                connection.rooms.add(str(data["roomId"]))
        elif kind is ClientMessageType.LEAVE_ROOM:
            if data.get("roomId"):
                connection.rooms.discard(str(data["roomId"]))
        elif kind is ClientMessageType.SUBSCRIBE_DASHBOARD:
            if data.get("dashboardId"):
                connection.rooms.add(f"dashboard:{data['dashboardId']}")
        elif kind is ClientMessageType.UNSUBSCRIBE_DASHBOARD:
            if data.get("dashboardId"):
                connection.rooms.discard(f"dashboard:{data['dashboardId']}")
        elif kind is ClientMessageType.SEND_CHAT:
            await self._send_chat(connection, data)
        elif kind is ClientMessageType.TYPING:
            await self._typing(connection, data)

    async def _send_chat(self, connection: Connection, data: Mapping[str, Any]) -> None:
        room_id = data.get("roomId")
        recipient_id = data.get("recipientId")
        if not room_id and not recipient_id:
            logger.warning("Chat message from %s has no room or recipient", connection.id)
            return

        payload = {
            **data,
            "senderId": connection.user_id,
            "tenantId": connection.tenant_id,
        }
        envelope = EventEnvelope.create(
            "chat.message",
            connection.tenant_id,
            payload,
            room_id=str(room_id) if room_id else None,
            target_user_id=None if room_id else str(recipient_id),
            source=GATEWAY_SOURCE,
        )

        await self.route(build_message(envelope))

        # Persistence and webhooks get it through the broker
        if self._publisher:
            try:
                await self._publisher.publish(envelope)
            except EventHubError as e:
                logger.error("Could not publish chat message %s: %s", envelope.event_id, e)

    async def _typing(self, connection: Connection, data: Mapping[str, Any]) -> None:
        room_id = data.get("roomId")
        recipient_id = data.get("recipientId")
        if not room_id and not recipient_id:
            return

        payload = {
            "userId": connection.user_id,
            "roomId": room_id,
            "isTyping": bool(data.get("isTyping", True)),
        }
        envelope = EventEnvelope.create(
            "chat.typing",
            connection.tenant_id,
            payload,
            room_id=str(room_id) if room_id else None,
            target_user_id=None if room_id else str(recipient_id),
            source=GATEWAY_SOURCE,
        )
        await self.route(build_message(envelope, exclude_connection_id=connection.id))

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def handle_broker_event(self, envelope: EventEnvelope) -> None:
        """Consumer of the realtime queue."""
        if envelope.source == GATEWAY_SOURCE:
            # Already pushed by the gateway that produced it
            return
        await self.route(build_message(envelope))

    async def route(self, message: RealtimeMessage) -> int:
        """Push locally, then fan out to the other instances."""
        delivered = await self._push_local(message)
        try:
            await self._fanout.publish(self.instance_id, message)
        except Exception as e:
            logger.error(
                "Fan-out publish failed for %s: %s",
                message.envelope.event_id,
                e,
                exc_info=True,
            )
        return delivered

    async def _on_fanout(self, origin: str, message: RealtimeMessage) -> None:
        if origin == self.instance_id:
            return
        await self._push_local(message)

    async def _push_local(self, message: RealtimeMessage) -> int:
        targets = self.registry.select(message.route, message.exclude_connection_id)
        if not targets:
            return 0
        frame = message.client_frame()
        results = await asyncio.gather(*(self._push(c, frame) for c in targets))
        return sum(results)

    async def _push(self, connection: Connection, frame: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(connection.send(frame), timeout=self._send_timeout)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Push to %s failed, disconnecting: %s", connection.id, e or type(e).__name__)
            await self.deregister(connection.id, reason="push failed")
            return False

    # ------------------------------------------------------------------
    # Internal operations
    # ------------------------------------------------------------------

    async def broadcast(self, tenant_id: str, event: str, data: Mapping[str, Any] | None = None) -> int:
        """Push an arbitrary event to every connection of a tenant."""
        envelope = EventEnvelope.create(event, tenant_id, data or {}, source=GATEWAY_SOURCE)
        message = RealtimeMessage(
            envelope=envelope,
            event_name=event,
            route=Route(kind=RouteKind.TENANT, tenant_id=tenant_id),
        )
        return await self.route(message)

    async def send_to_user(
        self, tenant_id: str, user_id: str, event: str, data: Mapping[str, Any] | None = None
    ) -> int:
        """Push an arbitrary event to every connection of one user."""
        envelope = EventEnvelope.create(
            event, tenant_id, data or {}, target_user_id=user_id, source=GATEWAY_SOURCE
        )
        message = RealtimeMessage(
            envelope=envelope,
            event_name=event,
            route=Route(kind=RouteKind.USERS, tenant_id=tenant_id, user_ids=(user_id,)),
        )
        return await self.route(message)

    async def online_users(self, tenant_id: str) -> list[dict[str, Any]]:
        """Users of a tenant with at least one live connection on any instance."""
        entries = await self._presence.online(tenant_id, self._stale_before())
        users: dict[str, dict[str, Any]] = {}
        for entry in entries:
            user = users.setdefault(
                entry.user_id,
                {"userId": entry.user_id, "role": entry.role, "connections": 0, "lastSeen": entry.last_seen},
            )
            user["connections"] += 1
            user["lastSeen"] = max(user["lastSeen"], entry.last_seen)
        return [
            {**u, "lastSeen": u["lastSeen"].isoformat()}
            for u in sorted(users.values(), key=lambda u: u["userId"])
        ]

    @property
    def connection_count(self) -> int:
        return len(self.registry)
