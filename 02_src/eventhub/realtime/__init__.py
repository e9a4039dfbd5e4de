"""Realtime delivery to connected clients."""

from .auth import TokenValidator, bearer_token
from .connection import Connection
from .fanout import (
    FANOUT_CHANNEL,
    IFanoutChannel,
    InMemoryFanoutChannel,
    InMemoryFanoutHub,
    RedisFanoutChannel,
)
from .gateway import GATEWAY_SOURCE, RealtimeGateway
from .presence import IPresenceIndex, InMemoryPresenceIndex, RedisPresenceIndex
from .registry import ConnectionRegistry
from .routing import (
    ROLE_ALLOWLISTS,
    build_message,
    event_name_for,
    resolve_route,
    select_connections,
)

__all__ = [
    "TokenValidator",
    "bearer_token",
    "Connection",
    "ConnectionRegistry",
    "FANOUT_CHANNEL",
    "IFanoutChannel",
    "InMemoryFanoutChannel",
    "InMemoryFanoutHub",
    "RedisFanoutChannel",
    "GATEWAY_SOURCE",
    "RealtimeGateway",
    "IPresenceIndex",
    "InMemoryPresenceIndex",
    "RedisPresenceIndex",
    "ROLE_ALLOWLISTS",
    "build_message",
    "event_name_for",
    "resolve_route",
    "select_connections",
]
