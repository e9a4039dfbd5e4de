"""Cluster-wide presence index.

One entry per live connection, keyed by tenant. Entries carry ``last_seen``;
readers pass a cutoff and entries older than it are pruned, so connections
of a crashed instance disappear within one heartbeat timeout.
"""

import json
from datetime import datetime
from typing import Protocol

import redis.asyncio as aioredis

from ..logging_config import get_logger
from ..models import PresenceEntry

logger = get_logger(__name__)


class IPresenceIndex(Protocol):
    """Presence storage interface."""

    async def set(self, entry: PresenceEntry) -> None:
        """Insert or refresh one connection's entry."""
        ...

    async def remove(self, tenant_id: str, user_id: str, connection_id: str) -> None:
        """Delete one connection's entry."""
        ...

    async def online(
        self, tenant_id: str, stale_before: datetime | None = None
    ) -> list[PresenceEntry]:
        """Entries of a tenant, pruning those last seen before the cutoff."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


def _field(user_id: str, connection_id: str) -> str:
    return f"{user_id}|{connection_id}"


class InMemoryPresenceIndex:
    """Presence for a single process or for tests (shareable between gateways)."""

    def __init__(self):
        self._entries: dict[str, dict[str, PresenceEntry]] = {}

    async def set(self, entry: PresenceEntry) -> None:
        self._entries.setdefault(entry.tenant_id, {})[
            _field(entry.user_id, entry.connection_id)
        ] = entry

    async def remove(self, tenant_id: str, user_id: str, connection_id: str) -> None:
        tenant = self._entries.get(tenant_id)
        if tenant:
            tenant.pop(_field(user_id, connection_id), None)

    async def online(
        self, tenant_id: str, stale_before: datetime | None = None
    ) -> list[PresenceEntry]:
        tenant = self._entries.get(tenant_id, {})
        if stale_before is not None:
            for key in [k for k, e in tenant.items() if e.last_seen < stale_before]:
                del tenant[key]
        return list(tenant.values())

    async def close(self) -> None:
        pass


class RedisPresenceIndex:
    """Presence in one Redis hash per tenant: ``presence:{tenant}``."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", key_prefix: str = "presence"):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis: aioredis.Redis | None = None

    def _key(self, tenant_id: str) -> str:
        return f"{self._prefix}:{tenant_id}"

    def _connection(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def set(self, entry: PresenceEntry) -> None:
        await self._connection().hset(
            self._key(entry.tenant_id),
            _field(entry.user_id, entry.connection_id),
            json.dumps(entry.to_dict()),
        )

    async def remove(self, tenant_id: str, user_id: str, connection_id: str) -> None:
        await self._connection().hdel(self._key(tenant_id), _field(user_id, connection_id))

    async def online(
        self, tenant_id: str, stale_before: datetime | None = None
    ) -> list[PresenceEntry]:
        raw = await self._connection().hgetall(self._key(tenant_id))

        entries: list[PresenceEntry] = []
        stale: list[str] = []
        for field, value in raw.items():
            try:
                entry = PresenceEntry.from_dict(json.loads(value))
            except (ValueError, KeyError) as e:
                logger.warning("Dropping unreadable presence entry %s: %s", field, e)
                stale.append(field)
                continue
            if stale_before is not None and entry.last_seen < stale_before:
                stale.append(field)
                continue
            entries.append(entry)

        if stale:
            await self._connection().hdel(self._key(tenant_id), *stale)
        return entries

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None
