"""Cross-instance fan-out channel.

Every routed realtime message is published once, tagged with the origin
instance id; every gateway re-runs routing against its own registry and
ignores messages it originated.
"""

import asyncio
import json
from typing import Awaitable, Callable, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..logging_config import get_logger
from ..models import RealtimeMessage

logger = get_logger(__name__)

FANOUT_CHANNEL = "eventhub:realtime:fanout"

FanoutHandler = Callable[[str, RealtimeMessage], Awaitable[None]]


class IFanoutChannel(Protocol):
    """Fan-out channel interface."""

    async def start(self, handler: FanoutHandler) -> None:
        """Subscribe; ``handler(origin, message)`` runs for every message."""
        ...

    async def publish(self, origin: str, message: RealtimeMessage) -> None:
        """Send a message to every subscribed instance."""
        ...

    async def stop(self) -> None:
        """Unsubscribe and release resources."""
        ...


class InMemoryFanoutHub:
    """Connects several gateways living in one process."""

    def __init__(self):
        self._handlers: list[FanoutHandler] = []

    def channel(self) -> "InMemoryFanoutChannel":
        return InMemoryFanoutChannel(self)

    def subscribe(self, handler: FanoutHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: FanoutHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def broadcast(self, origin: str, raw: str) -> None:
        for handler in list(self._handlers):
            try:
                await handler(origin, RealtimeMessage.from_dict(json.loads(raw)))
            except Exception as e:
                logger.error("Fan-out handler failed: %s", e, exc_info=True)


class InMemoryFanoutChannel:
    """One instance's view of an InMemoryFanoutHub."""

    def __init__(self, hub: InMemoryFanoutHub):
        self._hub = hub
        self._handler: FanoutHandler | None = None

    async def start(self, handler: FanoutHandler) -> None:
        self._handler = handler
        self._hub.subscribe(handler)

    async def publish(self, origin: str, message: RealtimeMessage) -> None:
        # Serialized like the Redis channel so both carry the same data
        await self._hub.broadcast(origin, json.dumps(message.to_dict(), default=str))

    async def stop(self) -> None:
        if self._handler:
            self._hub.unsubscribe(self._handler)
            self._handler = None


class RedisFanoutChannel:
    """Fan-out over Redis pub/sub."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        channel: str = FANOUT_CHANNEL,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
    ):
        self._redis_url = redis_url
        self._channel = channel
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._redis: aioredis.Redis | None = None
        self._task: asyncio.Task | None = None
        self._running = False

    def _connection(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def start(self, handler: FanoutHandler) -> None:
        self._running = True
        self._task = asyncio.create_task(self._listen(handler), name="realtime-fanout")
        logger.info("Listening for fan-out on %s", self._channel)

    async def publish(self, origin: str, message: RealtimeMessage) -> None:
        data = json.dumps({"origin": origin, "message": message.to_dict()}, default=str)
        await self._connection().publish(self._channel, data)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _listen(self, handler: FanoutHandler) -> None:
        delay = self._reconnect_delay
        while self._running:
            pubsub = self._connection().pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(self._channel)
                delay = self._reconnect_delay
                async for item in pubsub.listen():
                    if item.get("type") != "message":
                        continue
                    await self._dispatch(handler, item["data"])
            except asyncio.CancelledError:
                break
            except RedisError as e:
                logger.error("Fan-out subscription lost: %s; retrying in %.1fs", e, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_reconnect_delay)
            finally:
                await pubsub.aclose()

    async def _dispatch(self, handler: FanoutHandler, raw: str) -> None:
        try:
            data = json.loads(raw)
            message = RealtimeMessage.from_dict(data["message"])
        except (ValueError, KeyError) as e:
            logger.error("Dropping malformed fan-out message: %s", e)
            return
        try:
            await handler(data.get("origin", ""), message)
        except Exception as e:
            logger.error("Fan-out handler failed: %s", e, exc_info=True)
