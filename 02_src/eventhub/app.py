"""Application bootstrap and lifecycle management."""

from typing import Protocol

import httpx

from .broker import (
    REALTIME_QUEUE,
    WEBHOOK_QUEUE,
    EventPublisher,
    IBroker,
    InMemoryBroker,
    RedisStreamsBroker,
    default_queues,
)
from .config import Settings, resolve_db_path
from .logging_config import get_logger
from .realtime import (
    IFanoutChannel,
    InMemoryFanoutHub,
    InMemoryPresenceIndex,
    IPresenceIndex,
    RealtimeGateway,
    RedisFanoutChannel,
    RedisPresenceIndex,
    TokenValidator,
)
from .storage import IStorage, Storage
from .webhooks import WebhookDispatcher

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap.

    ``broker_backend=memory`` keeps everything in one process (local
    development, tests); ``redis`` uses Redis Streams for the broker and
    Redis for presence and the fan-out channel.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        fanout_hub: InMemoryFanoutHub | None = None,
        presence: IPresenceIndex | None = None,
    ):
        self.settings = settings or Settings.from_env()
        self._db_path = resolve_db_path(self.settings.database_url)
        self._http_client = http_client
        self._fanout_hub = fanout_hub
        self._shared_presence = presence

        # Components (will be initialized in start())
        self._storage: IStorage | None = None
        self._broker: IBroker | None = None
        self._publisher: EventPublisher | None = None
        self._presence: IPresenceIndex | None = None
        self._fanout: IFanoutChannel | None = None
        self._dispatcher: WebhookDispatcher | None = None
        self._gateway: RealtimeGateway | None = None
        self.token_validator = TokenValidator(
            self.settings.jwt_secret, self.settings.jwt_algorithm
        )

    def _use_redis(self) -> bool:
        return self.settings.broker_backend == "redis"

    async def start(self) -> None:
        """Initialize components in dependency order."""
        settings = self.settings
        logger.info(
            "Starting application",
            extra={
                "context": {
                    "instance": settings.instance_id,
                    "broker": settings.broker_backend,
                }
            },
        )

        # 1. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized")

        # 2. Broker and queue topology
        if self._use_redis():
            self._broker = RedisStreamsBroker(
                settings.redis_url, consumer_name=settings.instance_id
            )
        else:
            self._broker = InMemoryBroker()
        for spec in default_queues():
            await self._broker.declare_queue(spec)
        self._publisher = EventPublisher(self._broker)
        logger.info("Broker initialized (%s)", settings.broker_backend)

        # 3. Presence and fan-out (shared across instances)
        if self._shared_presence is not None:
            self._presence = self._shared_presence
        elif self._use_redis():
            self._presence = RedisPresenceIndex(settings.redis_url)
        else:
            self._presence = InMemoryPresenceIndex()

        if self._fanout_hub is not None:
            self._fanout = self._fanout_hub.channel()
        elif self._use_redis():
            self._fanout = RedisFanoutChannel(settings.redis_url)
        else:
            self._fanout = InMemoryFanoutHub().channel()

        # 4. Webhook dispatcher (depends on Storage)
        self._dispatcher = WebhookDispatcher(
            self._storage,
            http_client=self._http_client,
            request_timeout=settings.webhook_timeout_seconds,
            sweep_interval=settings.retry_sweep_interval_seconds,
            max_in_flight_per_subscription=settings.max_in_flight_per_subscription,
        )
        await self._dispatcher.start()

        # 5. Realtime gateway (depends on presence, fan-out, broker)
        self._gateway = RealtimeGateway(
            instance_id=settings.instance_id,
            presence=self._presence,
            fanout=self._fanout,
            publisher=self._publisher,
            heartbeat_interval=settings.heartbeat_interval_seconds,
            heartbeat_timeout=settings.heartbeat_timeout_seconds,
        )
        await self._gateway.start()

        # 6. Queue consumers last, once both handlers are ready
        self._broker.consume(WEBHOOK_QUEUE, self._dispatcher.on_event)
        self._broker.consume(REALTIME_QUEUE, self._gateway.handle_broker_event)
        await self._broker.start()
        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._broker:
            await self._broker.stop()
            logger.info("Broker stopped")
        if self._gateway:
            await self._gateway.stop()
        if self._dispatcher:
            await self._dispatcher.stop()
        if self._presence and self._shared_presence is None:
            await self._presence.close()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def broker(self) -> IBroker:
        """Get broker instance."""
        if not self._broker:
            raise RuntimeError("Application not started")
        return self._broker

    @property
    def publisher(self) -> EventPublisher:
        """Get the event publisher domain services use."""
        if not self._publisher:
            raise RuntimeError("Application not started")
        return self._publisher

    @property
    def dispatcher(self) -> WebhookDispatcher:
        """Get webhook dispatcher instance."""
        if not self._dispatcher:
            raise RuntimeError("Application not started")
        return self._dispatcher

    @property
    def gateway(self) -> RealtimeGateway:
        """Get realtime gateway instance."""
        if not self._gateway:
            raise RuntimeError("Application not started")
        return self._gateway
