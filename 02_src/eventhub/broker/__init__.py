"""Broker module: topology, interface, publisher and implementations."""

from .broker import EventHandler, EventPublisher, IBroker
from .memory_broker import InMemoryBroker
from .redis_broker import RedisStreamsBroker
from .topology import (
    DEFAULT_EXCHANGE,
    EXCHANGES,
    REALTIME_QUEUE,
    WEBHOOK_QUEUE,
    QueueBinding,
    QueueSpec,
    bind_all,
    default_queues,
    exchange_for,
    topic_matches,
)

__all__ = [
    "EventHandler",
    "EventPublisher",
    "IBroker",
    "InMemoryBroker",
    "RedisStreamsBroker",
    "DEFAULT_EXCHANGE",
    "EXCHANGES",
    "REALTIME_QUEUE",
    "WEBHOOK_QUEUE",
    "QueueBinding",
    "QueueSpec",
    "bind_all",
    "default_queues",
    "exchange_for",
    "topic_matches",
]
