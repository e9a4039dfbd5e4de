"""Broker interface and producer-side publisher."""

from dataclasses import replace
from typing import Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import EventEnvelope
from .topology import QueueSpec, exchange_for

logger = get_logger(__name__)


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


class IBroker(Protocol):
    """Durable topic-routed transport with at-least-once delivery.

    A message is acknowledged only after its handler returns; a handler that
    raises leaves it unacknowledged and it is delivered again.
    """

    async def declare_queue(self, spec: QueueSpec) -> None:
        """Declare a durable queue and its bindings."""
        ...

    def consume(self, queue: str, handler: EventHandler) -> None:
        """Register the handler for a queue. Must be called before start()."""
        ...

    async def publish(
        self, exchange: str, routing_key: str, envelope: EventEnvelope
    ) -> None:
        """Publish an envelope to an exchange."""
        ...

    async def start(self) -> None:
        """Connect and start consumer loops."""
        ...

    async def stop(self) -> None:
        """Stop consumer loops and disconnect."""
        ...


class EventPublisher:
    """What domain services use to emit events.

    Producers never talk to the dispatcher or the gateway; they publish to
    the exchange of the event's domain with the event type as routing key.
    """

    def __init__(self, broker: IBroker, source: str | None = None):
        self._broker = broker
        self._source = source

    async def publish(
        self, envelope: EventEnvelope, exchange: str | None = None
    ) -> EventEnvelope:
        """Publish ``envelope``; returns it (with ``source`` filled in)."""
        if self._source and not envelope.source:
            envelope = replace(envelope, source=self._source)

        target = exchange or exchange_for(envelope.event_type)
        await self._broker.publish(target, envelope.event_type, envelope)
        logger.debug(
            "Published %s to %s",
            envelope.event_type,
            target,
            extra={"context": {"event_id": envelope.event_id, "tenant_id": envelope.tenant_id}},
        )
        return envelope
