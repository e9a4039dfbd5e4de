"""In-memory broker for tests and single-process development.

Keeps the delivery contract of the Redis implementation: messages are
stored serialized, a handler failure leaves the message unacknowledged and
it is delivered again, and messages held by a stopped consumer go back to
the queue.
"""

import asyncio
import uuid
from dataclasses import dataclass, field

from ..errors import MalformedEnvelopeError
from ..logging_config import get_logger
from ..models import EventEnvelope
from .broker import EventHandler
from .topology import QueueSpec

logger = get_logger(__name__)


@dataclass
class QueuedMessage:
    """A message sitting in (or taken from) a queue."""

    message_id: str
    exchange: str
    routing_key: str
    body: str
    delivery_count: int = 0


@dataclass
class DeadLetter:
    """A message dropped after too many failed deliveries."""

    queue: str
    message: QueuedMessage
    error: str


@dataclass
class _Queue:
    spec: QueueSpec
    ready: asyncio.Queue = field(default_factory=asyncio.Queue)
    unacked: dict[str, QueuedMessage] = field(default_factory=dict)
    handler: EventHandler | None = None
    task: asyncio.Task | None = None


class InMemoryBroker:
    """In-process topic broker with acknowledgment and redelivery."""

    def __init__(
        self,
        redelivery_delay: float = 0.0,
        max_deliveries: int | None = None,
    ):
        self._queues: dict[str, _Queue] = {}
        self._redelivery_delay = redelivery_delay
        self._max_deliveries = max_deliveries
        self._running = False
        self.dead_letters: list[DeadLetter] = []

    async def declare_queue(self, spec: QueueSpec) -> None:
        """Declare a queue; re-declaring keeps queued messages."""
        if spec.name in self._queues:
            self._queues[spec.name].spec = spec
            return
        self._queues[spec.name] = _Queue(spec=spec)

    def consume(self, queue: str, handler: EventHandler) -> None:
        """Register the consumer of a declared queue."""
        if queue not in self._queues:
            raise ValueError(f"Queue {queue} is not declared")
        self._queues[queue].handler = handler

    async def start(self) -> None:
        """Start one consumer loop per queue that has a handler."""
        self._running = True
        for name, queue in self._queues.items():
            if queue.handler and not queue.task:
                queue.task = asyncio.create_task(
                    self._consume_loop(queue), name=f"consumer-{name}"
                )

    async def stop(self) -> None:
        """Stop consumers; unacknowledged messages return to their queue."""
        self._running = False
        for queue in self._queues.values():
            if queue.task:
                queue.task.cancel()
                await asyncio.gather(queue.task, return_exceptions=True)
                queue.task = None
            for message in list(queue.unacked.values()):
                queue.ready.task_done()
                queue.ready.put_nowait(message)
            queue.unacked.clear()

    async def publish(
        self, exchange: str, routing_key: str, envelope: EventEnvelope
    ) -> None:
        """Copy the message into every queue bound to the exchange for this key."""
        self.publish_raw(exchange, routing_key, envelope.to_json())

    def publish_raw(self, exchange: str, routing_key: str, body: str) -> int:
        """Enqueue an already-serialized body. Returns the number of queues reached."""
        reached = 0
        for queue in self._queues.values():
            if queue.spec.accepts(exchange, routing_key):
                queue.ready.put_nowait(
                    QueuedMessage(
                        message_id=str(uuid.uuid4()),
                        exchange=exchange,
                        routing_key=routing_key,
                        body=body,
                    )
                )
                reached += 1
        if not reached:
            logger.debug("No queue bound for %s/%s", exchange, routing_key)
        return reached

    async def join(self, queue: str | None = None) -> None:
        """Wait until the queue (or every queue) is fully acknowledged."""
        names = [queue] if queue else list(self._queues)
        for name in names:
            await self._queues[name].ready.join()

    def depth(self, queue: str) -> int:
        """Messages waiting or in flight on a queue."""
        q = self._queues[queue]
        return q.ready.qsize() + len(q.unacked)

    async def _consume_loop(self, queue: _Queue) -> None:
        name = queue.spec.name
        while True:
            message = await queue.ready.get()
            message.delivery_count += 1
            queue.unacked[message.message_id] = message

            try:
                envelope = EventEnvelope.from_json(message.body)
            except MalformedEnvelopeError as e:
                logger.error("Dropping malformed message on %s: %s", name, e)
                self._ack(queue, message)
                continue

            try:
                await queue.handler(envelope)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Handler failed on %s (delivery %s): %s",
                    name,
                    message.delivery_count,
                    e,
                    exc_info=True,
                    extra={"context": {"event_id": envelope.event_id}},
                )
                await self._redeliver(queue, message, str(e))
                continue

            self._ack(queue, message)

    def _ack(self, queue: _Queue, message: QueuedMessage) -> None:
        queue.unacked.pop(message.message_id, None)
        queue.ready.task_done()

    async def _redeliver(self, queue: _Queue, message: QueuedMessage, error: str) -> None:
        if self._max_deliveries is not None and message.delivery_count >= self._max_deliveries:
            self.dead_letters.append(DeadLetter(queue=queue.spec.name, message=message, error=error))
            self._ack(queue, message)
            return

        if self._redelivery_delay:
            await asyncio.sleep(self._redelivery_delay)
        queue.unacked.pop(message.message_id, None)
        queue.ready.put_nowait(message)
        queue.ready.task_done()
