"""Redis Streams broker.

Each exchange is a stream; each queue is a consumer group created on every
stream it is bound to. Delivery is at-least-once:

- an entry is XACKed only after the handler returns;
- on start a consumer re-reads its own pending entries first;
- entries left pending by a crashed or failing consumer are reclaimed with
  XAUTOCLAIM once idle for ``claim_idle_ms``.
"""

import asyncio

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from ..errors import BrokerUnavailableError, MalformedEnvelopeError
from ..logging_config import get_logger
from ..models import EventEnvelope
from .broker import EventHandler
from .topology import QueueBinding, QueueSpec, topic_matches

logger = get_logger(__name__)


class RedisStreamsBroker:
    """Production broker backed by Redis Streams consumer groups."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        consumer_name: str = "eventhub",
        stream_prefix: str = "eventhub:exchange",
        max_stream_length: int = 100_000,
        block_ms: int = 1000,
        batch_size: int = 10,
        claim_idle_ms: int = 60_000,
        publish_retries: int = 5,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
    ):
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = None
        self._consumer_name = consumer_name
        self._prefix = stream_prefix
        self._max_len = max_stream_length
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._claim_idle_ms = claim_idle_ms
        self._publish_retries = publish_retries
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay

        self._queues: dict[str, QueueSpec] = {}
        self._handlers: dict[str, EventHandler] = {}
        self._tasks: list[asyncio.Task] = []
        self._running = False

    def _stream(self, exchange: str) -> str:
        return f"{self._prefix}:{exchange}"

    def _connection(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def declare_queue(self, spec: QueueSpec) -> None:
        """Record the queue; consumer groups are created by the consumer loops."""
        self._queues[spec.name] = spec

    def consume(self, queue: str, handler: EventHandler) -> None:
        """Register the consumer of a declared queue."""
        if queue not in self._queues:
            raise ValueError(f"Queue {queue} is not declared")
        self._handlers[queue] = handler

    async def start(self) -> None:
        """Start one consumer loop per (queue, bound exchange)."""
        self._connection()
        self._running = True

        for name, handler in self._handlers.items():
            for binding in self._queues[name].bindings:
                task = asyncio.create_task(
                    self._consume_loop(name, binding, handler),
                    name=f"consumer-{name}-{binding.exchange}",
                )
                self._tasks.append(task)

        logger.info(
            "Redis broker started with %s consumer loops as %s",
            len(self._tasks),
            self._consumer_name,
        )

    async def stop(self) -> None:
        """Stop consumer loops and close the Redis connection."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(
        self, exchange: str, routing_key: str, envelope: EventEnvelope
    ) -> None:
        """XADD the envelope to the exchange stream, retrying with backoff."""
        fields = {"routing_key": routing_key, "envelope": envelope.to_json()}
        delay = self._reconnect_delay

        for attempt in range(1, self._publish_retries + 1):
            try:
                await self._connection().xadd(
                    self._stream(exchange),
                    fields,
                    maxlen=self._max_len,
                    approximate=True,
                )
                return
            except RedisError as e:
                logger.warning(
                    "Publish to %s failed (attempt %s/%s): %s",
                    exchange,
                    attempt,
                    self._publish_retries,
                    e,
                )
                if attempt == self._publish_retries:
                    raise BrokerUnavailableError(
                        f"Could not publish {routing_key} to {exchange}"
                    ) from e
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_reconnect_delay)

    async def _ensure_group(self, stream: str, group: str) -> None:
        try:
            await self._connection().xgroup_create(stream, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _consume_loop(
        self, queue: str, binding: QueueBinding, handler: EventHandler
    ) -> None:
        """Read, dispatch, ack. Survives broker outages with capped backoff."""
        stream = self._stream(binding.exchange)
        consumer = f"{queue}:{self._consumer_name}"
        group_ready = False
        pending_cursor: str | None = "0"
        delay = self._reconnect_delay

        while self._running:
            try:
                if not group_ready:
                    await self._ensure_group(stream, queue)
                    group_ready = True

                if pending_cursor is not None:
                    # Entries this consumer took before a restart
                    messages = await self._read(stream, queue, consumer, pending_cursor, block=None)
                    if not messages:
                        pending_cursor = None
                        continue
                    pending_cursor = messages[-1][0]
                else:
                    messages = await self._claim_stale(stream, queue, consumer)
                    if not messages:
                        messages = await self._read(
                            stream, queue, consumer, ">", block=self._block_ms
                        )

                for msg_id, fields in messages:
                    await self._process(stream, queue, binding, handler, msg_id, fields)

                delay = self._reconnect_delay

            except asyncio.CancelledError:
                break
            except RedisError as e:
                logger.error(
                    "Consumer loop error for %s/%s: %s; retrying in %.1fs",
                    queue,
                    binding.exchange,
                    e,
                    delay,
                )
                group_ready = False
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_reconnect_delay)

    async def _read(
        self,
        stream: str,
        group: str,
        consumer: str,
        cursor: str,
        block: int | None,
    ) -> list[tuple[str, dict | None]]:
        entries = await self._connection().xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: cursor},
            count=self._batch_size,
            block=block,
        )
        if not entries:
            return []
        return list(entries[0][1])

    async def _claim_stale(
        self, stream: str, group: str, consumer: str
    ) -> list[tuple[str, dict | None]]:
        result = await self._connection().xautoclaim(
            stream,
            group,
            consumer,
            min_idle_time=self._claim_idle_ms,
            start_id="0-0",
            count=self._batch_size,
        )
        return list(result[1]) if result and len(result) > 1 else []

    async def _process(
        self,
        stream: str,
        group: str,
        binding: QueueBinding,
        handler: EventHandler,
        msg_id: str,
        fields: dict | None,
    ) -> None:
        redis = self._connection()

        # Trimmed entries come back without fields
        if not fields:
            await redis.xack(stream, group, msg_id)
            return

        routing_key = fields.get("routing_key", "")
        if not topic_matches(binding.pattern, routing_key):
            await redis.xack(stream, group, msg_id)
            return

        try:
            envelope = EventEnvelope.from_json(fields.get("envelope", ""))
        except MalformedEnvelopeError as e:
            logger.error("Dropping malformed message %s on %s: %s", msg_id, stream, e)
            await redis.xack(stream, group, msg_id)
            return

        try:
            await handler(envelope)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Left pending; XAUTOCLAIM hands it out again once idle
            logger.error(
                "Handler failed for %s on %s/%s: %s",
                msg_id,
                group,
                stream,
                e,
                exc_info=True,
                extra={"context": {"event_id": envelope.event_id}},
            )
            return

        await redis.xack(stream, group, msg_id)
