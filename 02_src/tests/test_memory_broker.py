"""Tests for InMemoryBroker and EventPublisher."""

import asyncio

import pytest

from eventhub.broker import (
    REALTIME_QUEUE,
    WEBHOOK_QUEUE,
    EventPublisher,
    InMemoryBroker,
    QueueBinding,
    QueueSpec,
)
from eventhub.models import EventEnvelope


class TestPublishConsume:
    """Tests for publish/consume."""

    async def test_each_queue_gets_a_copy(self, broker):
        """Test that webhook and realtime queues both receive the event."""
        webhook_seen, realtime_seen = [], []

        async def on_webhook(envelope):
            webhook_seen.append(envelope)

        async def on_realtime(envelope):
            realtime_seen.append(envelope)

        broker.consume(WEBHOOK_QUEUE, on_webhook)
        broker.consume(REALTIME_QUEUE, on_realtime)
        await broker.start()

        envelope = EventEnvelope.create("leave.approved", "T1", {"leaveId": "L1"})
        await EventPublisher(broker).publish(envelope)
        await broker.join()

        assert [e.event_id for e in webhook_seen] == [envelope.event_id]
        assert [e.event_id for e in realtime_seen] == [envelope.event_id]

    async def test_consumer_gets_a_copy(self, broker):
        """Test that consumers receive a deserialized copy, not the same object."""
        seen = []

        async def handler(envelope):
            seen.append(envelope)

        broker.consume(WEBHOOK_QUEUE, handler)
        await broker.start()

        envelope = EventEnvelope.create("leave.approved", "T1", {"leaveId": "L1"})
        await EventPublisher(broker).publish(envelope)
        await broker.join(WEBHOOK_QUEUE)

        assert seen[0] == envelope
        assert seen[0] is not envelope

    async def test_binding_pattern_filters(self):
        """Test that a queue only receives matching routing keys."""
        broker = InMemoryBroker()
        await broker.declare_queue(
            QueueSpec(name="leave_only", bindings=(QueueBinding("leave", "leave.approved"),))
        )
        assert broker.publish_raw("leave", "leave.rejected", "{}") == 0
        assert broker.publish_raw("leave", "leave.approved", "{}") == 1
        assert broker.depth("leave_only") == 1

    async def test_publisher_sets_source(self, broker):
        """Test that a publisher with a source stamps envelopes."""
        publisher = EventPublisher(broker, source="leave-service")
        published = await publisher.publish(EventEnvelope.create("leave.approved", "T1"))
        assert published.source == "leave-service"


class TestRedelivery:
    """Tests for at-least-once delivery."""

    async def test_failed_handler_gets_message_again(self, broker):
        """Test that a handler exception leaves the message for redelivery."""
        calls = []

        async def flaky(envelope):
            calls.append(envelope.event_id)
            if len(calls) == 1:
                raise RuntimeError("database down")

        broker.consume(WEBHOOK_QUEUE, flaky)
        await broker.start()

        envelope = EventEnvelope.create("leave.approved", "T1")
        await EventPublisher(broker).publish(envelope)
        await asyncio.wait_for(broker.join(WEBHOOK_QUEUE), timeout=2)

        assert calls == [envelope.event_id, envelope.event_id]

    async def test_dead_letter_after_max_deliveries(self):
        """Test that a poison message stops after max_deliveries."""
        broker = InMemoryBroker(max_deliveries=3)
        await broker.declare_queue(QueueSpec("q", (QueueBinding("leave"),)))
        calls = []

        async def always_fails(envelope):
            calls.append(1)
            raise RuntimeError("boom")

        broker.consume("q", always_fails)
        await broker.start()
        await broker.publish("leave", "leave.approved", EventEnvelope.create("leave.approved", "T1"))
        await asyncio.wait_for(broker.join("q"), timeout=2)
        await broker.stop()

        assert len(calls) == 3
        assert len(broker.dead_letters) == 1
        assert broker.dead_letters[0].error == "boom"

    async def test_malformed_message_dropped(self, broker):
        """Test that unparseable bodies are acknowledged without calling the handler."""
        calls = []

        async def handler(envelope):
            calls.append(envelope)

        broker.consume(WEBHOOK_QUEUE, handler)
        await broker.start()
        broker.publish_raw("leave", "leave.approved", "{not json")
        await asyncio.wait_for(broker.join(WEBHOOK_QUEUE), timeout=2)

        assert calls == []
        assert broker.depth(WEBHOOK_QUEUE) == 0

    async def test_stop_returns_unacked_messages(self):
        """Test that a message held by a stopped consumer is queued again."""
        broker = InMemoryBroker()
        await broker.declare_queue(QueueSpec("q", (QueueBinding("leave"),)))
        started = asyncio.Event()

        async def slow(envelope):
            started.set()
            await asyncio.sleep(10)

        broker.consume("q", slow)
        await broker.start()
        await broker.publish("leave", "leave.approved", EventEnvelope.create("leave.approved", "T1"))
        await asyncio.wait_for(started.wait(), timeout=2)
        await broker.stop()

        assert broker.depth("q") == 1

    async def test_consume_requires_declared_queue(self):
        """Test that consuming an undeclared queue fails."""
        with pytest.raises(ValueError):
            InMemoryBroker().consume("missing", lambda e: None)
