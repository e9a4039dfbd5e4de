"""Tests for Application."""

import asyncio

import httpx
import pytest

from eventhub.app import Application
from eventhub.broker import REALTIME_QUEUE, WEBHOOK_QUEUE
from eventhub.config import Settings
from eventhub.models import DeliveryStatus, EventEnvelope


def _settings(**overrides) -> Settings:
    values = {
        "database_url": ":memory:",
        "broker_backend": "memory",
        "instance_id": "test-1",
        "jwt_secret": "test-secret",
        "retry_sweep_interval_seconds": 3600,
        "heartbeat_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(**values)


class TestApplicationStart:
    """Tests for Application.start()."""

    @pytest.mark.asyncio
    async def test_start_initializes_components(self):
        """Test that start initializes all components."""
        app = Application(_settings())
        await app.start()
        try:
            assert app.storage is not None
            assert app.broker is not None
            assert app.publisher is not None
            assert app.dispatcher is not None
            assert app.gateway is not None
            assert app.gateway.instance_id == "test-1"
        finally:
            await app.stop()

    @pytest.mark.asyncio
    async def test_start_creates_database_tables(self):
        """Test that start creates database tables."""
        app = Application(_settings())
        await app.start()
        try:
            async with app.storage._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ) as cursor:
                tables = {row[0] for row in await cursor.fetchall()}
            assert {"webhook_subscriptions", "webhook_deliveries"} <= tables
        finally:
            await app.stop()

    def test_properties_before_start(self):
        """Test that components are unavailable before start."""
        app = Application(_settings())
        for name in ("storage", "broker", "publisher", "dispatcher", "gateway"):
            with pytest.raises(RuntimeError, match="Application not started"):
                getattr(app, name)


class TestEndToEnd:
    """Tests for a published event flowing to both consumers."""

    @pytest.mark.asyncio
    async def test_event_reaches_webhook_and_socket(self, endpoint, make_subscription, connect):
        """Test that one published event is delivered by webhook and pushed once."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler)) as client:
            app = Application(_settings(), http_client=client)
            await app.start()
            try:
                sub = make_subscription(events=["leave.*"])
                await app.storage.save_subscription(sub)

                _, socket = await connect(app.gateway, "U1")

                envelope = EventEnvelope.create(
                    "leave.approved", "T1", {"leaveId": "L1"}, target_user_id="U1"
                )
                await app.publisher.publish(envelope)
                await asyncio.wait_for(app.broker.join(WEBHOOK_QUEUE), timeout=2)
                await asyncio.wait_for(app.broker.join(REALTIME_QUEUE), timeout=2)

                assert len(endpoint.requests) == 1
                deliveries = await app.storage.list_deliveries("T1", sub.id)
                assert [d.status for d in deliveries] == [DeliveryStatus.SUCCESS]
                assert [f["eventId"] for f in socket.frames if f["event"] == "leave:update"] == [
                    envelope.event_id
                ]
            finally:
                await app.stop()


class TestApplicationReset:
    """Tests for Application.reset()."""

    @pytest.mark.asyncio
    async def test_reset_clears_storage(self, make_subscription):
        """Test that reset removes subscriptions and deliveries."""
        app = Application(_settings())
        await app.start()
        try:
            await app.storage.save_subscription(make_subscription())
            await app.reset()
            assert await app.storage.list_subscriptions("T1") == []
        finally:
            await app.stop()
