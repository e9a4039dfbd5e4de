"""Tests for Storage."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from eventhub.models import (
    DeliveryRecord,
    DeliveryResponse,
    DeliveryStatus,
    EventEnvelope,
    SubscriptionFilter,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _record(subscription, event_id="evt-1", **overrides) -> DeliveryRecord:
    values = {
        "id": f"{subscription.id}:{event_id}",
        "subscription_id": subscription.id,
        "tenant_id": subscription.tenant_id,
        "event": EventEnvelope("leave.approved", subscription.tenant_id, {"leaveId": "L1"}, event_id=event_id),
    }
    values.update(overrides)
    return DeliveryRecord(**values)


class TestStorageInit:
    """Tests for Storage initialization."""

    async def test_init_creates_tables(self, storage):
        """Test that init creates all tables."""
        async with storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = [row[0] for row in await cursor.fetchall()]
            assert "webhook_subscriptions" in tables
            assert "webhook_deliveries" in tables


class TestStorageSubscriptions:
    """Tests for subscription storage."""

    async def test_save_and_get(self, storage, make_subscription):
        """Test that every field survives a round trip."""
        sub = make_subscription(
            headers={"X-Api-Key": "k"},
            filters=[SubscriptionFilter("department", "eq", "Engineering")],
            created_by="admin-1",
        )
        await storage.save_subscription(sub)

        loaded = await storage.get_subscription(sub.id)
        assert loaded is not None
        assert loaded.url == sub.url
        assert loaded.secret == "s3cret"
        assert loaded.events == ["leave.*"]
        assert loaded.headers == {"X-Api-Key": "k"}
        assert loaded.filters == [SubscriptionFilter("department", "eq", "Engineering")]
        assert loaded.retry_policy == sub.retry_policy
        assert loaded.created_by == "admin-1"
        assert loaded.created_at is not None

    async def test_get_is_tenant_scoped(self, storage, make_subscription):
        """Test that another tenant cannot read the subscription."""
        sub = make_subscription(tenant_id="T1")
        await storage.save_subscription(sub)

        assert await storage.get_subscription(sub.id, "T1") is not None
        assert await storage.get_subscription(sub.id, "T2") is None

    async def test_active_subscriptions(self, storage, make_subscription):
        """Test that inactive and foreign subscriptions are excluded."""
        active = make_subscription()
        inactive = make_subscription(is_active=False)
        foreign = make_subscription(tenant_id="T2")
        for sub in (active, inactive, foreign):
            await storage.save_subscription(sub)

        result = await storage.get_active_subscriptions("T1")
        assert [s.id for s in result] == [active.id]
        assert len(await storage.list_subscriptions("T1")) == 2

    async def test_update_keeps_counters_and_history(self, storage, make_subscription):
        """Test that saving an edited subscription does not reset counters or deliveries."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        await storage.create_delivery(_record(sub))
        await storage.record_delivery_result(sub.id, True, NOW)

        sub.url = "https://new.example.com/hook"
        await storage.save_subscription(sub)

        loaded = await storage.get_subscription(sub.id)
        assert loaded.url == "https://new.example.com/hook"
        assert loaded.success_count == 1
        assert loaded.last_triggered_at == NOW
        assert await storage.count_deliveries("T1", sub.id) == 1

    async def test_delete_cascades_to_deliveries(self, storage, make_subscription):
        """Test that deleting a subscription removes its delivery history."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        record, _ = await storage.create_delivery(_record(sub))

        assert await storage.delete_subscription("T1", sub.id) is True
        assert await storage.get_subscription(sub.id) is None
        assert await storage.get_delivery(record.id) is None
        assert await storage.delete_subscription("T1", sub.id) is False

    async def test_delete_is_tenant_scoped(self, storage, make_subscription):
        """Test that another tenant cannot delete the subscription."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        assert await storage.delete_subscription("T2", sub.id) is False
        assert await storage.get_subscription(sub.id) is not None

    async def test_failure_counter(self, storage, make_subscription):
        """Test the failure counter."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        await storage.record_delivery_result(sub.id, False, NOW)
        await storage.record_delivery_result(sub.id, False, NOW)

        loaded = await storage.get_subscription(sub.id)
        assert loaded.failure_count == 2
        assert loaded.success_count == 0
        assert loaded.last_triggered_at is None


class TestStorageDeliveries:
    """Tests for the delivery ledger."""

    async def test_create_is_idempotent(self, storage, make_subscription):
        """Test one record per (subscription, event) even if created twice."""
        sub = make_subscription()
        await storage.save_subscription(sub)

        first, created_first = await storage.create_delivery(_record(sub))
        second, created_second = await storage.create_delivery(_record(sub, id="other-id"))

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert await storage.count_deliveries("T1", sub.id) == 1

    async def test_save_delivery(self, storage, make_subscription):
        """Test persisting attempt results."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        record, _ = await storage.create_delivery(_record(sub))

        updated = replace(
            record,
            status=DeliveryStatus.RETRYING,
            attempts=1,
            last_attempt_at=NOW,
            next_retry_at=NOW + timedelta(seconds=5),
            last_response=DeliveryResponse(500, "error"),
            last_error="HTTP 500",
            duration_ms=12,
        )
        await storage.save_delivery(updated)

        loaded = await storage.get_delivery(record.id, "T1")
        assert loaded.status is DeliveryStatus.RETRYING
        assert loaded.attempts == 1
        assert loaded.next_retry_at == NOW + timedelta(seconds=5)
        assert loaded.last_response == DeliveryResponse(500, "error")
        assert loaded.last_error == "HTTP 500"
        assert loaded.event.event_id == "evt-1"
        assert await storage.get_delivery(record.id, "T2") is None

    async def test_list_filters_and_paginates(self, storage, make_subscription):
        """Test status filter, pagination and newest-first order."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        for i in range(5):
            record, _ = await storage.create_delivery(_record(sub, event_id=f"evt-{i}"))
            if i % 2 == 0:
                await storage.save_delivery(replace(record, status=DeliveryStatus.SUCCESS, attempts=1))

        page = await storage.list_deliveries("T1", sub.id, limit=2, offset=0)
        assert [r.event.event_id for r in page] == ["evt-4", "evt-3"]

        succeeded = await storage.list_deliveries("T1", sub.id, status=DeliveryStatus.SUCCESS)
        assert {r.event.event_id for r in succeeded} == {"evt-0", "evt-2", "evt-4"}
        assert await storage.count_deliveries("T1", sub.id, DeliveryStatus.PENDING) == 2

    async def test_due_retries(self, storage, make_subscription):
        """Test that only due retrying records of active subscriptions are returned."""
        active = make_subscription()
        paused = make_subscription(is_active=False)
        await storage.save_subscription(active)
        await storage.save_subscription(paused)

        async def retrying(sub, event_id, due_at):
            record, _ = await storage.create_delivery(_record(sub, event_id=event_id))
            await storage.save_delivery(
                replace(record, status=DeliveryStatus.RETRYING, attempts=1, next_retry_at=due_at)
            )

        await retrying(active, "due", NOW - timedelta(seconds=1))
        await retrying(active, "later", NOW + timedelta(seconds=60))
        await retrying(paused, "paused", NOW - timedelta(seconds=1))

        due = await storage.get_due_retries(NOW)
        assert [r.event.event_id for r in due] == ["due"]

    async def test_claim_is_exclusive(self, storage, make_subscription):
        """Test that a record can be claimed once until the lease runs out."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        record, _ = await storage.create_delivery(_record(sub))
        lease = NOW + timedelta(seconds=60)

        assert await storage.claim_delivery(record, "a", NOW, lease) is True
        assert await storage.claim_delivery(record, "b", NOW, lease) is False
        assert await storage.claim_delivery(record, "b", NOW + timedelta(seconds=59), lease) is False

        expired = NOW + timedelta(seconds=61)
        assert await storage.claim_delivery(record, "b", expired, expired + timedelta(seconds=60)) is True

    async def test_claim_requires_unchanged_record(self, storage, make_subscription):
        """Test that a snapshot with an old status or attempt count cannot be claimed."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        record, _ = await storage.create_delivery(_record(sub))
        await storage.save_delivery(replace(record, status=DeliveryStatus.SUCCESS, attempts=1))

        assert await storage.claim_delivery(record, "a", NOW, NOW + timedelta(seconds=60)) is False

    async def test_save_requires_held_claim(self, storage, make_subscription):
        """Test that a result is only written by the holder of the claim."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        record, _ = await storage.create_delivery(_record(sub))
        assert await storage.claim_delivery(record, "a", NOW, NOW + timedelta(seconds=60))

        failed = replace(record, status=DeliveryStatus.FAILED, attempts=1)
        assert await storage.save_delivery(failed, claim_token="b") is False
        assert (await storage.get_delivery(record.id)).status is DeliveryStatus.PENDING

        succeeded = replace(record, status=DeliveryStatus.SUCCESS, attempts=1)
        assert await storage.save_delivery(succeeded, claim_token="a") is True
        assert (await storage.get_delivery(record.id)).status is DeliveryStatus.SUCCESS

        # The claim is released with the write.
        assert await storage.save_delivery(failed, claim_token="a") is False

    async def test_due_retries_skip_claimed(self, storage, make_subscription):
        """Test that a record claimed by another attempt is not handed out as due."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        record, _ = await storage.create_delivery(_record(sub))
        record = replace(
            record, status=DeliveryStatus.RETRYING, attempts=1, next_retry_at=NOW - timedelta(seconds=1)
        )
        await storage.save_delivery(record)

        assert await storage.claim_delivery(record, "a", NOW, NOW + timedelta(seconds=60))
        assert await storage.get_due_retries(NOW) == []
        assert len(await storage.get_due_retries(NOW + timedelta(seconds=61))) == 1

    async def test_clear(self, storage, make_subscription):
        """Test clearing all data."""
        sub = make_subscription()
        await storage.save_subscription(sub)
        await storage.create_delivery(_record(sub))
        await storage.clear()
        assert await storage.list_subscriptions("T1") == []
