"""Webhook dispatcher.

Consumes envelopes from the webhook queue, fans each one out to the
tenant's matching subscriptions, performs signed HTTP deliveries and
retries failed ones from a periodic sweep of the delivery ledger.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Callable, Protocol

import httpx

from ..errors import (
    DeliveryNotFoundError,
    DeliveryStateError,
    SubscriptionNotFoundError,
)
from ..logging_config import get_logger, log_context
from ..models import (
    AttemptOutcome,
    DeliveryRecord,
    DeliveryStatus,
    EventEnvelope,
    WebhookSubscription,
    utcnow,
)
from ..storage import IStorage
from .catalog import TEST_EVENT
from .filters import subscription_matches
from .signing import build_body, build_headers
from .state import apply_outcome, can_attempt

logger = get_logger(__name__)

DISPATCHER_SOURCE = "webhook-dispatcher"

# Extra lease time past the request timeout before a claim can be taken over.
CLAIM_GRACE_SECONDS = 30


def delivery_id_for(subscription_id: str, event_id: str) -> str:
    """Stable delivery id, so a redelivered event maps to the same record."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"eventhub:delivery:{subscription_id}:{event_id}"))


class IWebhookDispatcher(Protocol):
    """Webhook delivery interface."""

    async def start(self) -> None:
        """Start the retry sweep."""
        ...

    async def stop(self) -> None:
        """Stop the sweep and close the HTTP client."""
        ...

    async def on_event(self, envelope: EventEnvelope) -> list[DeliveryRecord]:
        """Deliver an envelope to every matching subscription."""
        ...

    async def sweep_once(self) -> int:
        """Attempt every due retry once."""
        ...

    async def force_retry(self, tenant_id: str, delivery_id: str) -> DeliveryRecord:
        """Attempt a delivery now, regardless of its schedule."""
        ...

    async def send_test(self, tenant_id: str, subscription_id: str) -> DeliveryRecord:
        """Send a test.ping to one subscription."""
        ...


class WebhookDispatcher:
    """Delivers events to tenant webhook endpoints."""

    def __init__(
        self,
        storage: IStorage,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float = 30.0,
        sweep_interval: float = 60.0,
        max_in_flight_per_subscription: int = 4,
        sweep_batch_size: int = 100,
        clock: Callable = utcnow,
    ):
        self._storage = storage
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = request_timeout
        self._sweep_interval = sweep_interval
        self._max_in_flight = max(1, max_in_flight_per_subscription)
        self._sweep_batch_size = sweep_batch_size
        self._clock = clock

        self._in_flight: set[str] = set()
        # subscription id -> [semaphore, holders]
        self._slots: dict[str, list] = {}
        self._sweep_task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the periodic retry sweep."""
        self._http()
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="webhook-sweep")
        logger.info("Webhook dispatcher started (sweep every %ss)", self._sweep_interval)

    async def stop(self) -> None:
        """Stop the sweep; close the HTTP client if we created it."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Webhook dispatcher stopped")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    @asynccontextmanager
    async def _slot(self, subscription_id: str) -> AsyncIterator[None]:
        """Hold one of the subscription's in-flight slots.

        The entry is dropped once no attempt holds or waits for it.
        """
        slot = self._slots.get(subscription_id)
        if slot is None:
            slot = [asyncio.Semaphore(self._max_in_flight), 0]
            self._slots[subscription_id] = slot
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                del self._slots[subscription_id]

    # ------------------------------------------------------------------
    # Queue consumer
    # ------------------------------------------------------------------

    async def on_event(self, envelope: EventEnvelope) -> list[DeliveryRecord]:
        """Handle one envelope from the webhook queue.

        Raises if the ledger cannot be written, so the broker redelivers the
        envelope; endpoint failures are recorded, not raised.
        """
        subscriptions = await self._storage.get_active_subscriptions(envelope.tenant_id)
        matched = [s for s in subscriptions if subscription_matches(s, envelope)]
        if not matched:
            logger.debug(
                "No webhook subscriptions match %s",
                envelope.event_type,
                extra={"context": {"tenant_id": envelope.tenant_id}},
            )
            return []

        results = await asyncio.gather(
            *(self._dispatch_to(s, envelope) for s in matched),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]
        return list(results)

    async def _dispatch_to(
        self, subscription: WebhookSubscription, envelope: EventEnvelope
    ) -> DeliveryRecord:
        record = DeliveryRecord(
            id=delivery_id_for(subscription.id, envelope.event_id),
            subscription_id=subscription.id,
            tenant_id=envelope.tenant_id,
            event=envelope,
        )
        stored, created = await self._storage.create_delivery(record)
        if not created:
            logger.info(
                "Event %s already recorded for subscription %s (%s)",
                envelope.event_id,
                subscription.id,
                stored.status.value,
            )
        if stored.status is not DeliveryStatus.PENDING:
            return stored
        return await self.deliver(stored, subscription)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(
        self,
        record: DeliveryRecord,
        subscription: WebhookSubscription,
        manual: bool = False,
    ) -> DeliveryRecord:
        """Make one attempt, persist the result and update counters.

        ``record`` may be an old snapshot. The attempt only goes out if the
        ledger row still has the same status and attempt count and nobody
        else holds it; otherwise the stored record is returned untouched.
        """
        if not can_attempt(record, manual):
            return record
        if record.id in self._in_flight:
            logger.debug("Delivery %s already in flight", record.id)
            return record

        updated = await self._attempt(record, subscription, manual)
        if updated is not None:
            return updated
        current = await self._storage.get_delivery(record.id)
        return current if current is not None else record

    async def _attempt(
        self,
        record: DeliveryRecord,
        subscription: WebhookSubscription,
        manual: bool,
    ) -> DeliveryRecord | None:
        """Claim, send and save. Returns None if the claim or the save was lost."""
        token = uuid.uuid4().hex
        now = self._clock()
        lease_until = now + timedelta(seconds=self._timeout + CLAIM_GRACE_SECONDS)
        if not await self._storage.claim_delivery(record, token, now, lease_until):
            logger.debug(
                "Delivery %s changed or is claimed elsewhere, skipping",
                record.id,
                extra=log_context(tenant_id=record.tenant_id, subscription_id=subscription.id),
            )
            return None

        self._in_flight.add(record.id)
        try:
            async with self._slot(subscription.id):
                outcome = await self._send(record, subscription)

            now = self._clock()
            updated = apply_outcome(record, outcome, subscription.retry_policy, now, manual=manual)
            try:
                saved = await self._storage.save_delivery(updated, claim_token=token)
            except Exception:
                await self._release(record, token)
                raise
            if not saved:
                logger.warning(
                    "Delivery %s result discarded, claim expired before it was saved",
                    record.id,
                    extra=log_context(
                        tenant_id=record.tenant_id,
                        subscription_id=subscription.id,
                        status_code=outcome.status_code,
                    ),
                )
                return None

            if updated.status is DeliveryStatus.SUCCESS:
                await self._storage.record_delivery_result(subscription.id, True, now)
            elif updated.status is DeliveryStatus.FAILED and record.status is not DeliveryStatus.FAILED:
                await self._storage.record_delivery_result(subscription.id, False, now)

            log = logger.info if updated.status is DeliveryStatus.SUCCESS else logger.warning
            log(
                "Delivery %s to %s: %s (attempt %s)",
                updated.id,
                subscription.url,
                updated.status.value,
                updated.attempts,
                extra=log_context(
                    tenant_id=updated.tenant_id,
                    subscription_id=subscription.id,
                    event_id=updated.event.event_id,
                    status_code=outcome.status_code,
                    error=outcome.error,
                    duration_ms=outcome.duration_ms,
                ),
            )
            return updated
        finally:
            self._in_flight.discard(record.id)

    async def _release(self, record: DeliveryRecord, token: str) -> None:
        """Give back a claim by writing the unchanged record, so a redelivery can retry it."""
        try:
            await self._storage.save_delivery(record, claim_token=token)
        except Exception as e:
            logger.error("Could not release claim on delivery %s: %s", record.id, e)

    async def _send(
        self, record: DeliveryRecord, subscription: WebhookSubscription
    ) -> AttemptOutcome:
        """POST the signed body. Never raises for endpoint or network errors."""
        event = record.event
        timestamp = int(self._clock().timestamp() * 1000)
        body = build_body(event.event_type, event.payload_dict(), timestamp)
        headers = build_headers(
            secret=subscription.secret,
            body=body,
            timestamp=timestamp,
            event_type=event.event_type,
            delivery_id=record.id,
            extra_headers=subscription.headers,
        )

        started = time.monotonic()
        try:
            response = await self._http().post(
                subscription.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self._timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return AttemptOutcome(
                error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        return AttemptOutcome(
            status_code=response.status_code,
            body=response.text,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # ------------------------------------------------------------------
    # Retry sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._sweep_interval)
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Retry sweep failed: %s", e, exc_info=True)

    async def sweep_once(self) -> int:
        """Attempt every retrying delivery whose next_retry_at has passed."""
        due = await self._storage.get_due_retries(self._clock(), limit=self._sweep_batch_size)
        if not due:
            return 0

        subscriptions: dict[str, WebhookSubscription | None] = {}
        jobs = []
        for record in due:
            if record.subscription_id not in subscriptions:
                subscriptions[record.subscription_id] = await self._storage.get_subscription(
                    record.subscription_id
                )
            subscription = subscriptions[record.subscription_id]
            if subscription is None or not subscription.is_active:
                continue
            jobs.append(self.deliver(record, subscription))

        results = await asyncio.gather(*jobs, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Retry attempt failed: %s", result)

        logger.info("Retry sweep attempted %s deliveries", len(jobs))
        return len(jobs)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def force_retry(self, tenant_id: str, delivery_id: str) -> DeliveryRecord:
        """Attempt a non-successful delivery immediately."""
        record = await self._storage.get_delivery(delivery_id, tenant_id)
        if record is None:
            raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
        if record.status is DeliveryStatus.SUCCESS:
            raise DeliveryStateError(f"Delivery {delivery_id} already succeeded")

        subscription = await self._storage.get_subscription(record.subscription_id, tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {record.subscription_id} not found")
        if not subscription.is_active:
            raise DeliveryStateError(f"Subscription {subscription.id} is inactive")

        if record.id in self._in_flight:
            raise DeliveryStateError(f"Delivery {delivery_id} is already in flight")

        updated = await self._attempt(
            record, subscription, manual=record.status is DeliveryStatus.FAILED
        )
        if updated is None:
            raise DeliveryStateError(f"Delivery {delivery_id} is being attempted elsewhere")
        return updated

    async def send_test(self, tenant_id: str, subscription_id: str) -> DeliveryRecord:
        """Deliver a test.ping to one subscription, bypassing its event patterns."""
        subscription = await self._storage.get_subscription(subscription_id, tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        envelope = EventEnvelope.create(
            TEST_EVENT,
            tenant_id,
            {
                "message": "This is a test webhook delivery",
                "subscriptionId": subscription.id,
            },
            source=DISPATCHER_SOURCE,
        )
        return await self._dispatch_to(subscription, envelope)
