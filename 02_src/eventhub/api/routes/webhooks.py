"""Webhook administration routes."""

import secrets
import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from ...errors import DeliveryNotFoundError, DeliveryStateError, SubscriptionNotFoundError
from ...logging_config import get_logger
from ...models import (
    DeliveryRecord,
    DeliveryStatus,
    RetryPolicy,
    SubscriptionFilter,
    WebhookSubscription,
)
from ...webhooks import SUPPORTED_OPERATORS, TEST_EVENT, WEBHOOK_EVENTS

logger = get_logger(__name__)


def generate_secret() -> str:
    return secrets.token_hex(32)


def _validate_events(events: list[str]) -> list[str]:
    known = set(WEBHOOK_EVENTS) | {TEST_EVENT}
    for pattern in events:
        if "*" in pattern or "#" in pattern:
            continue
        if pattern not in known:
            raise ValueError(f"Unknown event type: {pattern}")
    return events


def _validate_url(url: str) -> str:
    if not url.startswith(("http://", "https://")):
        raise ValueError("url must be an http(s) URL")
    return url


class FilterModel(BaseModel):
    """A payload filter."""

    field: str = Field(min_length=1)
    operator: str
    value: Any = None

    @field_validator("operator")
    @classmethod
    def known_operator(cls, value: str) -> str:
        if value not in SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported operator: {value}")
        return value


class RetryPolicyModel(BaseModel):
    """Retry schedule; delays in seconds."""

    max_retries: int = Field(default=3, ge=1, le=20)
    initial_delay: float = Field(default=5.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)


class CreateWebhookRequest(BaseModel):
    """Request model for registering a webhook."""

    name: str = Field(min_length=1)
    url: str
    events: list[str] = Field(min_length=1)
    description: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    filters: list[FilterModel] = Field(default_factory=list)
    retry_policy: RetryPolicyModel = Field(default_factory=RetryPolicyModel)
    is_active: bool = True

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _validate_url(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[str]) -> list[str]:
        return _validate_events(value)


class UpdateWebhookRequest(BaseModel):
    """Request model for updating a webhook; omitted fields stay unchanged."""

    name: str | None = Field(default=None, min_length=1)
    url: str | None = None
    events: list[str] | None = Field(default=None, min_length=1)
    description: str | None = None
    headers: dict[str, str] | None = None
    filters: list[FilterModel] | None = None
    retry_policy: RetryPolicyModel | None = None
    is_active: bool | None = None

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str | None) -> str | None:
        return value if value is None else _validate_url(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[str] | None) -> list[str] | None:
        return value if value is None else _validate_events(value)


class WebhookResponse(BaseModel):
    """A webhook as returned to admins (secret omitted)."""

    id: str
    tenant_id: str
    name: str
    url: str
    events: list[str]
    description: str | None
    is_active: bool
    headers: dict[str, str]
    filters: list[FilterModel]
    retry_policy: RetryPolicyModel
    success_count: int
    failure_count: int
    last_triggered_at: datetime | None
    created_by: str | None
    created_at: datetime | None
    updated_at: datetime | None


class WebhookWithSecretResponse(WebhookResponse):
    """Returned on create only."""

    secret: str


class SecretResponse(BaseModel):
    """Response model for secret regeneration."""

    id: str
    secret: str


class DeliveryResponseModel(BaseModel):
    """A delivery ledger entry."""

    id: str
    subscription_id: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    status: DeliveryStatus
    attempts: int
    last_attempt_at: datetime | None
    next_retry_at: datetime | None
    response_status: int | None
    response_body: str | None
    last_error: str | None
    duration_ms: int | None
    created_at: datetime | None


class DeliveryListResponse(BaseModel):
    """Paginated delivery history."""

    deliveries: list[DeliveryResponseModel]
    total: int
    limit: int
    offset: int


class EventCatalogResponse(BaseModel):
    """Event types available for subscription."""

    events: list[str]


class StatusResponse(BaseModel):
    """Response model for status."""

    status: str


def _to_response(subscription: WebhookSubscription) -> dict[str, Any]:
    return {
        "id": subscription.id,
        "tenant_id": subscription.tenant_id,
        "name": subscription.name,
        "url": subscription.url,
        "events": list(subscription.events),
        "description": subscription.description,
        "is_active": subscription.is_active,
        "headers": dict(subscription.headers),
        "filters": [
            {"field": f.field, "operator": f.operator, "value": f.value}
            for f in subscription.filters
        ],
        "retry_policy": {
            "max_retries": subscription.retry_policy.max_retries,
            "initial_delay": subscription.retry_policy.initial_delay,
            "backoff_multiplier": subscription.retry_policy.backoff_multiplier,
        },
        "success_count": subscription.success_count,
        "failure_count": subscription.failure_count,
        "last_triggered_at": subscription.last_triggered_at,
        "created_by": subscription.created_by,
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


def _delivery_to_response(record: DeliveryRecord) -> dict[str, Any]:
    response = record.last_response
    return {
        "id": record.id,
        "subscription_id": record.subscription_id,
        "event_id": record.event.event_id,
        "event_type": record.event.event_type,
        "payload": record.event.payload_dict(),
        "status": record.status,
        "attempts": record.attempts,
        "last_attempt_at": record.last_attempt_at,
        "next_retry_at": record.next_retry_at,
        "response_status": response.status_code if response else None,
        "response_body": response.body if response else None,
        "last_error": record.last_error,
        "duration_ms": record.duration_ms,
        "created_at": record.created_at,
    }


def create_webhooks_router(app) -> APIRouter:
    """Create webhook administration router."""
    router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

    async def _get_or_404(tenant_id: str, webhook_id: str) -> WebhookSubscription:
        subscription = await app.storage.get_subscription(webhook_id, tenant_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="Webhook not found")
        return subscription

    @router.get("/events", response_model=EventCatalogResponse)
    async def list_event_types() -> dict:
        """List event types available for subscription."""
        return {"events": list(WEBHOOK_EVENTS)}

    @router.post("/deliveries/{delivery_id}/retry", response_model=DeliveryResponseModel)
    async def retry_delivery(
        delivery_id: str, x_tenant_id: str = Header(...)
    ) -> dict:
        """Attempt a failed or retrying delivery immediately."""
        try:
            record = await app.dispatcher.force_retry(x_tenant_id, delivery_id)
            return _delivery_to_response(record)
        except (DeliveryNotFoundError, SubscriptionNotFoundError) as e:
            raise HTTPException(status_code=404, detail=str(e))
        except DeliveryStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("", response_model=WebhookWithSecretResponse, status_code=201)
    async def create_webhook(
        request: CreateWebhookRequest,
        x_tenant_id: str = Header(...),
        x_user_id: str | None = Header(default=None),
    ) -> dict:
        """Register a webhook. The secret is only returned here."""
        subscription = WebhookSubscription(
            id=str(uuid.uuid4()),
            tenant_id=x_tenant_id,
            url=request.url,
            secret=generate_secret(),
            events=list(request.events),
            name=request.name,
            description=request.description,
            is_active=request.is_active,
            headers=dict(request.headers),
            filters=[SubscriptionFilter(**f.model_dump()) for f in request.filters],
            retry_policy=RetryPolicy(**request.retry_policy.model_dump()),
            created_by=x_user_id,
        )
        try:
            await app.storage.save_subscription(subscription)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        logger.info(
            "Webhook %s created for %s",
            subscription.id,
            subscription.url,
            extra={"context": {"tenant_id": x_tenant_id, "events": subscription.events}},
        )
        return {**_to_response(subscription), "secret": subscription.secret}

    @router.get("", response_model=list[WebhookResponse])
    async def list_webhooks(x_tenant_id: str = Header(...)) -> list:
        """List the tenant's webhooks."""
        try:
            subscriptions = await app.storage.list_subscriptions(x_tenant_id)
            return [_to_response(s) for s in subscriptions]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/{webhook_id}", response_model=WebhookResponse)
    async def get_webhook(webhook_id: str, x_tenant_id: str = Header(...)) -> dict:
        """Get one webhook."""
        return _to_response(await _get_or_404(x_tenant_id, webhook_id))

    @router.put("/{webhook_id}", response_model=WebhookResponse)
    async def update_webhook(
        webhook_id: str,
        request: UpdateWebhookRequest,
        x_tenant_id: str = Header(...),
    ) -> dict:
        """Update a webhook's editable fields."""
        subscription = await _get_or_404(x_tenant_id, webhook_id)

        changes = request.model_dump(exclude_unset=True)
        for name in ("name", "url", "events", "headers", "is_active"):
            if name in changes and changes[name] is not None:
                setattr(subscription, name, changes[name])
        if "description" in changes:
            subscription.description = changes["description"]
        if request.filters is not None:
            subscription.filters = [SubscriptionFilter(**f.model_dump()) for f in request.filters]
        if request.retry_policy is not None:
            subscription.retry_policy = RetryPolicy(**request.retry_policy.model_dump())

        try:
            await app.storage.save_subscription(subscription)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return _to_response(subscription)

    @router.delete("/{webhook_id}", response_model=StatusResponse)
    async def delete_webhook(webhook_id: str, x_tenant_id: str = Header(...)) -> dict:
        """Delete a webhook and its delivery history."""
        try:
            deleted = await app.storage.delete_subscription(x_tenant_id, webhook_id)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        if not deleted:
            raise HTTPException(status_code=404, detail="Webhook not found")
        return {"status": "ok"}

    @router.post("/{webhook_id}/regenerate-secret", response_model=SecretResponse)
    async def regenerate_secret(webhook_id: str, x_tenant_id: str = Header(...)) -> dict:
        """Replace the signing secret; the old one stops working immediately."""
        subscription = await _get_or_404(x_tenant_id, webhook_id)
        subscription.secret = generate_secret()
        try:
            await app.storage.save_subscription(subscription)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"id": subscription.id, "secret": subscription.secret}

    @router.post("/{webhook_id}/test", response_model=DeliveryResponseModel)
    async def test_webhook(webhook_id: str, x_tenant_id: str = Header(...)) -> dict:
        """Send a test.ping delivery to the webhook."""
        try:
            record = await app.dispatcher.send_test(x_tenant_id, webhook_id)
            return _delivery_to_response(record)
        except SubscriptionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/{webhook_id}/deliveries", response_model=DeliveryListResponse)
    async def list_deliveries(
        webhook_id: str,
        x_tenant_id: str = Header(...),
        status: DeliveryStatus | None = Query(default=None),
        limit: int = Query(default=20, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
    ) -> dict:
        """Delivery history of a webhook, newest first."""
        await _get_or_404(x_tenant_id, webhook_id)
        try:
            records = await app.storage.list_deliveries(
                x_tenant_id, webhook_id, status=status, limit=limit, offset=offset
            )
            total = await app.storage.count_deliveries(x_tenant_id, webhook_id, status=status)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {
            "deliveries": [_delivery_to_response(r) for r in records],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    return router
