"""Webhook subscription and delivery ledger models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .events import EventEnvelope

RESPONSE_BODY_LIMIT = 1000


class DeliveryStatus(str, Enum):
    """Status of a webhook delivery record."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


@dataclass
class RetryPolicy:
    """Retry schedule of a subscription. Delays are in seconds."""

    max_retries: int = 3
    initial_delay: float = 5.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failed ones."""
        return self.initial_delay * self.backoff_multiplier ** (attempts - 1)


@dataclass
class SubscriptionFilter:
    """A field/operator/value predicate evaluated against the event payload."""

    field: str
    operator: str
    value: Any = None


@dataclass
class WebhookSubscription:
    """A tenant's registered webhook endpoint."""

    id: str
    tenant_id: str
    url: str
    secret: str
    events: list[str]
    name: str = ""
    description: str | None = None
    is_active: bool = True
    headers: dict[str, str] = field(default_factory=dict)
    filters: list[SubscriptionFilter] = field(default_factory=list)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    success_count: int = 0
    failure_count: int = 0
    last_triggered_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class DeliveryResponse:
    """What the endpoint answered on the last attempt."""

    status_code: int
    body: str = ""

    @classmethod
    def truncated(cls, status_code: int, body: str) -> "DeliveryResponse":
        return cls(status_code=status_code, body=body[:RESPONSE_BODY_LIMIT])


@dataclass
class DeliveryRecord:
    """One delivery of one event to one subscription."""

    id: str
    subscription_id: str
    tenant_id: str
    event: EventEnvelope
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_response: DeliveryResponse | None = None
    last_error: str | None = None
    duration_ms: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class AttemptOutcome:
    """Result of a single HTTP delivery attempt."""

    status_code: int | None = None
    body: str = ""
    error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300
