"""HRM event hub: webhook delivery and realtime push for domain events."""

from .app import Application, IApplication
from .broker import EventPublisher, IBroker, InMemoryBroker, RedisStreamsBroker
from .config import Settings
from .errors import (
    AuthenticationError,
    BrokerUnavailableError,
    DeliveryNotFoundError,
    DeliveryStateError,
    EventHubError,
    InvalidTransitionError,
    MalformedEnvelopeError,
    SubscriptionNotFoundError,
)
from .models import (
    DeliveryRecord,
    DeliveryStatus,
    EventEnvelope,
    RetryPolicy,
    SubscriptionFilter,
    WebhookSubscription,
)
from .realtime import RealtimeGateway
from .storage import IStorage, Storage
from .webhooks import WebhookDispatcher, verify_signature

__all__ = [
    # Application
    "Application",
    "IApplication",
    "Settings",
    # Models
    "EventEnvelope",
    "DeliveryRecord",
    "DeliveryStatus",
    "RetryPolicy",
    "SubscriptionFilter",
    "WebhookSubscription",
    # Components
    "IBroker",
    "InMemoryBroker",
    "RedisStreamsBroker",
    "EventPublisher",
    "IStorage",
    "Storage",
    "WebhookDispatcher",
    "RealtimeGateway",
    "verify_signature",
    # Errors
    "EventHubError",
    "MalformedEnvelopeError",
    "BrokerUnavailableError",
    "SubscriptionNotFoundError",
    "DeliveryNotFoundError",
    "DeliveryStateError",
    "AuthenticationError",
    "InvalidTransitionError",
]
