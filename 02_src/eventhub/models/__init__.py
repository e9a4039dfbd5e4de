"""Core data models for the event hub."""

from .events import EventEnvelope, derive_event_id, utcnow
from .realtime import (
    ClientIdentity,
    ClientMessageType,
    ConnectionState,
    PresenceEntry,
    RealtimeMessage,
    Route,
    RouteKind,
    ServerEvent,
)
from .webhooks import (
    AttemptOutcome,
    DeliveryRecord,
    DeliveryResponse,
    DeliveryStatus,
    RetryPolicy,
    SubscriptionFilter,
    WebhookSubscription,
)

__all__ = [
    # Events
    "EventEnvelope",
    "derive_event_id",
    "utcnow",
    # Webhooks
    "AttemptOutcome",
    "DeliveryRecord",
    "DeliveryResponse",
    "DeliveryStatus",
    "RetryPolicy",
    "SubscriptionFilter",
    "WebhookSubscription",
    # Realtime
    "ClientIdentity",
    "ClientMessageType",
    "ConnectionState",
    "PresenceEntry",
    "RealtimeMessage",
    "Route",
    "RouteKind",
    "ServerEvent",
]
