"""Webhook delivery: matching, signing, retry state and the dispatcher."""

from .catalog import TEST_EVENT, WEBHOOK_EVENTS
from .dispatcher import IWebhookDispatcher, WebhookDispatcher, delivery_id_for
from .filters import (
    SUPPORTED_OPERATORS,
    evaluate_filter,
    matches_events,
    matches_filters,
    subscription_matches,
)
from .signing import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_body,
    build_headers,
    compute_signature,
    verify_signature,
)
from .state import apply_outcome, can_attempt, is_permanent_failure

__all__ = [
    "IWebhookDispatcher",
    "WebhookDispatcher",
    "delivery_id_for",
    "TEST_EVENT",
    "WEBHOOK_EVENTS",
    "SUPPORTED_OPERATORS",
    "evaluate_filter",
    "matches_events",
    "matches_filters",
    "subscription_matches",
    "DELIVERY_HEADER",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "build_body",
    "build_headers",
    "compute_signature",
    "verify_signature",
    "apply_outcome",
    "can_attempt",
    "is_permanent_failure",
]
