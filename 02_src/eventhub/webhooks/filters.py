"""Subscription matching: event-type patterns and payload filters."""

import operator
from typing import Any, Callable, Iterable, Mapping

from ..broker.topology import topic_matches
from ..logging_config import get_logger
from ..models import EventEnvelope, SubscriptionFilter, WebhookSubscription

logger = get_logger(__name__)

_MISSING = object()


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return False


def _is_in(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple)) and actual in expected


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "in": _is_in,
    "not_in": lambda actual, expected: not _is_in(actual, expected),
    "contains": _contains,
}

_ALIASES = {
    "equals": "eq",
    "not_equals": "ne",
    "greater_than": "gt",
    "less_than": "lt",
}

SUPPORTED_OPERATORS = frozenset({*OPERATORS, *_ALIASES, "exists"})


def resolve_field(payload: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted path (``employee.department``) in the payload."""
    current: Any = payload
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def evaluate_filter(flt: SubscriptionFilter, payload: Mapping[str, Any]) -> bool:
    """Evaluate one predicate; unknown operators and type mismatches are False."""
    op_name = _ALIASES.get(flt.operator, flt.operator)
    actual = resolve_field(payload, flt.field)

    if op_name == "exists":
        return (actual is not _MISSING) == bool(True if flt.value is None else flt.value)

    if actual is _MISSING:
        return op_name in ("ne", "not_in")

    op = OPERATORS.get(op_name)
    if op is None:
        logger.warning("Unknown filter operator %s on field %s", flt.operator, flt.field)
        return False

    try:
        return bool(op(actual, flt.value))
    except TypeError:
        return False


def matches_filters(filters: Iterable[SubscriptionFilter], payload: Mapping[str, Any]) -> bool:
    """All filters must hold (an empty list always matches)."""
    return all(evaluate_filter(flt, payload) for flt in filters)


def matches_events(patterns: Iterable[str], event_type: str) -> bool:
    """True if any subscribed pattern matches the event type."""
    return any(topic_matches(pattern, event_type) for pattern in patterns)


def subscription_matches(subscription: WebhookSubscription, envelope: EventEnvelope) -> bool:
    """Should ``envelope`` be delivered to ``subscription``?"""
    return (
        subscription.is_active
        and subscription.tenant_id == envelope.tenant_id
        and matches_events(subscription.events, envelope.event_type)
        and matches_filters(subscription.filters, envelope.payload_dict())
    )
