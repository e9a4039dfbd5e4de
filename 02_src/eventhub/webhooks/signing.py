"""Webhook request signing and verification.

Signature = ``sha256=`` + hex HMAC-SHA256(secret, "<timestamp>.<body>"),
where ``timestamp`` is the ``X-Webhook-Timestamp`` header value (epoch
milliseconds) and ``body`` the exact bytes sent.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Mapping

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"

_RESERVED_HEADERS = {
    h.lower()
    for h in (SIGNATURE_HEADER, TIMESTAMP_HEADER, EVENT_HEADER, DELIVERY_HEADER, "Content-Type")
}


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(secret: str, timestamp: int | str, body: str | bytes) -> str:
    """Signature header value for ``body`` sent at ``timestamp``."""
    message = _to_bytes(str(timestamp)) + b"." + _to_bytes(body)
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_body(event_type: str, payload: Mapping[str, Any], timestamp: int) -> str:
    """JSON body of a webhook callback."""
    return json.dumps(
        {"event": event_type, "payload": payload, "timestamp": timestamp},
        separators=(",", ":"),
        default=str,
    )


def build_headers(
    *,
    secret: str,
    body: str,
    timestamp: int,
    event_type: str,
    delivery_id: str,
    extra_headers: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Request headers; subscription headers cannot override the signed ones."""
    headers = {
        name: value
        for name, value in (extra_headers or {}).items()
        if name.lower() not in _RESERVED_HEADERS
    }
    headers.update(
        {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: compute_signature(secret, timestamp, body),
            TIMESTAMP_HEADER: str(timestamp),
            EVENT_HEADER: event_type,
            DELIVERY_HEADER: delivery_id,
        }
    )
    return headers


def verify_signature(
    secret: str,
    signature: str | None,
    timestamp: str | None,
    body: str | bytes,
    tolerance_seconds: int | None = 300,
    now: float | None = None,
) -> bool:
    """Check a received callback.

    Recomputes the signature in constant time and rejects timestamps more
    than ``tolerance_seconds`` away from ``now`` (replay window). Pass
    ``tolerance_seconds=None`` to skip the window check.
    """
    if not signature or not timestamp:
        return False

    try:
        sent_at_ms = int(timestamp)
    except (TypeError, ValueError):
        return False

    if tolerance_seconds is not None:
        current = time.time() if now is None else now
        if abs(current - sent_at_ms / 1000) > tolerance_seconds:
            return False

    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
