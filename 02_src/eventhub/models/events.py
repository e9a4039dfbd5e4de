"""Event envelope: the unit every producer emits and every consumer receives."""

import copy
import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from ..errors import MalformedEnvelopeError

# camelCase wire key -> attribute name
_WIRE_KEYS = {
    "eventId": "event_id",
    "eventType": "event_type",
    "tenantId": "tenant_id",
    "targetUserId": "target_user_id",
    "roomId": "room_id",
}


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def _parse_timestamp(raw: Any) -> datetime:
    if raw is None:
        return utcnow()
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, (int, float)):
        ts = datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    else:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def derive_event_id(
    event_type: str,
    tenant_id: str,
    payload: Mapping[str, Any],
    target_user_id: str | None,
    room_id: str | None,
    timestamp: datetime,
) -> str:
    """Stable identity for envelopes published without an explicit id."""
    canonical = json.dumps(
        {
            "eventType": event_type,
            "tenantId": tenant_id,
            "payload": _thaw(payload),
            "targetUserId": target_user_id,
            "roomId": room_id,
            "timestamp": timestamp.isoformat(),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EventEnvelope:
    """An immutable domain event scoped to one tenant.

    The payload is opaque at this layer; producers and consumers agree on
    its shape per ``event_type``.
    """

    event_type: str
    tenant_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    target_user_id: str | None = None
    room_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str = ""
    source: str | None = None

    def __hash__(self) -> int:
        return hash(self.event_id)

    def __post_init__(self) -> None:
        if not self.event_type or not self.tenant_id:
            raise MalformedEnvelopeError("event_type and tenant_id are required")
        object.__setattr__(self, "payload", _freeze(copy.deepcopy(_thaw(self.payload))))
        object.__setattr__(self, "timestamp", _parse_timestamp(self.timestamp))
        if not self.event_id:
            object.__setattr__(
                self,
                "event_id",
                derive_event_id(
                    self.event_type,
                    self.tenant_id,
                    self.payload,
                    self.target_user_id,
                    self.room_id,
                    self.timestamp,
                ),
            )

    @classmethod
    def create(
        cls,
        event_type: str,
        tenant_id: str,
        payload: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> "EventEnvelope":
        """Build a new envelope with a fresh random event id."""
        kwargs.setdefault("event_id", str(uuid.uuid4()))
        return cls(event_type=event_type, tenant_id=tenant_id, payload=payload or {}, **kwargs)

    @property
    def domain(self) -> str:
        """First segment of the event type (``leave`` for ``leave.approved``)."""
        return self.event_type.split(".", 1)[0]

    def payload_dict(self) -> dict[str, Any]:
        """Mutable deep copy of the payload."""
        return _thaw(self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format."""
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "tenantId": self.tenant_id,
            "payload": self.payload_dict(),
            "targetUserId": self.target_user_id,
            "roomId": self.room_id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EventEnvelope":
        """Parse the wire format; snake_case keys are accepted too."""
        if not isinstance(data, Mapping):
            raise MalformedEnvelopeError("envelope must be a JSON object")

        normalized = {_WIRE_KEYS.get(key, key): value for key, value in data.items()}
        payload = normalized.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise MalformedEnvelopeError("payload must be a JSON object")

        try:
            return cls(
                event_type=str(normalized.get("event_type") or ""),
                tenant_id=str(normalized.get("tenant_id") or ""),
                payload=payload,
                target_user_id=normalized.get("target_user_id"),
                room_id=normalized.get("room_id"),
                timestamp=normalized.get("timestamp"),
                event_id=str(normalized.get("event_id") or ""),
                source=normalized.get("source"),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, MalformedEnvelopeError):
                raise
            raise MalformedEnvelopeError(f"invalid envelope: {e}") from e

    @classmethod
    def from_json(cls, raw: str | bytes) -> "EventEnvelope":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedEnvelopeError(f"envelope is not valid JSON: {e}") from e
        return cls.from_dict(data)
