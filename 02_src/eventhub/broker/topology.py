"""Exchange and queue topology shared by producers and consumers.

Routing keys are event types (``leave.approved``). Binding and subscription
patterns follow AMQP topic rules: ``*`` matches exactly one dot-separated
word, ``#`` matches zero or more words.
"""

from dataclasses import dataclass
from functools import lru_cache

EXCHANGES: tuple[str, ...] = (
    "notifications",
    "attendance",
    "leave",
    "chat",
    "dashboard",
    "employee",
    "payroll",
    "document",
    "user",
)
DEFAULT_EXCHANGE = "notifications"

WEBHOOK_QUEUE = "webhook_events"
REALTIME_QUEUE = "websocket_events"


@dataclass(frozen=True)
class QueueBinding:
    """Binds a queue to an exchange for routing keys matching ``pattern``."""

    exchange: str
    pattern: str = "#"


@dataclass(frozen=True)
class QueueSpec:
    """A durable queue and its bindings."""

    name: str
    bindings: tuple[QueueBinding, ...]

    def accepts(self, exchange: str, routing_key: str) -> bool:
        return any(
            binding.exchange == exchange and topic_matches(binding.pattern, routing_key)
            for binding in self.bindings
        )


def _match_words(pattern: tuple[str, ...], words: tuple[str, ...]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


@lru_cache(maxsize=4096)
def topic_matches(pattern: str, routing_key: str) -> bool:
    """Return True if ``routing_key`` matches the topic ``pattern``."""
    return _match_words(tuple(pattern.split(".")), tuple(routing_key.split(".")))


def exchange_for(event_type: str) -> str:
    """Exchange a producer publishes ``event_type`` to."""
    domain = event_type.split(".", 1)[0]
    return domain if domain in EXCHANGES else DEFAULT_EXCHANGE


def bind_all(queue_name: str, pattern: str = "#") -> QueueSpec:
    """A queue bound to every exchange with the same pattern."""
    return QueueSpec(
        name=queue_name,
        bindings=tuple(QueueBinding(exchange, pattern) for exchange in EXCHANGES),
    )


def default_queues() -> list[QueueSpec]:
    """Independent queues for the webhook dispatcher and the realtime router."""
    return [bind_all(WEBHOOK_QUEUE), bind_all(REALTIME_QUEUE)]
