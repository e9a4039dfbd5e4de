"""Domain errors raised by the event hub components."""


class EventHubError(Exception):
    """Base class for all event hub errors."""


class MalformedEnvelopeError(EventHubError, ValueError):
    """A broker message could not be decoded into an EventEnvelope."""


class BrokerUnavailableError(EventHubError):
    """The broker could not be reached after all retries."""


class SubscriptionNotFoundError(EventHubError, LookupError):
    """No webhook subscription with this id exists for the tenant."""


class DeliveryNotFoundError(EventHubError, LookupError):
    """No delivery record with this id exists for the tenant."""


class DeliveryStateError(EventHubError):
    """The requested operation is not allowed in the delivery's current status."""


class AuthenticationError(EventHubError):
    """A realtime handshake credential was missing or invalid."""


class InvalidTransitionError(EventHubError):
    """A connection was asked to move to a state it cannot reach."""
