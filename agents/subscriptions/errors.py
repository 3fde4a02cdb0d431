"""Exceptions raised by the subscription engine."""


class SubscriptionEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(SubscriptionEngineError):
    """Invalid merchant or subscription configuration.

    Raised at setup time (empty weekday sets, unknown zones, non-positive
    frequency counts), never as a batch-time fallback.
    """


class InvalidTransitionError(SubscriptionEngineError):
    """A customer action is not allowed in the subscription's current status."""

    def __init__(self, status: str, event: str):
        super().__init__(f"Cannot apply '{event}' to subscription in status '{status}'")
        self.status = status
        self.event = event


class SubscriptionNotFoundError(SubscriptionEngineError):
    """Subscription does not exist for the tenant."""


class CursorConflictError(SubscriptionEngineError):
    """A fulfillment cursor was advanced concurrently; materialization rolled back."""


class DeliveryNotFoundError(SubscriptionEngineError):
    """Delivery does not exist for the tenant."""
