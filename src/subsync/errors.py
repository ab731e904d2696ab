"""
Exception hierarchy for the billing synchronization engine.

Every error the webhook pipeline can raise derives from BillingError so the
router can tell expected outcomes from programming errors.
"""


class BillingError(Exception):
    """
    Base exception for all billing engine errors.

    Carries an optional details mapping for structured log context.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(BillingError):
    """Raised when required configuration is missing or invalid."""
    pass


# ==================== Ingress Errors ====================

class InvalidSignature(BillingError):
    """
    Webhook payload failed signature verification.

    Rejected with a 400; nothing is persisted and nothing is retried.
    """
    pass


class UnrecognizedEventType(BillingError):
    """Event type has no transition handler. Acknowledged and ignored."""

    def __init__(self, event_type: str):
        super().__init__(f"Unrecognized event type: {event_type}", {"type": event_type})
        self.event_type = event_type


# ==================== Transition Errors ====================

class MissingCorrelationMetadata(BillingError):
    """
    Checkout correlation metadata is absent or corrupt.

    Redelivery cannot repair the payload, so the event is acknowledged.
    """
    pass


class SubscriptionNotFound(BillingError):
    """An event references a subscription the store has not seen yet."""

    def __init__(self, external_ref: str):
        super().__init__(
            f"Subscription {external_ref} not found",
            {"external_subscription_ref": external_ref},
        )
        self.external_ref = external_ref


class TransientStoreFailure(BillingError):
    """The store could not complete a transition; the provider must redeliver."""
    pass
