"""Dispatch of verified events to transition handlers.

The router decides what the provider hears back. Only failures that a
redelivery can fix answer with a 5xx; everything else is acknowledged so the
provider does not redeliver forever.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from subsync.errors import (
    MissingCorrelationMetadata,
    SubscriptionNotFound,
    UnrecognizedEventType,
)
from subsync.payments.events import EventType, VerifiedEvent
from subsync.payments.handlers import TransitionHandlers

logger = logging.getLogger(__name__)

Handler = Callable[[VerifiedEvent], Awaitable[Any]]


class Outcome(str, Enum):
    """How an event was dealt with."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    REJECTED = "rejected"  # data-integrity error, acknowledged
    RETRY = "retry"


@dataclass
class ProcessingResult:
    """Result of routing one event."""

    event_id: str
    event_type: str
    outcome: Outcome
    detail: str = ""

    @property
    def ignored(self) -> bool:
        return self.outcome == Outcome.IGNORED

    @property
    def http_status(self) -> int:
        """Status to return to the provider (500 triggers redelivery)."""
        return 500 if self.outcome == Outcome.RETRY else 200


class EventRouter:
    """Routes events by type to the matching transition handler.

    Args:
        handlers: Transition handlers
        retry_unknown_subscriptions: Ask for redelivery when an event refers
            to a subscription whose checkout event has not been processed yet
    """

    def __init__(self, handlers: TransitionHandlers, retry_unknown_subscriptions: bool = True):
        self._retry_unknown = retry_unknown_subscriptions
        self._dispatch: dict[str, Handler] = {
            EventType.CHECKOUT_COMPLETED.value: handlers.create_subscription,
            EventType.INVOICE_PAYMENT_SUCCEEDED.value: handlers.record_payment_success,
            EventType.INVOICE_PAID.value: handlers.record_payment_success,
            EventType.INVOICE_PAYMENT_FAILED.value: handlers.record_payment_failure,
            EventType.SUBSCRIPTION_UPDATED.value: handlers.reconcile_subscription,
            EventType.SUBSCRIPTION_DELETED.value: handlers.terminate_subscription,
        }

    @property
    def handled_types(self) -> list[str]:
        return sorted(self._dispatch)

    def handler_for(self, event_type: str) -> Handler:
        """
        Raises:
            UnrecognizedEventType: If no handler is registered for the type
        """
        try:
            return self._dispatch[event_type]
        except KeyError:
            raise UnrecognizedEventType(event_type) from None

    async def route(self, event: VerifiedEvent) -> ProcessingResult:
        """Run the handler for an event and classify the outcome."""

        def result(outcome: Outcome, detail: str = "") -> ProcessingResult:
            return ProcessingResult(event.id, event.type, outcome, detail)

        try:
            handler = self.handler_for(event.type)
        except UnrecognizedEventType:
            logger.info(f"Unhandled event type: {event.type} ({event.id})")
            return result(Outcome.IGNORED, "unhandled event type")

        try:
            await handler(event)
        except MissingCorrelationMetadata as e:
            logger.error(f"Data integrity error in {event.type} {event.id}: {e}")
            return result(Outcome.REJECTED, e.message)
        except SubscriptionNotFound as e:
            if self._retry_unknown:
                logger.warning(
                    f"{event.type} {event.id} refers to unknown subscription "
                    f"{e.external_ref} - requesting redelivery"
                )
                return result(Outcome.RETRY, e.message)
            logger.warning(f"{event.type} {event.id}: {e.message} - acknowledged")
            return result(Outcome.IGNORED, e.message)
        except Exception as e:
            logger.exception(f"Error processing webhook {event.type} {event.id}: {e}")
            return result(Outcome.RETRY, str(e))

        logger.info(f"Processed {event.type} {event.id}")
        return result(Outcome.PROCESSED)
