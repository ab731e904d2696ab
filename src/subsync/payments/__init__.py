"""Subscription lifecycle synchronization with the payment provider.

Webhook verification and routing, the subscription state machine, idempotent
persistence of subscriptions and payments, the entitlement query, checkout
and portal sessions, and manual resync of a member.
"""

from subsync.payments.checkout import CheckoutInitiator, CheckoutRefused, CheckoutSession
from subsync.payments.entitlements import EntitlementResolver, EntitlementView
from subsync.payments.handlers import TransitionHandlers
from subsync.payments.router import EventRouter, Outcome, ProcessingResult
from subsync.payments.signature import verify
from subsync.payments.store import MemberStore, SubscriptionStateStore
from subsync.payments.sync import ResyncReport, resync_member
from subsync.payments.webhooks import handle_webhook

__all__ = [
    "CheckoutInitiator",
    "CheckoutRefused",
    "CheckoutSession",
    "EntitlementResolver",
    "EntitlementView",
    "EventRouter",
    "MemberStore",
    "Outcome",
    "ProcessingResult",
    "ResyncReport",
    "SubscriptionStateStore",
    "TransitionHandlers",
    "handle_webhook",
    "resync_member",
    "verify",
]
