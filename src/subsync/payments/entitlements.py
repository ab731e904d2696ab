"""Current entitlement of a member, derived from stored subscription state."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from subsync.db.models import Payment, Subscription, SubscriptionStatus
from subsync.payments.store import SubscriptionStateStore

logger = logging.getLogger(__name__)

FREE_PLAN = "Free"

# A PastDue member keeps the paid plan's features while the provider retries
# the charge; only a cancellation (provider dunning outcome) downgrades.
PAST_DUE_KEEPS_FEATURES = True

# opportunity_applications: None means unlimited
PLAN_FEATURES: dict[str, dict[str, Any]] = {
    FREE_PLAN: {
        "profile_listing": True,
        "opportunity_applications": 3,
        "profile_highlight": False,
        "custom_branding": False,
        "analytics": "Basic",
        "support": "Email",
    },
    "Standard": {
        "profile_listing": True,
        "opportunity_applications": 10,
        "profile_highlight": False,
        "custom_branding": False,
        "analytics": "Enhanced",
        "support": "Priority Email",
    },
    "Plus": {
        "profile_listing": True,
        "opportunity_applications": 25,
        "profile_highlight": True,
        "custom_branding": False,
        "analytics": "Advanced",
        "support": "Email & Chat",
    },
    "Premium": {
        "profile_listing": True,
        "opportunity_applications": None,
        "profile_highlight": True,
        "custom_branding": True,
        "analytics": "Full",
        "support": "Priority Phone, Email & Chat",
    },
}


def plan_features(plan: str) -> dict[str, Any]:
    """Feature table entry for a plan; unknown plans get the Free tier."""
    return dict(PLAN_FEATURES.get(plan, PLAN_FEATURES[FREE_PLAN]))


@dataclass
class EntitlementView:
    """What a member may use right now."""

    plan: str
    status: str
    features: dict[str, Any] = field(default_factory=dict)
    amount: Decimal = Decimal("0.00")
    billing_period: Optional[str] = None
    next_billing_date: Optional[date] = None
    subscription_ref: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.plan == FREE_PLAN

    @classmethod
    def free(cls) -> "EntitlementView":
        return cls(
            plan=FREE_PLAN,
            status=SubscriptionStatus.ACTIVE.value,
            features=plan_features(FREE_PLAN),
        )

    @classmethod
    def for_subscription(cls, subscription: Subscription) -> "EntitlementView":
        plan = subscription.plan_type.value
        if (
            subscription.status == SubscriptionStatus.PAST_DUE.value
            and not PAST_DUE_KEEPS_FEATURES
        ):
            features = plan_features(FREE_PLAN)
        else:
            features = plan_features(plan)
        return cls(
            plan=plan,
            status=subscription.status,
            features=features,
            amount=subscription.amount,
            billing_period=subscription.billing_period.value,
            next_billing_date=subscription.next_billing_date,
            subscription_ref=subscription.external_subscription_ref,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan,
            "status": self.status,
            "amount": str(self.amount),
            "billing_period": self.billing_period,
            "next_billing_date": (
                self.next_billing_date.isoformat() if self.next_billing_date else None
            ),
            "features": self.features,
        }


def _payment_dict(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "amount": str(payment.amount),
        "status": payment.status.value,
        "date": payment.paid_at.date().isoformat(),
        "invoice_url": payment.invoice_url,
    }


class EntitlementResolver:
    """Read side of the billing engine."""

    def __init__(self, store: SubscriptionStateStore, history_limit: int = 10):
        self._store = store
        self._history_limit = history_limit

    async def resolve(self, member_id: str) -> EntitlementView:
        """Entitlement from the member's live subscription, or the Free tier.

        Having no subscription is the valid Free state, not an error.
        """
        subscription = await self._store.find_active_by_member(member_id)
        if subscription is None:
            logger.debug(f"No live subscription for member {member_id} - Free tier")
            return EntitlementView.free()
        return EntitlementView.for_subscription(subscription)

    async def subscription_status(self, member_id: str) -> dict[str, Any]:
        """Response body of the subscription-status query."""
        view = await self.resolve(member_id)
        payments = await self._store.list_payments(member_id, limit=self._history_limit)
        body = view.to_dict()
        body["payment_history"] = [_payment_dict(p) for p in payments]
        return body
