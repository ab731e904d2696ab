"""Checkout and billing-portal session creation.

Checkout stamps the correlation metadata (member, plan, period) on both the
session and the subscription it creates; that stamp is the only link the
webhook pipeline has from a provider subscription back to a member.
"""

import logging
from dataclasses import dataclass

from subsync.config.settings import AppConfig
from subsync.db.models import BillingPeriod, PlanType
from subsync.errors import BillingError
from subsync.payments.gateway import StripeGateway
from subsync.payments.store import MemberStore, SubscriptionStateStore

logger = logging.getLogger(__name__)


class CheckoutRefused(BillingError):
    """The member may not start this checkout or open the portal."""

    def __init__(self, message: str, reason: str):
        super().__init__(message, {"reason": reason})
        self.reason = reason


@dataclass
class CheckoutSession:
    """Reference returned to the caller after session creation."""

    session_id: str
    url: str
    metadata: dict[str, str]


class CheckoutInitiator:
    """Starts provider checkouts for members."""

    def __init__(
        self,
        gateway: StripeGateway,
        members: MemberStore,
        store: SubscriptionStateStore,
        config: AppConfig,
    ):
        self._gateway = gateway
        self._members = members
        self._store = store
        self._config = config

    async def _customer_for(self, member_id: str):
        member = await self._members.get(member_id)
        if member is None:
            raise CheckoutRefused(f"Member {member_id} not found", reason="member_not_found")
        return member

    async def create_checkout_url(
        self,
        member_id: str,
        plan_type: PlanType,
        billing_period: BillingPeriod,
    ) -> CheckoutSession:
        """Create a subscription checkout session.

        Creates and caches the provider customer on first use.

        Raises:
            ValueError: If no price is configured for the plan/period
            CheckoutRefused: Unknown member, or a live subscription exists
            stripe.StripeError: On provider API errors
        """
        price_id = self._config.price_id(plan_type.value, billing_period.value)
        if not price_id:
            raise ValueError(
                f"No price configured for {plan_type.value} {billing_period.value}"
            )

        member = await self._customer_for(member_id)

        live = await self._store.find_active_by_member(member_id)
        if live is not None:
            raise CheckoutRefused(
                "Member already has a live subscription; manage it from the billing portal",
                reason="has_subscription",
            )

        customer_ref = member.billing_customer_ref
        if not customer_ref:
            created = await self._gateway.create_customer(member.email, member.name, member_id)
            # A concurrent checkout may have cached a customer first
            customer_ref = await self._members.cache_customer_ref(member_id, created) or created

        metadata = {
            "member_id": member_id,
            "plan_type": plan_type.value,
            "billing_period": billing_period.value,
        }
        session = await self._gateway.create_checkout_session(
            customer_ref=customer_ref,
            price_id=price_id,
            metadata=metadata,
            success_url=self._config.checkout_success_url,
            cancel_url=self._config.checkout_cancel_url,
        )

        logger.info(f"Created checkout session {session.id} for member {member_id}")
        return CheckoutSession(session_id=session.id, url=session.url, metadata=metadata)

    async def create_portal_url(self, member_id: str, return_url: str | None = None) -> str:
        """Open the provider's self-service billing portal.

        A customer id that the provider no longer knows is cleared from the
        member so the next checkout creates a fresh one.

        Raises:
            CheckoutRefused: Unknown member, or no usable billing account
        """
        member = await self._customer_for(member_id)
        if not member.billing_customer_ref:
            raise CheckoutRefused(
                "No billing account found. Please subscribe to a plan first.",
                reason="no_customer",
            )

        if not await self._gateway.customer_exists(member.billing_customer_ref):
            await self._members.clear_customer_ref(member_id)
            logger.warning(
                f"Customer {member.billing_customer_ref} missing at provider - "
                f"cleared from member {member_id}"
            )
            raise CheckoutRefused(
                "Billing account not found. Please subscribe to a plan.",
                reason="no_customer",
            )

        return await self._gateway.create_portal_session(
            member.billing_customer_ref,
            return_url or self._config.portal_return_url,
        )
