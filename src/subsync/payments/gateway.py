"""Outbound calls to the payment provider.

The gateway owns the provider API key so handlers never touch module-level
SDK state. SDK calls are blocking and run in a worker thread.
"""

import asyncio
import logging
from typing import Any, Optional

import stripe

from subsync.config import AppConfig, get_config
from subsync.errors import ConfigurationError

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin async wrapper over the Stripe SDK."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ConfigurationError("stripe_secret not configured")
        self._api_key = api_key

    @classmethod
    def from_config(cls, config: AppConfig) -> "StripeGateway":
        return cls(config.stripe_secret.get_secret_value())

    async def _call(self, fn, *args, **kwargs) -> Any:
        return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)

    async def retrieve_subscription(self, subscription_ref: str) -> dict[str, Any]:
        """Fetch a subscription with its items, as a plain dict."""
        sub = await self._call(stripe.Subscription.retrieve, subscription_ref)
        return sub.to_dict()

    async def list_subscriptions(self, customer_ref: str, limit: int = 10) -> list[dict[str, Any]]:
        result = await self._call(
            stripe.Subscription.list,
            customer=customer_ref,
            status="all",
            limit=limit,
        )
        return [sub.to_dict() for sub in result.data]

    async def create_customer(self, email: str, name: str, member_id: str) -> str:
        customer = await self._call(
            stripe.Customer.create,
            email=email or None,
            name=name or None,
            metadata={"member_id": member_id},
        )
        logger.info(f"Created provider customer {customer.id} for member {member_id}")
        return customer.id

    async def customer_exists(self, customer_ref: str) -> bool:
        """False when the provider has no (or a deleted) customer with this id."""
        try:
            customer = await self._call(stripe.Customer.retrieve, customer_ref)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                return False
            raise
        return not getattr(customer, "deleted", False)

    async def create_checkout_session(
        self,
        customer_ref: str,
        price_id: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> stripe.checkout.Session:
        return await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_ref,
            line_items=[{"price": price_id, "quantity": 1}],
            metadata=metadata,
            subscription_data={"metadata": metadata},
            allow_promotion_codes=True,
            billing_address_collection="auto",
            success_url=success_url,
            cancel_url=cancel_url,
        )

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        session = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_ref,
            return_url=return_url,
        )
        return session.url


def build_gateway(config: Optional[AppConfig] = None) -> StripeGateway:
    """Gateway from the process configuration; raises on missing secrets."""
    return StripeGateway.from_config(config or get_config())
