"""Subscription state machine driven by provider events.

    NoSubscription -> Active -> {PastDue <-> Active} -> Cancelled

Cancelled is terminal: a later checkout creates a new subscription row.

Every handler is safe to run more than once for the same event. Each one
does its writes inside a single store transaction, so a failure part way
leaves nothing behind and the provider's redelivery starts from scratch.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from subsync.db.models import (
    MEMBER_STATUS_NO_SUBSCRIPTION,
    BillingPeriod,
    Payment,
    PaymentStatus,
    PlanType,
    Subscription,
    SubscriptionStatus,
)
from subsync.errors import MissingCorrelationMetadata, SubscriptionNotFound
from subsync.payments.events import (
    BILLING_REASON_CREATE,
    VerifiedEvent,
    checkout_subscription_ref,
    customer_ref,
    invoice_period_end,
    invoice_subscription_ref,
    latest_invoice_ref,
    minor_to_major,
    subscription_period_end,
    subscription_price_id,
    subscription_unit_amount,
    timestamp_to_date,
)
from subsync.payments.gateway import StripeGateway
from subsync.payments.store import MemberStore, SubscriptionStateStore

logger = logging.getLogger(__name__)

# Provider subscription status -> engine status. Anything else is stored
# verbatim and flagged for an operator.
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def map_provider_status(provider_status: Optional[str]) -> tuple[str, bool]:
    """Translate a provider status.

    Returns:
        (status, mapped): the engine status value, or the raw provider
        status with ``mapped=False`` when there is no translation
    """
    status = PROVIDER_STATUS_MAP.get(provider_status or "")
    if status is None:
        return provider_status or "unknown", False
    return status.value, True


def parse_correlation(metadata: dict[str, Any]) -> tuple[str, PlanType, BillingPeriod]:
    """Read the checkout correlation stamp.

    Raises:
        MissingCorrelationMetadata: If a key is absent or holds an unknown value
    """
    member_id = metadata.get("member_id")
    plan_raw = metadata.get("plan_type")
    period_raw = metadata.get("billing_period")

    if not member_id or not plan_raw or not period_raw:
        raise MissingCorrelationMetadata(
            "Checkout correlation metadata incomplete",
            details={"metadata": dict(metadata)},
        )
    try:
        plan_type = PlanType(str(plan_raw).strip().capitalize())
        billing_period = BillingPeriod(str(period_raw).strip().capitalize())
    except ValueError as e:
        raise MissingCorrelationMetadata(
            f"Checkout correlation metadata corrupt: {e}",
            details={"metadata": dict(metadata)},
        ) from e

    return str(member_id), plan_type, billing_period


async def refresh_status_cache(
    store: SubscriptionStateStore,
    members: MemberStore,
    member_id: str,
    idle_status: str = MEMBER_STATUS_NO_SUBSCRIPTION,
) -> Optional[Subscription]:
    """Point the member's cached status at their newest live subscription.

    A newer checkout may already have started another subscription, so the
    row that just changed is not necessarily the one to show.

    Args:
        store: State store, bound to the caller's transaction
        members: Member store on the same connection
        member_id: Member to refresh
        idle_status: Cached when nothing is live

    Returns:
        The live subscription now shown, or None
    """
    live = await store.find_active_by_member(member_id)
    if live is None:
        await members.update_status_cache(member_id, idle_status, None)
    else:
        await members.update_status_cache(member_id, live.status, live.plan_type.value)
    return live


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _invoice_url(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("hosted_invoice_url") or ""
    return ""


class TransitionHandlers:
    """One coroutine per handled event type.

    Args:
        store: Subscription and payment persistence
        members: Member billing fields
        gateway: Provider client, used to read subscription details on checkout
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: SubscriptionStateStore,
        members: MemberStore,
        gateway: StripeGateway,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._members = members
        self._gateway = gateway
        self._clock = clock

    async def _refresh_cache(self, store: SubscriptionStateStore, changed: Subscription) -> None:
        members = self._members.bind(store.connection)
        await refresh_status_cache(store, members, changed.member_id, changed.status)

    async def create_subscription(self, event: VerifiedEvent) -> Optional[Subscription]:
        """checkout.session.completed: start a new Active subscription.

        Also records the initial payment, which the first invoice event
        will skip, and caches the member's provider customer id.
        """
        session = event.data_object
        sub_ref = checkout_subscription_ref(session)
        if not sub_ref:
            raise MissingCorrelationMetadata(
                "Checkout session has no subscription",
                details={"session": session.get("id")},
            )

        existing = await self._store.find_by_external_ref(sub_ref)
        if existing is not None:
            logger.info(f"Subscription {sub_ref} already recorded - duplicate checkout event")
            return existing

        provider_sub = await self._gateway.retrieve_subscription(sub_ref)
        metadata = {**(provider_sub.get("metadata") or {}), **(session.get("metadata") or {})}
        member_id, plan_type, billing_period = parse_correlation(metadata)

        now = self._clock()
        unit_amount = subscription_unit_amount(provider_sub)
        amount = minor_to_major(
            unit_amount if unit_amount is not None else session.get("amount_total")
        )
        initial_amount = (
            minor_to_major(session["amount_total"])
            if session.get("amount_total") is not None
            else amount
        )
        latest_invoice = provider_sub.get("latest_invoice")
        first_invoice_ref = latest_invoice_ref(provider_sub) or session.get("invoice")

        async with self._store.transaction() as store:
            members = self._members.bind(store.connection)

            member = await members.get(member_id)
            if member is None:
                raise MissingCorrelationMetadata(
                    f"Member {member_id} from checkout metadata does not exist",
                    details={"subscription": sub_ref},
                )

            previous = await store.find_active_by_member(member_id)
            subscription, created = await store.upsert_subscription(
                member_id=member_id,
                external_ref=sub_ref,
                plan_type=plan_type,
                billing_period=billing_period,
                amount=amount,
                start_date=now.date(),
                next_billing_date=timestamp_to_date(subscription_period_end(provider_sub)),
            )
            if not created:
                return subscription

            if previous is not None:
                logger.warning(
                    f"Member {member_id} now has two live subscriptions: "
                    f"{previous.external_subscription_ref} ({previous.status}) and {sub_ref}; "
                    f"the older one stays until the provider deletes it"
                )

            if first_invoice_ref:
                await store.insert_payment_if_absent(
                    external_payment_ref=first_invoice_ref,
                    subscription_id=subscription.id,
                    member_id=member_id,
                    amount=initial_amount,
                    status=PaymentStatus.SUCCEEDED,
                    paid_at=now,
                    invoice_url=_invoice_url(latest_invoice),
                    description=f"Initial payment - {plan_type.value} {billing_period.value}",
                )

            await members.update_status_cache(
                member_id, SubscriptionStatus.ACTIVE.value, plan_type.value
            )
            customer = customer_ref(session)
            if customer and not member.billing_customer_ref:
                await members.cache_customer_ref(member_id, customer)

        logger.info(
            f"Created subscription {sub_ref} for member {member_id}: "
            f"{plan_type.value} {billing_period.value} {amount}"
        )
        return subscription

    async def record_payment_success(self, event: VerifiedEvent) -> Optional[Payment]:
        """invoice.payment_succeeded / invoice.paid: ledger entry, PastDue -> Active."""
        invoice = event.data_object
        if invoice.get("billing_reason") == BILLING_REASON_CREATE:
            logger.info(f"Invoice {invoice.get('id')} is the initial invoice - covered by checkout")
            return None

        sub_ref = invoice_subscription_ref(invoice)
        if not sub_ref:
            logger.info(f"Invoice {invoice.get('id')} has no subscription - ignored")
            return None

        now = self._clock()
        paid_ts = (invoice.get("status_transitions") or {}).get("paid_at")
        paid_at = datetime.fromtimestamp(paid_ts, tz=timezone.utc) if paid_ts else now

        async with self._store.transaction() as store:
            subscription = await store.find_by_external_ref(sub_ref, for_update=True)
            if subscription is None:
                raise SubscriptionNotFound(sub_ref)

            payment, created = await store.insert_payment_if_absent(
                external_payment_ref=invoice["id"],
                subscription_id=subscription.id,
                member_id=subscription.member_id,
                amount=minor_to_major(invoice.get("amount_paid")),
                status=PaymentStatus.SUCCEEDED,
                paid_at=paid_at,
                invoice_url=invoice.get("hosted_invoice_url") or "",
                description=(
                    f"Recurring payment - {subscription.plan_type.value} "
                    f"{subscription.billing_period.value}"
                ),
            )
            if not created:
                logger.info(f"Payment for invoice {invoice['id']} already recorded")
                return payment

            if subscription.is_cancelled:
                logger.warning(
                    f"Payment {invoice['id']} recorded for cancelled subscription {sub_ref}"
                )
                return payment

            recovering = subscription.status == SubscriptionStatus.PAST_DUE.value
            updated = await store.update_subscription(
                sub_ref,
                status=SubscriptionStatus.ACTIVE.value if recovering else None,
                next_billing_date=timestamp_to_date(invoice_period_end(invoice)),
            )
            if recovering:
                await self._refresh_cache(store, updated)
                logger.info(f"Subscription {sub_ref} recovered from PastDue")

        return payment

    async def record_payment_failure(self, event: VerifiedEvent) -> Optional[Payment]:
        """invoice.payment_failed: Failed ledger entry, live subscription -> PastDue."""
        invoice = event.data_object
        sub_ref = invoice_subscription_ref(invoice)
        if not sub_ref:
            logger.info(f"Invoice {invoice.get('id')} has no subscription - ignored")
            return None

        now = self._clock()

        async with self._store.transaction() as store:
            subscription = await store.find_by_external_ref(sub_ref, for_update=True)
            if subscription is None:
                if invoice.get("billing_reason") == BILLING_REASON_CREATE:
                    # Checkout never completed, so there is nothing to mark
                    logger.info(f"Initial invoice {invoice.get('id')} failed before checkout completed")
                    return None
                raise SubscriptionNotFound(sub_ref)

            # A failure delivered after the same invoice was paid is stale
            if await store.find_payment(invoice["id"], PaymentStatus.SUCCEEDED) is not None:
                logger.info(f"Invoice {invoice['id']} already paid - late failure ignored")
                return None

            payment, created = await store.insert_payment_if_absent(
                external_payment_ref=invoice["id"],
                subscription_id=subscription.id,
                member_id=subscription.member_id,
                amount=minor_to_major(invoice.get("amount_due")),
                status=PaymentStatus.FAILED,
                paid_at=now,
                invoice_url=invoice.get("hosted_invoice_url") or "",
                description=f"Failed payment - {subscription.plan_type.value}",
            )
            if not created:
                logger.info(f"Failed payment for invoice {invoice['id']} already recorded")
                return payment

            updated = await store.update_subscription(
                sub_ref, status=SubscriptionStatus.PAST_DUE.value
            )
            if updated is None:
                logger.warning(f"Payment failure {invoice['id']} for cancelled subscription {sub_ref}")
                return payment

            await self._refresh_cache(store, updated)

        logger.warning(f"Subscription {sub_ref} is past due after invoice {invoice['id']} failed")
        return payment

    async def reconcile_subscription(self, event: VerifiedEvent) -> Optional[Subscription]:
        """customer.subscription.updated: adopt the provider's status and period."""
        provider_sub = event.data_object
        sub_ref = provider_sub["id"]
        status, mapped = map_provider_status(provider_sub.get("status"))
        if not mapped:
            logger.warning(
                f"Unmapped provider status '{status}' on subscription {sub_ref} - "
                f"stored as-is, needs operator review"
            )

        cancelled = status == SubscriptionStatus.CANCELLED.value
        now = self._clock()

        async with self._store.transaction() as store:
            current = await store.find_by_external_ref(sub_ref, for_update=True)
            if current is None:
                raise SubscriptionNotFound(sub_ref)
            if current.is_cancelled:
                logger.info(f"Subscription {sub_ref} is cancelled - update ignored")
                return current

            changed = event.previous_attributes
            if "items" in changed or "plan" in changed:
                logger.warning(
                    f"Plan change on subscription {sub_ref} to price "
                    f"{subscription_price_id(provider_sub)} is unmapped - "
                    f"stored plan stays {current.plan_type.value}, needs operator review"
                )

            updated = await store.update_subscription(
                sub_ref,
                status=status,
                next_billing_date=timestamp_to_date(subscription_period_end(provider_sub)),
                end_date=now.date() if cancelled else None,
            )
            await self._refresh_cache(store, updated)

        logger.info(f"Reconciled subscription {sub_ref}: {current.status} -> {status}")
        return updated

    async def terminate_subscription(self, event: VerifiedEvent) -> Optional[Subscription]:
        """customer.subscription.deleted: terminal transition to Cancelled."""
        sub_ref = event.data_object["id"]
        now = self._clock()

        async with self._store.transaction() as store:
            current = await store.find_by_external_ref(sub_ref, for_update=True)
            if current is None:
                raise SubscriptionNotFound(sub_ref)
            if current.is_cancelled:
                logger.info(f"Subscription {sub_ref} already cancelled - duplicate delete")
                return current

            updated = await store.update_subscription(
                sub_ref,
                status=SubscriptionStatus.CANCELLED.value,
                end_date=now.date(),
            )
            await self._refresh_cache(store, updated)

        logger.info(f"Subscription {sub_ref} cancelled for member {current.member_id}")
        return updated
