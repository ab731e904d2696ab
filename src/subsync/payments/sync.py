"""Manual reconciliation of a member's subscriptions against the provider.

Used when webhooks were missed (endpoint down longer than the provider's
retry window). Runs the same conditional store operations as the webhook
handlers, so it is safe to run at any time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from subsync.db.models import SubscriptionStatus
from subsync.errors import MissingCorrelationMetadata
from subsync.payments.events import (
    minor_to_major,
    subscription_period_end,
    subscription_unit_amount,
    timestamp_to_date,
)
from subsync.payments.gateway import StripeGateway
from subsync.payments.handlers import (
    map_provider_status,
    parse_correlation,
    refresh_status_cache,
)
from subsync.payments.store import MemberStore, SubscriptionStateStore

logger = logging.getLogger(__name__)


@dataclass
class ResyncReport:
    """Provider subscription ids grouped by what the resync did with them."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    has_live_subscription: bool = False


async def resync_member(
    member_id: str,
    store: SubscriptionStateStore,
    members: MemberStore,
    gateway: StripeGateway,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> ResyncReport:
    """Pull the member's provider subscriptions into the store.

    Known subscriptions take the provider's status and period end (Cancelled
    rows stay untouched). Unknown ones are created only when they carry this
    member's correlation metadata. Payments are not backfilled.

    Raises:
        LookupError: If the member does not exist
        stripe.StripeError: On provider API errors
    """
    member = await members.get(member_id)
    if member is None:
        raise LookupError(f"Member {member_id} not found")

    report = ResyncReport()
    if not member.billing_customer_ref:
        logger.info(f"Member {member_id} has no provider customer - nothing to resync")
        return report

    provider_subs = await gateway.list_subscriptions(member.billing_customer_ref)
    today = clock().date()

    async with store.transaction() as tx:
        for sub in provider_subs:
            ref = sub["id"]
            status, mapped = map_provider_status(sub.get("status"))
            if not mapped:
                logger.warning(f"Unmapped provider status '{status}' on subscription {ref}")
            cancelled = status == SubscriptionStatus.CANCELLED.value
            next_billing = timestamp_to_date(subscription_period_end(sub))

            existing = await tx.find_by_external_ref(ref, for_update=True)
            if existing is None:
                try:
                    owner, plan_type, billing_period = parse_correlation(sub.get("metadata") or {})
                except MissingCorrelationMetadata:
                    logger.warning(f"Subscription {ref} has no correlation metadata - skipped")
                    report.skipped.append(ref)
                    continue
                if owner != member_id:
                    logger.warning(f"Subscription {ref} belongs to member {owner} - skipped")
                    report.skipped.append(ref)
                    continue

                await tx.upsert_subscription(
                    member_id=member_id,
                    external_ref=ref,
                    plan_type=plan_type,
                    billing_period=billing_period,
                    amount=minor_to_major(subscription_unit_amount(sub)),
                    start_date=timestamp_to_date(sub.get("start_date") or sub.get("created")) or today,
                    next_billing_date=next_billing,
                    status=status,
                    end_date=(timestamp_to_date(sub.get("ended_at")) or today) if cancelled else None,
                )
                report.created.append(ref)
            elif existing.is_cancelled:
                report.skipped.append(ref)
            else:
                await tx.update_subscription(
                    ref,
                    status=status,
                    next_billing_date=next_billing,
                    end_date=today if cancelled else None,
                )
                report.updated.append(ref)

        live = await refresh_status_cache(tx, members.bind(tx.connection), member_id)

    report.has_live_subscription = live is not None
    logger.info(
        f"Resynced member {member_id}: created={report.created} "
        f"updated={report.updated} skipped={report.skipped}"
    )
    return report
