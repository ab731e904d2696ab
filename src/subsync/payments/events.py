"""Verified provider events and payload field extraction.

Provider objects arrive as plain JSON dicts. The helpers here are the only
place that knows where a field lives in the payload, including the newer
API layouts where period ends moved onto subscription items and the invoice's
subscription moved under ``parent.subscription_details``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

CENTS = Decimal("0.01")


class EventType(str, Enum):
    """Provider event types the engine transitions on."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


# Invoice billing_reason for the first invoice of a subscription
BILLING_REASON_CREATE = "subscription_create"


@dataclass
class VerifiedEvent:
    """An event whose signature has been checked against the raw body."""

    id: str
    type: str
    data_object: dict[str, Any] = field(default_factory=dict)
    previous_attributes: dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None
    livemode: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "VerifiedEvent":
        """Build from a decoded event body.

        Raises:
            KeyError: If ``type`` or ``data.object`` is missing
            TypeError: If ``data.object`` is not an object
        """
        obj = payload["data"]["object"]
        if not isinstance(obj, dict):
            raise TypeError("data.object must be a JSON object")
        return cls(
            id=payload.get("id", ""),
            type=payload["type"],
            data_object=obj,
            previous_attributes=payload["data"].get("previous_attributes") or {},
            created=payload.get("created"),
            livemode=bool(payload.get("livemode", False)),
        )


def minor_to_major(minor: Optional[int]) -> Decimal:
    """Convert a provider amount in minor units (cents) to major units.

    This is the single point where amounts are scaled; everything downstream
    works in major units.

    >>> minor_to_major(1999)
    Decimal('19.99')
    """
    if minor is None:
        return Decimal("0.00")
    return (Decimal(int(minor)) / 100).quantize(CENTS)


def timestamp_to_date(ts: Optional[int]) -> Optional[date]:
    """Unix seconds to a UTC calendar date."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).date()


def _ref(value: Any) -> Optional[str]:
    """Object reference that may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_period_end(subscription: dict[str, Any]) -> Optional[int]:
    """End of the current billing period of a provider subscription."""
    if subscription.get("current_period_end"):
        return subscription["current_period_end"]
    return _first_item(subscription).get("current_period_end")


def subscription_unit_amount(subscription: dict[str, Any]) -> Optional[int]:
    """Recurring charge in minor units (price × quantity) of the first item."""
    item = _first_item(subscription)
    unit_amount = (item.get("price") or {}).get("unit_amount")
    if unit_amount is None:
        return None
    return unit_amount * (item.get("quantity") or 1)


def subscription_price_id(subscription: dict[str, Any]) -> Optional[str]:
    return (_first_item(subscription).get("price") or {}).get("id")


def invoice_subscription_ref(invoice: dict[str, Any]) -> Optional[str]:
    """Subscription an invoice bills for, or None for one-off invoices."""
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


def invoice_period_end(invoice: dict[str, Any]) -> Optional[int]:
    """End of the service period an invoice pays for.

    Line items carry the period being billed; the invoice-level
    ``period_end`` is only a fallback.
    """
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        end = (line.get("period") or {}).get("end")
        if end:
            return end
    return invoice.get("period_end")


def checkout_subscription_ref(session: dict[str, Any]) -> Optional[str]:
    return _ref(session.get("subscription"))


def customer_ref(obj: dict[str, Any]) -> Optional[str]:
    return _ref(obj.get("customer"))


def latest_invoice_ref(subscription: dict[str, Any]) -> Optional[str]:
    return _ref(subscription.get("latest_invoice"))
