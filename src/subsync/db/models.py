"""Table-name constants, column vocabularies and typed billing records."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping


# Table name constants
class Table:
    """Database table names."""

    MEMBERS = "members"
    SUBSCRIPTIONS = "subscriptions"
    PAYMENTS = "payments"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Column name enums
class PlanType(str, Enum):
    """Paid plan offered through checkout."""

    STANDARD = "Standard"
    PLUS = "Plus"
    PREMIUM = "Premium"


class BillingPeriod(str, Enum):
    """Billing interval."""

    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class SubscriptionStatus(str, Enum):
    """Engine-side subscription status."""

    ACTIVE = "Active"
    PAST_DUE = "PastDue"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    """Payment ledger outcome."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


# Member-level status cache value when no live subscription remains
MEMBER_STATUS_NO_SUBSCRIPTION = SubscriptionStatus.CANCELLED.value


@dataclass
class Subscription:
    """Persisted subscription row."""

    id: int
    member_id: str
    external_subscription_ref: str
    plan_type: PlanType
    billing_period: BillingPeriod
    status: str  # SubscriptionStatus value, or a raw provider status when unmapped
    amount: Decimal
    start_date: date
    next_billing_date: date | None = None
    end_date: date | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED.value

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Subscription":
        return cls(
            id=row["id"],
            member_id=row["member_id"],
            external_subscription_ref=row["external_subscription_ref"],
            plan_type=PlanType(row["plan_type"]),
            billing_period=BillingPeriod(row["billing_period"]),
            status=row["status"],
            amount=row["amount"],
            start_date=row["start_date"],
            next_billing_date=row["next_billing_date"],
            end_date=row["end_date"],
        )


@dataclass
class Payment:
    """Append-only payment ledger row."""

    id: int
    subscription_id: int
    member_id: str
    external_payment_ref: str
    amount: Decimal
    status: PaymentStatus
    paid_at: datetime
    invoice_url: str = ""
    description: str = ""

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Payment":
        return cls(
            id=row["id"],
            subscription_id=row["subscription_id"],
            member_id=row["member_id"],
            external_payment_ref=row["external_payment_ref"],
            amount=row["amount"],
            status=PaymentStatus(row["status"]),
            paid_at=row["paid_at"],
            invoice_url=row["invoice_url"] or "",
            description=row["description"] or "",
        )


@dataclass
class Member:
    """Member record as seen by the billing engine."""

    id: str
    email: str = ""
    name: str = ""
    billing_customer_ref: str | None = None
    subscription_status: str | None = None
    current_plan: str | None = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Member":
        return cls(
            id=row["id"],
            email=row["email"] or "",
            name=row["name"] or "",
            billing_customer_ref=row["billing_customer_ref"],
            subscription_status=row["subscription_status"],
            current_plan=row["current_plan"],
        )
