"""Pytest configuration, in-memory store fakes and event builders."""

import asyncio
import copy
import hashlib
import hmac
import itertools
import json
import os
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from subsync.db.models import Member, Payment, Subscription, SubscriptionStatus
from subsync.payments.events import VerifiedEvent
from subsync.payments.gateway import StripeGateway
from subsync.payments.handlers import TransitionHandlers
from subsync.payments.router import EventRouter
from subsync.payments.store import LIVE_STATUSES

WEBHOOK_SECRET = "whsec_test_secret"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_END_APR = 1743465600  # 2025-04-01T00:00:00Z
PERIOD_END_MAY = 1746057600  # 2025-05-01T00:00:00Z


# ==================== In-memory stores ====================

class InMemoryStateStore:
    """SubscriptionStateStore double with the same conditional semantics.

    A transaction snapshots the rows and restores them if the block raises.
    """

    def __init__(self):
        self.subscriptions: dict[str, Subscription] = {}
        self.payments: list[Payment] = []
        self.connection = None
        self._sub_ids = itertools.count(1)
        self._payment_ids = itertools.count(1)

    def bind(self, conn):
        return self

    @asynccontextmanager
    async def transaction(self):
        snapshot = (copy.deepcopy(self.subscriptions), copy.deepcopy(self.payments))
        try:
            yield self
        except BaseException:
            self.subscriptions, self.payments = snapshot
            raise

    async def find_by_external_ref(self, external_ref, for_update=False):
        return self.subscriptions.get(external_ref)

    async def upsert_subscription(
        self,
        member_id,
        external_ref,
        plan_type,
        billing_period,
        amount,
        start_date,
        next_billing_date,
        status=SubscriptionStatus.ACTIVE.value,
        end_date=None,
    ):
        if external_ref in self.subscriptions:
            return self.subscriptions[external_ref], False
        sub = Subscription(
            id=next(self._sub_ids),
            member_id=member_id,
            external_subscription_ref=external_ref,
            plan_type=plan_type,
            billing_period=billing_period,
            status=status,
            amount=amount,
            start_date=start_date,
            next_billing_date=next_billing_date,
            end_date=end_date,
        )
        self.subscriptions[external_ref] = sub
        return sub, True

    async def update_subscription(
        self, external_ref, *, status=None, next_billing_date=None, end_date=None
    ):
        current = self.subscriptions.get(external_ref)
        if current is None or current.is_cancelled:
            return None
        updated = replace(
            current,
            status=status if status is not None else current.status,
            next_billing_date=(
                next_billing_date if next_billing_date is not None else current.next_billing_date
            ),
            end_date=end_date if end_date is not None else current.end_date,
        )
        self.subscriptions[external_ref] = updated
        return updated

    async def insert_payment_if_absent(
        self,
        external_payment_ref,
        subscription_id,
        member_id,
        amount,
        status,
        paid_at,
        invoice_url="",
        description="",
    ):
        for payment in self.payments:
            if payment.external_payment_ref == external_payment_ref and payment.status == status:
                return payment, False
        payment = Payment(
            id=next(self._payment_ids),
            subscription_id=subscription_id,
            member_id=member_id,
            external_payment_ref=external_payment_ref,
            amount=amount,
            status=status,
            paid_at=paid_at,
            invoice_url=invoice_url,
            description=description,
        )
        self.payments.append(payment)
        return payment, True

    async def find_payment(self, external_payment_ref, status):
        for payment in self.payments:
            if payment.external_payment_ref == external_payment_ref and payment.status == status:
                return payment
        return None

    async def find_active_by_member(self, member_id):
        live = [
            s for s in self.subscriptions.values()
            if s.member_id == member_id and s.status in LIVE_STATUSES
        ]
        if not live:
            return None
        return max(live, key=lambda s: (s.start_date, s.id))

    async def list_payments(self, member_id, limit=10):
        rows = [p for p in self.payments if p.member_id == member_id]
        rows.sort(key=lambda p: (p.paid_at, p.id), reverse=True)
        return rows[:limit]


class InMemoryMemberStore:
    """MemberStore double."""

    def __init__(self, *members: Member):
        self.members = {m.id: m for m in members}
        self.connection = None

    def bind(self, conn):
        return self

    async def get(self, member_id):
        return self.members.get(member_id)

    async def cache_customer_ref(self, member_id, customer_ref):
        member = self.members.get(member_id)
        if member is None:
            return None
        if not member.billing_customer_ref:
            member.billing_customer_ref = customer_ref
        return member.billing_customer_ref

    async def clear_customer_ref(self, member_id):
        self.members[member_id].billing_customer_ref = None

    async def update_status_cache(self, member_id, status, current_plan):
        member = self.members.get(member_id)
        if member is not None:
            member.subscription_status = status
            member.current_plan = current_plan


# ==================== Event builders ====================

def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``t=...,v1=...`` signature header for a payload."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event_body(event_type: str, obj: dict, event_id: str = "evt_1", **data) -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "data": {"object": obj, **data}}
    ).encode()


def make_event(event_type: str, obj: dict, event_id: str = "evt_1", **data) -> VerifiedEvent:
    return VerifiedEvent.from_payload(json.loads(event_body(event_type, obj, event_id, **data)))


def provider_subscription(
    sub_id: str = "sub_123",
    status: str = "active",
    period_end: int = PERIOD_END_APR,
    unit_amount: int = 1999,
    metadata: dict | None = None,
) -> dict:
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "current_period_end": period_end,
        "latest_invoice": "in_first",
        "metadata": metadata or {},
        "items": {"data": [{"price": {"id": "price_std_m", "unit_amount": unit_amount}, "quantity": 1}]},
    }


def checkout_session(sub_id: str = "sub_123", member_id: str = "mem_1", **metadata) -> dict:
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_1",
        "subscription": sub_id,
        "amount_total": 1999,
        "invoice": "in_first",
        "metadata": {
            "member_id": member_id,
            "plan_type": "Standard",
            "billing_period": "Monthly",
            **metadata,
        },
    }


def invoice(
    invoice_id: str,
    sub_id: str = "sub_123",
    billing_reason: str = "subscription_cycle",
    amount: int = 1999,
    period_end: int = PERIOD_END_MAY,
) -> dict:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_1",
        "subscription": sub_id,
        "billing_reason": billing_reason,
        "amount_paid": amount,
        "amount_due": amount,
        "hosted_invoice_url": f"https://pay.example.com/{invoice_id}",
        "lines": {"data": [{"period": {"end": period_end}}]},
    }


# ==================== Scenario steps ====================

async def checkout(handlers, sub_id="sub_123", member_id="mem_1", **metadata):
    return await handlers.create_subscription(
        make_event("checkout.session.completed", checkout_session(sub_id, member_id, **metadata))
    )


async def paid(handlers, invoice_id, **kwargs):
    return await handlers.record_payment_success(
        make_event("invoice.payment_succeeded", invoice(invoice_id, **kwargs))
    )


async def failed(handlers, invoice_id, **kwargs):
    return await handlers.record_payment_failure(
        make_event("invoice.payment_failed", invoice(invoice_id, **kwargs))
    )


async def updated(handlers, status, previous=None, **kwargs):
    return await handlers.reconcile_subscription(
        make_event(
            "customer.subscription.updated",
            provider_subscription(status=status, **kwargs),
            previous_attributes=previous or {},
        )
    )


async def deleted(handlers, sub_id="sub_123"):
    return await handlers.terminate_subscription(
        make_event("customer.subscription.deleted", provider_subscription(sub_id, status="canceled"))
    )


# ==================== Fixtures ====================

@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def member_store() -> InMemoryMemberStore:
    return InMemoryMemberStore(
        Member(id="mem_1", email="speaker@example.com", name="Ada Speaker"),
        Member(id="mem_2", email="other@example.com", name="Other Speaker"),
    )


@pytest.fixture
def gateway() -> AsyncMock:
    gw = AsyncMock(spec=StripeGateway)
    gw.retrieve_subscription.return_value = provider_subscription()
    return gw


@pytest.fixture
def handlers(state_store, member_store, gateway) -> TransitionHandlers:
    return TransitionHandlers(state_store, member_store, gateway, clock=lambda: NOW)


@pytest.fixture
def router(handlers) -> EventRouter:
    return EventRouter(handlers)


@pytest_asyncio.fixture(scope="session")
async def pool():
    """
    Database pool for tests that need PostgreSQL (session-scoped).

    Skips unless DB_DSN is set. Migrations run once after the pool opens.
    """
    if not os.getenv("DB_DSN"):
        pytest.skip("DB_DSN not set - database tests skipped")

    from subsync.db.pool import close_pool, get_pool
    from subsync.db.schema.migrate import migrate

    pool = await get_pool()
    await migrate()

    yield pool

    try:
        await asyncio.wait_for(close_pool(), timeout=10.0)
    except asyncio.TimeoutError:
        pass
