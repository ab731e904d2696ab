"""Persistence of subscription, payment and member billing state.

Every idempotency guarantee of the webhook pipeline rests on the statements
in this module: inserts are single conditional ``INSERT ... ON CONFLICT DO
NOTHING`` statements and terminal-state protection lives in the ``WHERE``
clause of each update, so concurrent deliveries are serialized by PostgreSQL
rather than by application locks.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncIterator, Optional

import asyncpg

from subsync.db.models import (
    BillingPeriod,
    Member,
    Payment,
    PaymentStatus,
    PlanType,
    Subscription,
    SubscriptionStatus,
    Table,
)
from subsync.errors import TransientStoreFailure

logger = logging.getLogger(__name__)

# Statuses that count as a live subscription for a member
LIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)

# Failures a redelivery can recover from
_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class _PoolBound:
    """Runs statements on a pooled connection, or on one bound connection.

    A store returned by ``transaction()`` is bound to the transaction's
    connection so several calls commit or roll back together.
    """

    def __init__(self, pool: asyncpg.Pool, conn: Optional[asyncpg.Connection] = None):
        self._pool = pool
        self._conn = conn

    @property
    def connection(self) -> Optional[asyncpg.Connection]:
        return self._conn

    def bind(self, conn: Optional[asyncpg.Connection]):
        """Return a copy of this store that runs on ``conn``."""
        return type(self)(self._pool, conn)

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        if self._conn is not None:
            yield self._conn
            return
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _STORE_ERRORS as e:
            raise TransientStoreFailure(f"Store operation failed: {e}") from e

    @asynccontextmanager
    async def transaction(self):
        """Open a database transaction and yield a store bound to it.

        Nested use on an already-bound store opens a savepoint.
        """
        try:
            if self._conn is not None:
                async with self._conn.transaction():
                    yield self
            else:
                async with self._pool.acquire() as conn:
                    async with conn.transaction():
                        yield self.bind(conn)
        except _STORE_ERRORS as e:
            raise TransientStoreFailure(f"Store transaction failed: {e}") from e


class SubscriptionStateStore(_PoolBound):
    """Subscription rows and the payment ledger."""

    async def find_by_external_ref(
        self,
        external_ref: str,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """Look up a subscription by provider id.

        Args:
            external_ref: Provider subscription id
            for_update: Lock the row until the surrounding transaction ends

        Returns:
            Subscription, or None if the provider id is unknown
        """
        lock = " FOR UPDATE" if for_update else ""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT * FROM {Table.SUBSCRIPTIONS}
                WHERE external_subscription_ref = $1{lock}
                """,
                external_ref,
            )
        return Subscription.from_record(row) if row else None

    async def upsert_subscription(
        self,
        member_id: str,
        external_ref: str,
        plan_type: PlanType,
        billing_period: BillingPeriod,
        amount: Decimal,
        start_date: date,
        next_billing_date: Optional[date],
        status: str = SubscriptionStatus.ACTIVE.value,
        end_date: Optional[date] = None,
    ) -> tuple[Subscription, bool]:
        """Insert a subscription unless its provider id is already stored.

        Returns:
            (subscription, created) where ``created`` is False when the row
            already existed; an existing row is returned unchanged.
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.SUBSCRIPTIONS}
                    (member_id, external_subscription_ref, plan_type, billing_period,
                     status, amount, start_date, next_billing_date, end_date)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (external_subscription_ref) DO NOTHING
                RETURNING *
                """,
                member_id,
                external_ref,
                plan_type.value,
                billing_period.value,
                status,
                amount,
                start_date,
                next_billing_date,
                end_date,
            )
            if row is not None:
                return Subscription.from_record(row), True

            row = await conn.fetchrow(
                f"SELECT * FROM {Table.SUBSCRIPTIONS} WHERE external_subscription_ref = $1",
                external_ref,
            )
        return Subscription.from_record(row), False

    async def update_subscription(
        self,
        external_ref: str,
        *,
        status: Optional[str] = None,
        next_billing_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Optional[Subscription]:
        """Apply a transition to a live subscription.

        Cancelled rows are never modified; fields passed as None keep their
        stored value.

        Returns:
            The updated subscription, or None when the row is missing or
            already Cancelled
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {Table.SUBSCRIPTIONS} SET
                    status = COALESCE($2, status),
                    next_billing_date = COALESCE($3, next_billing_date),
                    end_date = COALESCE($4, end_date),
                    updated_at = now()
                WHERE external_subscription_ref = $1
                  AND status <> $5
                RETURNING *
                """,
                external_ref,
                status,
                next_billing_date,
                end_date,
                SubscriptionStatus.CANCELLED.value,
            )
        return Subscription.from_record(row) if row else None

    async def insert_payment_if_absent(
        self,
        external_payment_ref: str,
        subscription_id: int,
        member_id: str,
        amount: Decimal,
        status: PaymentStatus,
        paid_at: datetime,
        invoice_url: str = "",
        description: str = "",
    ) -> tuple[Payment, bool]:
        """Record a ledger entry once per (payment ref, status).

        Returns:
            (payment, created) where ``created`` is False for a duplicate
            delivery; the stored row is returned untouched.
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.PAYMENTS}
                    (subscription_id, member_id, external_payment_ref, amount,
                     status, paid_at, invoice_url, description)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (external_payment_ref, status) DO NOTHING
                RETURNING *
                """,
                subscription_id,
                member_id,
                external_payment_ref,
                amount,
                status.value,
                paid_at,
                invoice_url,
                description,
            )
            if row is not None:
                return Payment.from_record(row), True

            row = await conn.fetchrow(
                f"""
                SELECT * FROM {Table.PAYMENTS}
                WHERE external_payment_ref = $1 AND status = $2
                """,
                external_payment_ref,
                status.value,
            )
        return Payment.from_record(row), False

    async def find_payment(
        self,
        external_payment_ref: str,
        status: PaymentStatus,
    ) -> Optional[Payment]:
        """Ledger entry for a provider invoice with the given outcome, if any."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT * FROM {Table.PAYMENTS}
                WHERE external_payment_ref = $1 AND status = $2
                """,
                external_payment_ref,
                status.value,
            )
        return Payment.from_record(row) if row else None

    async def find_active_by_member(self, member_id: str) -> Optional[Subscription]:
        """Most recent live (Active or PastDue) subscription of a member."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT * FROM {Table.SUBSCRIPTIONS}
                WHERE member_id = $1 AND status = ANY($2::text[])
                ORDER BY start_date DESC, id DESC
                LIMIT 1
                """,
                member_id,
                list(LIVE_STATUSES),
            )
        return Subscription.from_record(row) if row else None

    async def list_payments(self, member_id: str, limit: int = 10) -> list[Payment]:
        """Most recent ledger entries of a member, newest first."""
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM {Table.PAYMENTS}
                WHERE member_id = $1
                ORDER BY paid_at DESC, id DESC
                LIMIT $2
                """,
                member_id,
                limit,
            )
        return [Payment.from_record(row) for row in rows]


class MemberStore(_PoolBound):
    """Billing fields of member records owned by the profile service."""

    async def get(self, member_id: str) -> Optional[Member]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {Table.MEMBERS} WHERE id = $1",
                member_id,
            )
        return Member.from_record(row) if row else None

    async def cache_customer_ref(self, member_id: str, customer_ref: str) -> Optional[str]:
        """Store the provider customer id unless one is already cached.

        Returns:
            The customer id now on the member (possibly the older one)
        """
        async with self._acquire() as conn:
            return await conn.fetchval(
                f"""
                UPDATE {Table.MEMBERS} SET
                    billing_customer_ref = COALESCE(billing_customer_ref, $2),
                    updated_at = now()
                WHERE id = $1
                RETURNING billing_customer_ref
                """,
                member_id,
                customer_ref,
            )

    async def clear_customer_ref(self, member_id: str) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {Table.MEMBERS}
                SET billing_customer_ref = NULL, updated_at = now()
                WHERE id = $1
                """,
                member_id,
            )

    async def update_status_cache(
        self,
        member_id: str,
        status: str,
        current_plan: Optional[str],
    ) -> None:
        """Refresh the denormalized subscription fields on the member."""
        async with self._acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {Table.MEMBERS} SET
                    subscription_status = $2,
                    current_plan = $3,
                    updated_at = now()
                WHERE id = $1
                """,
                member_id,
                status,
                current_plan,
            )
        logger.debug(f"Member {member_id} status cache: {status} / {current_plan}")
