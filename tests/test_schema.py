"""Tests for database schema and migrations.

The migration-runner and constraint tests need PostgreSQL and are skipped
unless DB_DSN is set.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import asyncpg
import pytest

from subsync.db.models import BillingPeriod, PaymentStatus, PlanType
from subsync.db.schema import migrate, schema_version
from subsync.db.schema.migrate import (
    MIGRATIONS_DIR,
    discover_migrations,
    pending_migrations,
    split_sql_statements,
)
from subsync.payments.store import SubscriptionStateStore


class TestSplitStatements:
    """SQL script splitting."""

    def test_simple_statements(self):
        sql = "CREATE TABLE a (x INT);\nCREATE TABLE b (y INT);"

        assert split_sql_statements(sql) == ["CREATE TABLE a (x INT);", "CREATE TABLE b (y INT);"]

    def test_semicolon_in_string(self):
        sql = "INSERT INTO a VALUES ('x;y');"

        assert split_sql_statements(sql) == ["INSERT INTO a VALUES ('x;y');"]

    def test_dollar_quoted_body(self):
        sql = (
            "CREATE FUNCTION f() RETURNS trigger AS $$ BEGIN NEW.x := 1; RETURN NEW; END; $$ "
            "LANGUAGE plpgsql;\nSELECT 1;"
        )

        statements = split_sql_statements(sql)

        assert len(statements) == 2
        assert statements[0].endswith("LANGUAGE plpgsql;")

    def test_tagged_dollar_quote(self):
        sql = "DO $body$ BEGIN PERFORM 1; END $body$;\nSELECT 2;"

        assert split_sql_statements(sql) == [
            "DO $body$ BEGIN PERFORM 1; END $body$;",
            "SELECT 2;",
        ]

    def test_escaped_quote(self):
        sql = "INSERT INTO a VALUES ('it''s; fine'); SELECT 1;"

        assert len(split_sql_statements(sql)) == 2

    def test_comments_stripped(self):
        sql = "-- header; with semicolon\nSELECT 1; /* block; */ SELECT 2"

        assert split_sql_statements(sql) == ["SELECT 1;", "SELECT 2"]


class TestPendingMigrations:

    def test_ordered_and_filtered(self, tmp_path):
        for name in ("002_b.sql", "001_a.sql", "010_c.sql", "notes.sql", "readme.txt"):
            (tmp_path / name).write_text("SELECT 1;")

        pending = pending_migrations(tmp_path, applied={1})

        assert [m.version for m in pending] == [2, 10]
        assert pending[0].path.name == "002_b.sql"

    def test_packaged_migrations_present(self):
        migrations = discover_migrations(MIGRATIONS_DIR)

        assert migrations[0].version == 1
        assert len(migrations[0].checksum) == 64

    def test_billing_schema_constraints(self):
        sql = (MIGRATIONS_DIR / "001_billing.sql").read_text()

        assert "UNIQUE (external_payment_ref, status)" in sql
        assert "external_subscription_ref TEXT NOT NULL UNIQUE" in sql


@pytest.fixture(scope="function")
async def clean_db(pool):
    """Clean database before and after each test."""
    async with pool.acquire() as conn:
        await conn.execute("""
            DROP SCHEMA public CASCADE;
            CREATE SCHEMA public;
        """)
    yield
    async with pool.acquire() as conn:
        await conn.execute("""
            DROP SCHEMA public CASCADE;
            CREATE SCHEMA public;
        """)


class TestMigrations:
    """Migration runner against a live database."""

    @pytest.mark.asyncio
    async def test_migrate_fresh_database(self, pool, clean_db):
        applied = await migrate()
        assert applied == 1

        assert await schema_version() == 1

    @pytest.mark.asyncio
    async def test_migrate_idempotent(self, pool, clean_db):
        assert await migrate() == 1
        assert await migrate() == 0
        assert await schema_version() == 1

    @pytest.mark.asyncio
    async def test_schema_version_before_migrations(self, pool, clean_db):
        assert await schema_version() is None


class TestConstraints:
    """Idempotency guarantees enforced by PostgreSQL."""

    @pytest.mark.asyncio
    async def test_duplicate_subscription_and_payment(self, pool, clean_db):
        await migrate()
        async with pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO members (id, email) VALUES ('mem_1', 'speaker@example.com')"
            )

        store = SubscriptionStateStore(pool)
        kwargs = dict(
            member_id="mem_1",
            external_ref="sub_123",
            plan_type=PlanType.STANDARD,
            billing_period=BillingPeriod.MONTHLY,
            amount=Decimal("19.99"),
            start_date=date(2025, 3, 1),
            next_billing_date=date(2025, 4, 1),
        )
        sub, created = await store.upsert_subscription(**kwargs)
        again, created_again = await store.upsert_subscription(**kwargs)

        assert created and not created_again
        assert again.id == sub.id
        assert again.amount == Decimal("19.99")

        payment_kwargs = dict(
            external_payment_ref="in_2",
            subscription_id=sub.id,
            member_id="mem_1",
            amount=Decimal("19.99"),
            status=PaymentStatus.SUCCEEDED,
            paid_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )
        _, first = await store.insert_payment_if_absent(**payment_kwargs)
        _, second = await store.insert_payment_if_absent(**payment_kwargs)

        assert first and not second
        assert await store.find_payment("in_2", PaymentStatus.SUCCEEDED) is not None
        assert await store.find_payment("in_2", PaymentStatus.FAILED) is None
        assert len(await store.list_payments("mem_1")) == 1

    @pytest.mark.asyncio
    async def test_cancelled_row_not_updated(self, pool, clean_db):
        await migrate()
        async with pool.acquire() as conn:
            await conn.execute("INSERT INTO members (id) VALUES ('mem_1')")

        store = SubscriptionStateStore(pool)
        await store.upsert_subscription(
            member_id="mem_1",
            external_ref="sub_123",
            plan_type=PlanType.PLUS,
            billing_period=BillingPeriod.YEARLY,
            amount=Decimal("99.00"),
            start_date=date(2025, 3, 1),
            next_billing_date=None,
            status="Cancelled",
        )

        assert await store.update_subscription("sub_123", status="Active") is None
        assert (await store.find_by_external_ref("sub_123")).status == "Cancelled"

    @pytest.mark.asyncio
    async def test_invalid_plan_rejected(self, pool, clean_db):
        await migrate()
        async with pool.acquire() as conn:
            await conn.execute("INSERT INTO members (id) VALUES ('mem_1')")
            with pytest.raises(asyncpg.CheckViolationError):
                await conn.execute("""
                    INSERT INTO subscriptions
                        (member_id, external_subscription_ref, plan_type, billing_period,
                         status, amount, start_date)
                    VALUES ('mem_1', 'sub_x', 'Gold', 'Monthly', 'Active', 1.00, CURRENT_DATE)
                """)
