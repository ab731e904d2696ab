"""Forward-only SQL migrations for the billing tables.

Files in ``migrations/`` are named ``NNN_description.sql`` and applied in
version order, each in its own transaction, while a session advisory lock
keeps two deploys from migrating at once. The checksum of every applied file
is recorded so an edited migration is reported rather than silently skipped.
"""

import asyncio
import hashlib
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import asyncpg

from subsync.db.models import Table
from subsync.db.pool import close_pool, get_pool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

# pg advisory lock key held while migrations run
MIGRATION_LOCK_ID = 740_311

_FILENAME = re.compile(r"^(\d+)_[\w-]+\.sql$")

# Comments, quoted literals and dollar-quoted bodies are consumed whole so a
# semicolon inside them never ends a statement.
_SQL_TOKEN = re.compile(
    r"""
      (?P<comment> --[^\n]* | /\*.*?\*/ )
    | (?P<literal> '(?:[^']|'')*' | (?P<tag>\$\w*\$).*?(?P=tag) )
    | (?P<end> ; )
    """,
    re.VERBOSE | re.DOTALL,
)


@dataclass(frozen=True)
class Migration:
    """One migration file."""

    version: int
    path: Path

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


def discover_migrations(migrations_dir: Path) -> list[Migration]:
    """Migration files in version order; other files are ignored."""
    found = []
    for path in migrations_dir.glob("*.sql"):
        match = _FILENAME.match(path.name)
        if match:
            found.append(Migration(int(match.group(1)), path))
    return sorted(found, key=lambda m: m.version)


def pending_migrations(migrations_dir: Path, applied: set[int]) -> list[Migration]:
    return [m for m in discover_migrations(migrations_dir) if m.version not in applied]


def split_sql_statements(sql: str) -> list[str]:
    """
    Split a script on top-level semicolons.

    Comments are dropped. Each returned statement keeps its terminating
    semicolon; trailing text without one is returned as the last statement.
    """
    statements: list[str] = []
    current: list[str] = []
    pos = 0

    def flush() -> None:
        stmt = "".join(current).strip()
        if stmt and stmt != ";":
            statements.append(stmt)
        current.clear()

    for match in _SQL_TOKEN.finditer(sql):
        current.append(sql[pos:match.start()])
        pos = match.end()
        if match.group("comment"):
            continue
        current.append(match.group())
        if match.group("end"):
            flush()

    current.append(sql[pos:])
    flush()
    return statements


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {Table.SCHEMA_MIGRATIONS} (
            version    INTEGER PRIMARY KEY,
            filename   TEXT NOT NULL,
            checksum   TEXT NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


async def _applied_checksums(conn: asyncpg.Connection) -> dict[int, str]:
    rows = await conn.fetch(f"SELECT version, checksum FROM {Table.SCHEMA_MIGRATIONS}")
    return {row["version"]: row["checksum"] for row in rows}


@asynccontextmanager
async def _migration_lock(conn: asyncpg.Connection) -> AsyncIterator[None]:
    if not await conn.fetchval("SELECT pg_try_advisory_lock($1)", MIGRATION_LOCK_ID):
        raise RuntimeError(
            "Another migration is currently running. "
            "Wait for it to complete and try again."
        )
    try:
        yield
    finally:
        await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)


async def _apply(conn: asyncpg.Connection, migration: Migration) -> None:
    async with conn.transaction():
        for statement in split_sql_statements(migration.path.read_text(encoding="utf-8")):
            await conn.execute(statement)
        await conn.execute(
            f"""
            INSERT INTO {Table.SCHEMA_MIGRATIONS} (version, filename, checksum)
            VALUES ($1, $2, $3)
            """,
            migration.version,
            migration.path.name,
            migration.checksum,
        )


async def migrate(migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Apply every pending migration.

    Returns:
        Number of migrations applied in this run (0 when up to date)

    Raises:
        FileNotFoundError: If the migrations directory is missing
        RuntimeError: If another process holds the migration lock
        asyncpg.PostgresError: If a migration fails; earlier ones stay applied
    """
    if not migrations_dir.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    pool = await get_pool()
    async with pool.acquire() as conn:
        async with _migration_lock(conn):
            await _ensure_migrations_table(conn)
            applied = await _applied_checksums(conn)

            for migration in discover_migrations(migrations_dir):
                recorded = applied.get(migration.version)
                if recorded is not None and recorded != migration.checksum:
                    logger.warning(
                        f"Migration {migration.path.name} changed after it was applied; "
                        f"the database still has the original version"
                    )

            pending = pending_migrations(migrations_dir, set(applied))
            for migration in pending:
                await _apply(conn, migration)
                logger.info(f"Applied migration {migration.version:03d}: {migration.path.name}")

    return len(pending)


async def schema_version() -> Optional[int]:
    """Highest applied migration version, or None on an empty database."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        await _ensure_migrations_table(conn)
        return await conn.fetchval(f"SELECT MAX(version) FROM {Table.SCHEMA_MIGRATIONS}")


def main() -> None:
    """CLI entry point: bring the schema up to date."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    async def _run() -> None:
        try:
            applied = await migrate()
            version = await schema_version()
        finally:
            await close_pool()
        logger.info(f"{applied} migration(s) applied; schema version {version}")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
