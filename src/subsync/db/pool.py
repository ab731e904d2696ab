"""Shared asyncpg pool for the webhook pipeline and the status query."""

import asyncio
import logging
from typing import Optional

import asyncpg

from subsync.config import get_config

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0

# Row locks taken by concurrent deliveries must not outlive the provider's
# request timeout; a lock wait past this fails and the event is redelivered.
SERVER_SETTINGS = {
    "application_name": "subsync",
    "lock_timeout": "5s",
    "statement_timeout": "15s",
}

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Return the process-wide pool, creating it on first use.

    A new pool is checked with ``SELECT 1`` before it is handed out.

    Raises:
        asyncio.TimeoutError: If PostgreSQL does not answer within 5 seconds
        RuntimeError: If the connectivity check fails
    """
    global _pool

    if _pool is not None:
        return _pool

    config = get_config()

    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
                server_settings=SERVER_SETTINGS,
            ),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"Database connection timed out after {CONNECT_TIMEOUT_SECONDS:.0f} seconds. "
            "Ensure PostgreSQL is running and accessible."
        ) from None

    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
        if result != 1:
            raise RuntimeError(f"expected 1, got {result}")
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database health check failed: {e}") from e

    _pool = pool
    logger.info(f"Database pool ready (min={config.db_pool_min}, max={config.db_pool_max})")
    return _pool


async def close_pool() -> None:
    """
    Close the pool if one was created.

    Terminates the pool when a graceful close hangs, which means a
    connection was never released.
    """
    global _pool
    if _pool is None:
        return

    try:
        await asyncio.wait_for(_pool.close(), timeout=CONNECT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Pool close timed out; terminating (likely leaked connection)")
        _pool.terminate()
    finally:
        _pool = None
