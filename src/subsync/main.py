"""Startup check: configuration, billing secrets, database and schema."""

import asyncio
import logging
import sys

from subsync.config import get_config
from subsync.db import close_pool, get_pool
from subsync.db.schema import schema_version


async def boot() -> None:
    """
    Boot sequence: load config → validate billing → pool → schema → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    logger = logging.getLogger(__name__)

    try:
        config = get_config()
        config.require_billing()
        logger.info(f"Configuration loaded: env={config.env}")

        await get_pool()
        logger.info(
            f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
        )

        version = await schema_version()
        if version is None:
            raise RuntimeError("Schema not migrated; run subsync-migrate")
        logger.info(f"Schema version: {version}")

        await close_pool()
        logger.info("Startup check complete")

    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
