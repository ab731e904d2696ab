"""PostgreSQL access: pool, schema migrations, table vocabulary."""

from subsync.db.pool import close_pool, get_pool

__all__ = ["close_pool", "get_pool"]
