from __future__ import annotations

from psycopg_pool import AsyncConnectionPool

from .config import Settings


def create_pool(config: Settings) -> AsyncConnectionPool:
    """Build a closed pool; callers open it in the application lifespan."""

    if config.database_url is None:
        raise ValueError("DATABASE_URL is required for the postgres ledger")
    statement_timeout_ms = int(config.ledger_timeout_seconds * 1000)
    return AsyncConnectionPool(
        conninfo=config.database_url.unicode_string(),
        min_size=config.db_pool_min_size,
        max_size=config.db_pool_max_size,
        timeout=config.ledger_timeout_seconds,
        kwargs={"options": f"-c statement_timeout={statement_timeout_ms}"},
        open=False,
    )
