"""asyncpg connection pool for the StepSync tables.

Every ``get_connection()`` block runs inside a single transaction, so a
multi-statement write (e.g. enqueueing a whole webhook batch) either
commits entirely or not at all.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import asyncpg

from stepsync.config import Settings, get_settings

logger = logging.getLogger("stepsync.db")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent / "db" / "schema.sql"

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.db_pool_min_size,
        s.db_pool_max_size,
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection() -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection wrapped in a transaction.

    Usage::

        async with get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM daily_step_totals WHERE date = $1", today)
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


async def apply_schema(path: Path | None = None) -> None:
    """Create the StepSync tables if they do not exist."""
    target = path or _SCHEMA_PATH
    ddl = target.read_text(encoding="utf-8")
    async with get_connection() as conn:
        await conn.execute(ddl)
    logger.info("Applied schema from %s", target)
