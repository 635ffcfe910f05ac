# rsvp_dispatch/infra/db_async.py
"""
asyncpg connection pool shared by the repositories.

One pool per process. Repositories go through ``db_conn`` (or the retrying
``safe_db_conn``); migrations and health checks use ``get_pool`` directly.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from rsvp_dispatch.config import settings
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

ISOLATION_LEVELS = frozenset({"serializable", "repeatable_read", "read_committed"})

_pool: asyncpg.Pool | None = None


async def init_pool(dsn: str | None = None) -> None:
    """
    Create the pool once per process.

    Sessions run in UTC so ``now()`` and billing-period arithmetic in SQL
    agree with the engine's timezone-aware datetimes.
    """
    global _pool

    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        dsn=dsn or settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        timeout=settings.pg_connect_timeout,
        server_settings={
            "application_name": f"rsvp_dispatch:{settings.run_mode}",
            "statement_timeout": str(settings.pg_statement_timeout_ms),
            "timezone": "UTC",
        },
    )
    logger.info(f"Database pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool

    if _pool is None:
        return

    pool, _pool = _pool, None
    await pool.close()
    logger.info("Database pool closed")


@asynccontextmanager
async def db_conn(
    autocommit: bool = True,
    isolation: str | None = None,
) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

    Usage:
        async with db_conn(autocommit=False, isolation="serializable") as conn:
            await conn.fetchrow("SELECT ... FOR UPDATE", tenant_id)

    With ``autocommit=False`` the block is one transaction: committed when it
    exits normally, rolled back when it raises. ``isolation`` applies only
    to such blocks.
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    if isolation is not None and isolation not in ISOLATION_LEVELS:
        raise ValueError(f"Unsupported isolation level: {isolation}")

    async with _pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction(isolation=isolation):
                yield conn


async def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized")
    return _pool


def pool_stats() -> dict:
    """Pool occupancy for the readiness report; empty before init."""
    if _pool is None:
        return {}
    return {
        "size": _pool.get_size(),
        "idle": _pool.get_idle_size(),
        "max": _pool.get_max_size(),
    }
