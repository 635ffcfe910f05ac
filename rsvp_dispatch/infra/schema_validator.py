# rsvp_dispatch/infra/schema_validator.py
"""
Startup check that the database is at the schema this build ships.

The expected version is ``settings.expected_schema_version`` when set,
otherwise the newest file bundled in ``rsvp_dispatch/infra/sql``.
"""
from __future__ import annotations
from rsvp_dispatch.config import settings
from rsvp_dispatch.infra.db_async import db_conn
from rsvp_dispatch.infra.logging_config import get_logger
from rsvp_dispatch.infra.migrations_async import migration_files

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m rsvp_dispatch.infra.migrate"


def expected_version() -> str | None:
    if settings.expected_schema_version:
        return settings.expected_schema_version
    files = migration_files()
    return files[-1].name if files else None


async def _applied(conn) -> list[str] | None:
    """Applied versions in order, or None when the tracking table is missing."""
    if await conn.fetchval("SELECT to_regclass('public.schema_migrations')") is None:
        return None
    rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
    return [row["version"] for row in rows]


async def validate_schema_version() -> dict:
    """
    Raises:
        RuntimeError: no migrations applied, or latest applied != expected
    """
    async with db_conn() as conn:
        versions = await _applied(conn)

    expected = expected_version()
    current = versions[-1] if versions else None

    if current is None:
        error = f"No migrations have been applied. {_MIGRATE_HINT}"
    elif current != expected:
        error = f"Schema version mismatch: expected {expected}, found {current}. {_MIGRATE_HINT}"
    else:
        logger.info(f"Schema version validated: {current}")
        return {"ok": True, "current_version": current, "expected_version": expected}

    logger.critical(error)
    raise RuntimeError(error)


async def get_schema_info() -> dict:
    async with db_conn() as conn:
        versions = await _applied(conn)

    expected = expected_version()
    if versions is None:
        return {"initialized": False, "migrations_applied": 0, "latest_version": None, "expected_version": expected}

    latest = versions[-1] if versions else None
    return {
        "initialized": True,
        "migrations_applied": len(versions),
        "latest_version": latest,
        "expected_version": expected,
        "is_compatible": latest == expected,
    }
