# rsvp_dispatch/infra/migrations_async.py
"""
SQL migrations for the dispatch schema.

Files in ``rsvp_dispatch/infra/sql`` are applied in filename order and
recorded in ``schema_migrations``. The run takes a transaction-scoped
advisory lock, so a web and a worker process deploying at the same time
apply each file exactly once.
"""
from __future__ import annotations
from pathlib import Path

from rsvp_dispatch.infra.db_async import db_conn
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Arbitrary constant shared by every migration runner of this schema
MIGRATION_LOCK_KEY = 0x525356504453  # "RSVPDS"

_CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations(
  version text PRIMARY KEY,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""


def sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in sql_dir().glob("*.sql") if p.is_file())


def pending(files: list[Path], applied: set[str]) -> list[Path]:
    return [p for p in files if p.name not in applied]


async def applied_versions(conn) -> set[str]:
    await conn.execute(_CREATE_TRACKING_TABLE)
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migrations(dry_run: bool = False) -> dict:
    """
    Apply every pending migration in one transaction.

    Returns ``{"ok", "applied", "count", "dry_run"}``; with ``dry_run`` the
    pending files are listed and nothing is executed.
    """
    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_KEY)
        todo = pending(migration_files(), await applied_versions(conn))

        if dry_run:
            names = [p.name for p in todo]
            logger.info(f"Pending migrations: {', '.join(names) or 'none'}")
            return {"ok": True, "applied": names, "count": len(names), "dry_run": True}

        for path in todo:
            logger.info(f"Applying migration {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)

    names = [p.name for p in todo]
    logger.info(f"Migrations complete: {len(names)} applied")
    return {"ok": True, "applied": names, "count": len(names), "dry_run": False}
