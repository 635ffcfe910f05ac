#!/usr/bin/env python3
# rsvp_dispatch/infra/migrate.py
"""
Apply the dispatch schema before deploying.

    python -m rsvp_dispatch.infra.migrate [--dry-run] [--dsn postgresql://...]

The service itself only checks the schema version at startup.
"""
import argparse
import asyncio
import sys

from rsvp_dispatch.config import settings
from rsvp_dispatch.infra.db_async import close_pool, init_pool
from rsvp_dispatch.infra.logging_config import get_logger, setup_logging
from rsvp_dispatch.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply RSVP dispatch database migrations")
    parser.add_argument("--dry-run", action="store_true", help="list pending migrations without applying them")
    parser.add_argument("--dsn", default=None, help="override the configured database DSN")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logger.info(f"Migrating {settings.pgdatabase if not args.dsn else 'custom DSN'} (env={settings.app_env})")

    try:
        await init_pool(args.dsn)
        result = await apply_migrations(dry_run=args.dry_run)
    except Exception as exc:
        logger.critical(f"Migration failed: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    verb = "pending" if result["dry_run"] else "applied"
    logger.info(f"{result['count']} migration(s) {verb}: {', '.join(result['applied']) or '-'}")
    return 0


if __name__ == "__main__":
    setup_logging(level=settings.log_level, use_json=settings.is_production)
    sys.exit(asyncio.run(main()))
