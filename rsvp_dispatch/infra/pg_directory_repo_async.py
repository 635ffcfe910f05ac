# rsvp_dispatch/infra/pg_directory_repo_async.py
"""Read-only access to tenants, events and guests (asyncpg)."""
from __future__ import annotations

from typing import Sequence

from rsvp_dispatch.core.domain import EventContext, Plan, Recipient, RsvpStatus, Tenant
from rsvp_dispatch.infra.db_resilience_async import safe_db_conn
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_tenant(row) -> Tenant:
    return Tenant(
        id=row["id"],
        plan=Plan(row["plan"]),
        voice_addon_enabled=row["voice_addon_enabled"],
        voice_phone_number_id=row["voice_phone_number_id"],
        subscription_period_end=row["subscription_period_end"],
        is_active=row["is_active"],
    )


def _row_to_event(row) -> EventContext:
    return EventContext(
        id=row["id"],
        tenant_id=row["tenant_id"],
        title=row["title"],
        starts_at=row["starts_at"],
        venue=row["venue"],
        address=row["address"],
        slug=row["slug"],
    )


def _row_to_recipient(row) -> Recipient:
    return Recipient(
        id=row["id"],
        event_id=row["event_id"],
        name=row["name"],
        phone=row["phone"],
        rsvp_status=RsvpStatus(row["rsvp_status"]),
        table_name=row["table_name"],
        slug=row["slug"],
    )


class AsyncPostgresDirectoryRepository:

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM tenants WHERE id = $1", tenant_id)
        return _row_to_tenant(row) if row else None

    async def get_event(self, event_id: str) -> EventContext | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM events WHERE id = $1", event_id)
        return _row_to_event(row) if row else None

    async def get_recipients(self, event_id: str, recipient_ids: Sequence[str]) -> list[Recipient]:
        """Keeps the caller's order; ids that do not belong to the event are dropped."""
        if not recipient_ids:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT r.* FROM unnest($2::text[]) WITH ORDINALITY AS wanted(id, ord)
                JOIN recipients r ON r.id = wanted.id
                WHERE r.event_id = $1
                ORDER BY wanted.ord
                """,
                event_id,
                list(recipient_ids),
            )
        recipients = [_row_to_recipient(row) for row in rows]
        if len(recipients) != len(recipient_ids):
            logger.warning(
                f"{len(recipient_ids) - len(recipients)} recipient id(s) not found for event {event_id}"
            )
        return recipients

    async def get_recipient(self, recipient_id: str) -> Recipient | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM recipients WHERE id = $1", recipient_id)
        return _row_to_recipient(row) if row else None


_directory_repo: AsyncPostgresDirectoryRepository | None = None


def get_directory_repo() -> AsyncPostgresDirectoryRepository:
    global _directory_repo
    if _directory_repo is None:
        _directory_repo = AsyncPostgresDirectoryRepository()
    return _directory_repo
