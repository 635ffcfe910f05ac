# rsvp_dispatch/infra/pg_attempt_repo_async.py
"""
Async PostgreSQL attempt recorder (asyncpg).

Every write that ends an attempt is guarded by ``status = 'PENDING'`` so a
terminal row is never overwritten by the dispatch loop.
"""
from __future__ import annotations

import json
from typing import Sequence

from rsvp_dispatch.core.domain import (
    AttemptOutcome,
    AttemptStatus,
    Channel,
    DispatchAttempt,
    MessageType,
)
from rsvp_dispatch.infra.db_resilience_async import safe_db_conn
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Terminal statuses that stamp ended_at
_ENDED_STATUSES = {
    AttemptStatus.COMPLETED.value,
    AttemptStatus.NO_ANSWER.value,
    AttemptStatus.BUSY.value,
    AttemptStatus.FAILED.value,
    AttemptStatus.UNDELIVERED.value,
    AttemptStatus.CANCELLED.value,
}


def _row_to_attempt(row) -> DispatchAttempt:
    """Convert an asyncpg Record to a DispatchAttempt dataclass."""
    response = row["provider_response"]
    if isinstance(response, str):
        response = json.loads(response)
    return DispatchAttempt(
        id=row["id"],
        tenant_id=row["tenant_id"],
        event_id=row["event_id"],
        recipient_id=row["recipient_id"],
        message_type=MessageType(row["message_type"]),
        channel=Channel(row["channel"]),
        status=AttemptStatus(row["status"]),
        job_id=row["job_id"],
        position=row["position"],
        phone=row["phone"],
        provider_id=row["provider_id"],
        provider_response=response or {},
        error_code=row["error_code"],
        error_message=row["error_message"],
        quota_held=row["quota_held"],
        retry_of=row["retry_of"],
        created_at=row["created_at"],
        dispatched_at=row["dispatched_at"],
        sent_at=row["sent_at"],
        ended_at=row["ended_at"],
    )


def _affected(result: str | None) -> int:
    """Parse the row count from an asyncpg command tag ('UPDATE 3')."""
    return int(result.split()[-1]) if result else 0


class AsyncPostgresAttemptRepository:
    """Durable per-attempt log."""

    async def create(self, attempt: DispatchAttempt) -> str:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO dispatch_attempts
                  (id, tenant_id, event_id, recipient_id, job_id, position,
                   message_type, channel, status, retry_of)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'PENDING', $9)
                """,
                attempt.id,
                attempt.tenant_id,
                attempt.event_id,
                attempt.recipient_id,
                attempt.job_id,
                attempt.position,
                attempt.message_type.value,
                attempt.channel.value,
                attempt.retry_of,
            )
        return attempt.id

    async def record(self, outcome: AttemptOutcome) -> bool:
        status = outcome.status.value
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE dispatch_attempts
                SET status = $2,
                    channel = $3,
                    phone = COALESCE($4, phone),
                    provider_id = $5,
                    provider_response = $6::jsonb,
                    error_code = $7,
                    error_message = $8,
                    quota_held = false,
                    sent_at = CASE WHEN $9 THEN now() ELSE sent_at END,
                    ended_at = CASE WHEN $10 THEN now() ELSE ended_at END,
                    updated_at = now()
                WHERE id = $1 AND status = 'PENDING'
                """,
                outcome.attempt_id,
                status,
                outcome.channel.value,
                outcome.phone,
                outcome.provider_id,
                json.dumps(outcome.provider_response or {}, default=str),
                outcome.error_code,
                outcome.error_message[:2000] if outcome.error_message else None,
                outcome.success,
                status in _ENDED_STATUSES,
            )
        return _affected(result) == 1

    async def release_hold(self, attempt_id: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE dispatch_attempts
                SET quota_held = false, updated_at = now()
                WHERE id = $1 AND status = 'PENDING' AND quota_held
                """,
                attempt_id,
            )
        return _affected(result) == 1

    async def mark_dispatched(self, attempt_ids: Sequence[str]) -> list[str]:
        if not attempt_ids:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                UPDATE dispatch_attempts
                SET dispatched_at = now(), updated_at = now()
                WHERE id = ANY($1::text[]) AND status = 'PENDING' AND dispatched_at IS NULL
                RETURNING id
                """,
                list(attempt_ids),
            )
        return [row["id"] for row in rows]

    async def get(self, attempt_id: str) -> DispatchAttempt | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM dispatch_attempts WHERE id = $1", attempt_id)
        return _row_to_attempt(row) if row else None

    async def list_for_job(self, job_id: str) -> list[DispatchAttempt]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM dispatch_attempts WHERE job_id = $1 ORDER BY position, created_at",
                job_id,
            )
        return [_row_to_attempt(row) for row in rows]

    async def pending_for_job(self, job_id: str) -> list[DispatchAttempt]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM dispatch_attempts
                WHERE job_id = $1 AND status = 'PENDING'
                ORDER BY position, created_at
                """,
                job_id,
            )
        return [_row_to_attempt(row) for row in rows]

    async def list_for_event(
        self, event_id: str, limit: int = 50, offset: int = 0,
    ) -> tuple[list[DispatchAttempt], int]:
        async with safe_db_conn() as conn:
            total = await conn.fetchval(
                "SELECT count(*)::int FROM dispatch_attempts WHERE event_id = $1",
                event_id,
            )
            rows = await conn.fetch(
                """
                SELECT * FROM dispatch_attempts
                WHERE event_id = $1
                ORDER BY created_at DESC, id
                LIMIT $2 OFFSET $3
                """,
                event_id,
                limit,
                offset,
            )
        return [_row_to_attempt(row) for row in rows], total

    async def correct_status(
        self, attempt_id: str, expected: AttemptStatus, new_status: AttemptStatus,
    ) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE dispatch_attempts
                SET status = $3,
                    ended_at = CASE WHEN $4 THEN COALESCE(ended_at, now()) ELSE ended_at END,
                    updated_at = now()
                WHERE id = $1 AND status = $2
                """,
                attempt_id,
                expected.value,
                new_status.value,
                new_status.value in _ENDED_STATUSES,
            )
        return _affected(result) == 1


_attempt_repo: AsyncPostgresAttemptRepository | None = None


def get_attempt_repo() -> AsyncPostgresAttemptRepository:
    """Get the global attempt repository instance."""
    global _attempt_repo
    if _attempt_repo is None:
        _attempt_repo = AsyncPostgresAttemptRepository()
    return _attempt_repo
