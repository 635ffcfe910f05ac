# rsvp_dispatch/infra/pg_bulk_job_repo_async.py
"""
Async PostgreSQL bulk job store (asyncpg).

Status transitions are conditional UPDATEs, so two processes racing on the
same job cannot both move it forward.
"""
from __future__ import annotations

from datetime import datetime
from typing import Sequence

from rsvp_dispatch.core.domain import BulkJob, Channel, DispatchAttempt, JobStatus, MessageType
from rsvp_dispatch.core.errors import JobNotFoundError, JobStateError
from rsvp_dispatch.infra.db_resilience_async import safe_db_conn
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_job(row) -> BulkJob:
    """Convert an asyncpg Record to a BulkJob dataclass."""
    return BulkJob(
        id=row["id"],
        tenant_id=row["tenant_id"],
        event_id=row["event_id"],
        message_type=MessageType(row["message_type"]),
        status=JobStatus(row["status"]),
        channel_override=Channel(row["channel_override"]) if row["channel_override"] else None,
        template_override=row["template_override"],
        content_sid=row["content_sid"],
        total=row["total"],
        processed=row["processed"],
        success=row["success"],
        failed=row["failed"],
        skipped_limit=row["skipped_limit"],
        error=row["error"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _affected(result: str | None) -> int:
    return int(result.split()[-1]) if result else 0


_CANCEL_UNDISPATCHED_SQL = """
    UPDATE dispatch_attempts
    SET status = 'CANCELLED', quota_held = false, ended_at = now(), updated_at = now()
    WHERE job_id = $1 AND status = 'PENDING' AND dispatched_at IS NULL
"""


class AsyncPostgresBulkJobRepository:
    """Bulk jobs and their lifecycle."""

    async def create(self, job: BulkJob, attempts: Sequence[DispatchAttempt]) -> str:
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(
                """
                INSERT INTO bulk_jobs
                  (id, tenant_id, event_id, message_type, channel_override, template_override,
                   content_sid, status, total, error, scheduled_at, completed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                job.id,
                job.tenant_id,
                job.event_id,
                job.message_type.value,
                job.channel_override.value if job.channel_override else None,
                job.template_override,
                job.content_sid,
                job.status.value,
                job.total,
                job.error,
                job.scheduled_at,
                job.completed_at,
            )

            if attempts:
                await conn.executemany(
                    """
                    INSERT INTO dispatch_attempts
                      (id, tenant_id, event_id, recipient_id, job_id, position,
                       message_type, channel, status)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'PENDING')
                    """,
                    [
                        (
                            a.id, a.tenant_id, a.event_id, a.recipient_id, job.id,
                            a.position, a.message_type.value, a.channel.value,
                        )
                        for a in attempts
                    ],
                )
        return job.id

    async def get(self, job_id: str) -> BulkJob | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM bulk_jobs WHERE id = $1", job_id)
        return _row_to_job(row) if row else None

    async def get_status(self, job_id: str) -> JobStatus | None:
        async with safe_db_conn() as conn:
            status = await conn.fetchval("SELECT status FROM bulk_jobs WHERE id = $1", job_id)
        return JobStatus(status) if status else None

    async def mark_processing(self, job_id: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE bulk_jobs
                SET status = 'PROCESSING', started_at = now(), updated_at = now()
                WHERE id = $1 AND status = 'PENDING'
                """,
                job_id,
            )
        return _affected(result) == 1

    async def mark_completed(self, job_id: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE bulk_jobs
                SET status = 'COMPLETED', completed_at = now(), updated_at = now()
                WHERE id = $1 AND status = 'PROCESSING'
                """,
                job_id,
            )
        return _affected(result) == 1

    async def mark_failed(self, job_id: str, error: str) -> None:
        """Fail an active job; attempts not yet handed to a provider are cancelled."""
        async with safe_db_conn(autocommit=False) as conn:
            result = await conn.execute(
                """
                UPDATE bulk_jobs
                SET status = 'FAILED', error = $2, completed_at = now(), updated_at = now()
                WHERE id = $1 AND status IN ('PENDING', 'PROCESSING')
                """,
                job_id,
                error[:2000],
            )
            if _affected(result):
                await conn.execute(_CANCEL_UNDISPATCHED_SQL, job_id)

    async def add_progress(
        self, job_id: str, processed: int, success: int, failed: int, skipped_limit: int,
    ) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE bulk_jobs
                SET processed = processed + $2,
                    success = success + $3,
                    failed = failed + $4,
                    skipped_limit = skipped_limit + $5,
                    updated_at = now()
                WHERE id = $1
                """,
                job_id,
                processed,
                success,
                failed,
                skipped_limit,
            )

    async def cancel(self, job_id: str) -> int:
        async with safe_db_conn(autocommit=False) as conn:
            status = await conn.fetchval(
                "SELECT status FROM bulk_jobs WHERE id = $1 FOR UPDATE",
                job_id,
            )
            if status is None:
                raise JobNotFoundError(f"Job '{job_id}' not found")
            if not JobStatus(status).is_active:
                raise JobStateError(f"Job is already {status.lower()}")

            result = await conn.execute(_CANCEL_UNDISPATCHED_SQL, job_id)
            await conn.execute(
                """
                UPDATE bulk_jobs
                SET status = 'CANCELLED', completed_at = now(), updated_at = now()
                WHERE id = $1
                """,
                job_id,
            )
        return _affected(result)

    async def cancel_remaining(self, job_id: str) -> int:
        async with safe_db_conn() as conn:
            result = await conn.execute(_CANCEL_UNDISPATCHED_SQL, job_id)
        return _affected(result)

    async def list_resumable(self, now: datetime) -> list[str]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT id FROM bulk_jobs
                WHERE status = 'PROCESSING'
                   OR (status = 'PENDING' AND scheduled_at <= $1)
                ORDER BY created_at
                """,
                now,
            )
        return [row["id"] for row in rows]

    async def list_due(self, now: datetime) -> list[str]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT id FROM bulk_jobs
                WHERE status = 'PENDING' AND scheduled_at <= $1
                ORDER BY scheduled_at, created_at
                """,
                now,
            )
        return [row["id"] for row in rows]


_bulk_job_repo: AsyncPostgresBulkJobRepository | None = None


def get_bulk_job_repo() -> AsyncPostgresBulkJobRepository:
    """Get the global bulk job repository instance."""
    global _bulk_job_repo
    if _bulk_job_repo is None:
        _bulk_job_repo = AsyncPostgresBulkJobRepository()
    return _bulk_job_repo
