# rsvp_dispatch/core/status.py
"""Read-only job status, cooperative cancellation, usage and attempt history."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from rsvp_dispatch.core.domain import ChannelUsage, DispatchAttempt, JobStatusView
from rsvp_dispatch.core.errors import JobNotFoundError, JobStateError, TenantNotFoundError
from rsvp_dispatch.core.ports import AttemptRecorder, BulkJobStore, Directory, QuotaLedger
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CancelResult:
    success: bool
    error: Optional[str] = None
    cancelled_attempts: int = 0


class JobStatusService:
    """Every read goes to the store; nothing is cached in process memory."""

    def __init__(
        self,
        *,
        jobs: BulkJobStore,
        recorder: AttemptRecorder,
        ledger: QuotaLedger,
        directory: Directory,
    ):
        self._jobs = jobs
        self._recorder = recorder
        self._ledger = ledger
        self._directory = directory

    async def get_job_status(self, job_id: str) -> JobStatusView:
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        attempts = await self._recorder.list_for_job(job_id)
        return JobStatusView(job=job, attempts=attempts)

    async def cancel_job(self, job_id: str) -> CancelResult:
        """
        Cancel a PENDING or PROCESSING job.

        A window already in flight finishes; everything not yet handed to a
        provider becomes CANCELLED. Terminal jobs return an explanatory error.
        """
        try:
            cancelled = await self._jobs.cancel(job_id)
        except JobStateError as exc:
            return CancelResult(success=False, error=exc.detail)

        logger.info(f"Job cancelled: {cancelled} attempt(s) cancelled", extra={"job_id": job_id})
        return CancelResult(success=True, cancelled_attempts=cancelled)

    async def get_usage(self, tenant_id: str) -> list[ChannelUsage]:
        if await self._directory.get_tenant(tenant_id) is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found")
        return await self._ledger.usage(tenant_id)

    async def list_event_attempts(
        self, event_id: str, limit: int = 50, offset: int = 0,
    ) -> tuple[list[DispatchAttempt], int]:
        return await self._recorder.list_for_event(event_id, limit=limit, offset=offset)
