# rsvp_dispatch/core/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Protocol, Optional, Sequence

from rsvp_dispatch.core.domain import (
    AttemptOutcome,
    AttemptStatus,
    BulkJob,
    Channel,
    ChannelUsage,
    DispatchAttempt,
    DispatchResult,
    EventContext,
    JobStatus,
    MessageType,
    Recipient,
    ReserveResult,
    Tenant,
)


# ============================================================================
# QUOTA LEDGER
# ============================================================================

class QuotaLedger(Protocol):
    async def reserve(
        self,
        tenant_id: str,
        channel: Channel,
        count: int,
        attempt_ids: Sequence[str] = (),
    ) -> ReserveResult:
        """
        Atomically check quota and, when allowed, hold it for ``attempt_ids``.

        Attempts already holding quota are not counted twice, so reserving the
        same attempt again is a no-op that returns allowed=True.
        """
        ...

    async def check(self, tenant_id: str, channel: Channel) -> ReserveResult:
        """Non-mutating read of remaining quota (coarse gate for bulk jobs)."""
        ...

    async def increment(self, tenant_id: str, counts: dict[Channel, int]) -> None:
        """Bump the stored usage counters for successful attempts."""
        ...

    async def usage(self, tenant_id: str) -> list[ChannelUsage]: ...


# ============================================================================
# ATTEMPT RECORDER
# ============================================================================

class AttemptRecorder(Protocol):
    async def create(self, attempt: DispatchAttempt) -> str:
        """Insert a standalone PENDING attempt (single send / retry)."""
        ...

    async def record(self, outcome: AttemptOutcome) -> bool:
        """
        Write the terminal status of a PENDING attempt and release its quota hold.

        True  => the attempt transitioned now
        False => it was already terminal (nothing written)
        """
        ...

    async def mark_dispatched(self, attempt_ids: Sequence[str]) -> list[str]:
        """
        Claim PENDING attempts for a window by stamping dispatched_at.

        Returns the ids actually claimed; an attempt cancelled concurrently or
        already claimed by another run is not returned and must not be sent.
        """
        ...

    async def get(self, attempt_id: str) -> Optional[DispatchAttempt]: ...

    async def list_for_job(self, job_id: str) -> list[DispatchAttempt]: ...

    async def pending_for_job(self, job_id: str) -> list[DispatchAttempt]:
        """PENDING attempts in creation order."""
        ...

    async def list_for_event(
        self, event_id: str, limit: int = 50, offset: int = 0,
    ) -> tuple[list[DispatchAttempt], int]: ...

    async def correct_status(
        self, attempt_id: str, expected: AttemptStatus, new_status: AttemptStatus,
    ) -> bool: ...

    async def release_hold(self, attempt_id: str) -> bool:
        """Clear the quota hold of a still-PENDING attempt whose outcome could not be recorded."""
        ...


# ============================================================================
# BULK JOB STORE
# ============================================================================

class BulkJobStore(Protocol):
    async def create(self, job: BulkJob, attempts: Sequence[DispatchAttempt]) -> str:
        """Insert the job and all its PENDING attempts in one transaction."""
        ...

    async def get(self, job_id: str) -> Optional[BulkJob]: ...

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        """Fresh read of the persisted status (cancellation flag)."""
        ...

    async def mark_processing(self, job_id: str) -> bool:
        """PENDING -> PROCESSING. False when the job is in any other status."""
        ...

    async def mark_completed(self, job_id: str) -> bool:
        """PROCESSING -> COMPLETED. False when the job was cancelled meanwhile."""
        ...

    async def mark_failed(self, job_id: str, error: str) -> None: ...

    async def add_progress(
        self, job_id: str, processed: int, success: int, failed: int, skipped_limit: int,
    ) -> None: ...

    async def cancel(self, job_id: str) -> int:
        """
        Cancel an active job and every attempt not yet handed to a provider.

        Returns the number of attempts cancelled.
        Raises JobNotFoundError / JobStateError.
        """
        ...

    async def cancel_remaining(self, job_id: str) -> int:
        """Cancel attempts still PENDING on an already-cancelled job."""
        ...

    async def list_resumable(self, now: datetime) -> list[str]:
        """PROCESSING jobs plus PENDING jobs whose scheduled time has passed."""
        ...

    async def list_due(self, now: datetime) -> list[str]: ...


# ============================================================================
# DIRECTORY (tenants / events / guests)
# ============================================================================

class Directory(Protocol):
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    async def get_event(self, event_id: str) -> Optional[EventContext]: ...

    async def get_recipients(self, event_id: str, recipient_ids: Sequence[str]) -> list[Recipient]:
        """Recipients of ``event_id`` in the order of ``recipient_ids``; unknown ids are dropped."""
        ...

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]: ...


# ============================================================================
# CHANNEL SENDER
# ============================================================================

class ChannelSender(Protocol):
    async def send_invite(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult: ...

    async def send_reminder(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult: ...

    async def send_interactive_invite(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult: ...

    async def send_interactive_reminder(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult: ...

    async def place_call(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult: ...

    def configuration_error(
        self, message_type: MessageType, channel: Optional[Channel], tenant: Tenant,
    ) -> Optional[str]:
        """Reason the job cannot dispatch at all, or None when configured."""
        ...
