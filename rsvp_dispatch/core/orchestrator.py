# rsvp_dispatch/core/orchestrator.py
"""
Job orchestrator: owns the BulkJob lifecycle and the single-recipient paths.

    PENDING -> PROCESSING -> COMPLETED | FAILED | CANCELLED

FAILED is only used when nothing can be dispatched at all (unknown tenant,
missing provider credentials, no originating number). Per-recipient errors
never fail the job.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from rsvp_dispatch.core.dispatcher import BatchDispatcher, DispatchTask
from rsvp_dispatch.core.domain import (
    AttemptOutcome,
    AttemptStatus,
    BulkJob,
    BulkSummary,
    Channel,
    DispatchAttempt,
    ErrorCode,
    JobCreated,
    JobStatus,
    MESSAGE_CHANNELS,
    MessageType,
    RsvpStatus,
    SendOutcome,
)
from rsvp_dispatch.core.errors import (
    AttemptNotFoundError,
    AttemptNotRetryableError,
    ConfigurationError,
    EventNotFoundError,
    InvalidStatusTransitionError,
    OutcomeNotRecordedError,
    QuotaExceededError,
    RecipientNotFoundError,
    TenantNotFoundError,
)
from rsvp_dispatch.core.phone import infer_channel
from rsvp_dispatch.core.ports import AttemptRecorder, BulkJobStore, ChannelSender, Directory, QuotaLedger
from rsvp_dispatch.infra.logging_config import get_logger, LogContext
from rsvp_dispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({
    AttemptStatus.FAILED,
    AttemptStatus.UNDELIVERED,
    AttemptStatus.NO_ANSWER,
    AttemptStatus.BUSY,
    AttemptStatus.CANCELLED,
})

# Manual corrections allowed on terminal attempts (provider callbacks that never arrived)
STATUS_CORRECTIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.SENT: frozenset({AttemptStatus.DELIVERED, AttemptStatus.UNDELIVERED}),
    AttemptStatus.CALLING: frozenset({
        AttemptStatus.COMPLETED,
        AttemptStatus.NO_ANSWER,
        AttemptStatus.BUSY,
        AttemptStatus.FAILED,
    }),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class JobOrchestrator:
    """
    Entry point for bulk jobs, single sends, retries and status corrections.

    ``submit`` hands a job id to the background runner and must not block.
    When it is None (web-only process) due jobs are picked up by the worker's
    periodic ``trigger_due_jobs``.
    """

    def __init__(
        self,
        *,
        directory: Directory,
        sender: ChannelSender,
        ledger: QuotaLedger,
        recorder: AttemptRecorder,
        jobs: BulkJobStore,
        dispatcher: BatchDispatcher,
        submit: Optional[Callable[[str], bool]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._directory = directory
        self._sender = sender
        self._ledger = ledger
        self._recorder = recorder
        self._jobs = jobs
        self._dispatcher = dispatcher
        self._submit = submit
        self._clock = clock

    def attach_submitter(self, submit: Callable[[str], bool]) -> None:
        self._submit = submit

    # ------------------------------------------------------------------
    # Bulk jobs
    # ------------------------------------------------------------------

    async def create_bulk_job(
        self,
        tenant_id: str,
        event_id: str,
        recipient_ids: Sequence[str],
        message_type: MessageType = MessageType.INVITE,
        *,
        channel: Optional[Channel] = None,
        template_override: Optional[str] = None,
        content_sid: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> JobCreated:
        """
        Create the job and one PENDING attempt per recipient, then start it
        when it is due.

        Raises QuotaExceededError (nothing persisted) when the coarse gate
        fails and EventNotFoundError for an event outside the tenant.
        Tenant and configuration failures are persisted as a FAILED job.
        """
        now = self._clock()
        log = LogContext(logger, tenant_id=tenant_id)
        job = BulkJob(
            id=_new_id(),
            tenant_id=tenant_id,
            event_id=event_id,
            message_type=message_type,
            channel_override=channel,
            template_override=template_override,
            content_sid=content_sid,
            scheduled_at=scheduled_at or now,
        )

        tenant = await self._directory.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            return await self._create_failed(job, f"Tenant '{tenant_id}' not found or inactive")

        event = await self._directory.get_event(event_id)
        if event is None or event.tenant_id != tenant_id:
            raise EventNotFoundError(f"Event '{event_id}' not found")

        config_error = self._sender.configuration_error(message_type, channel, tenant)
        if config_error:
            return await self._create_failed(job, config_error)

        recipients = await self._directory.get_recipients(event_id, list(dict.fromkeys(recipient_ids)))
        skipped_responded = 0
        if message_type.requires_pending_rsvp:
            eligible = [r for r in recipients if r.rsvp_status is RsvpStatus.PENDING]
            skipped_responded = len(recipients) - len(eligible)
            recipients = eligible

        planned = [(r, infer_channel(r.phone, message_type, channel)) for r in recipients]
        if planned:
            await self._quota_gate(tenant_id, message_type, channel)

        attempts = [
            DispatchAttempt(
                id=_new_id(),
                tenant_id=tenant_id,
                event_id=event_id,
                recipient_id=recipient.id,
                message_type=message_type,
                channel=attempt_channel,
                job_id=job.id,
                position=position,
                created_at=now,
            )
            for position, (recipient, attempt_channel) in enumerate(planned)
        ]
        job.total = len(attempts)
        if not attempts:
            job.status = JobStatus.COMPLETED
            job.completed_at = now

        await self._jobs.create(job, attempts)
        log.bind(job_id=job.id).info(
            f"Bulk job created: type={message_type.value}, total={job.total}, "
            f"skipped_responded={skipped_responded}"
        )

        if job.status is JobStatus.PENDING and job.scheduled_at <= now:
            self._start(job.id)

        return JobCreated(job_id=job.id, total=job.total, skipped_responded=skipped_responded, status=job.status)

    async def _create_failed(self, job: BulkJob, error: str) -> JobCreated:
        job.status = JobStatus.FAILED
        job.error = error
        job.completed_at = self._clock()
        await self._jobs.create(job, [])
        DispatchMetrics.job_finished(JobStatus.FAILED.value)
        logger.warning(f"Bulk job failed before dispatch: {error}", extra={"tenant_id": job.tenant_id, "job_id": job.id})
        return JobCreated(job_id=job.id, total=0, skipped_responded=0, status=JobStatus.FAILED)

    async def _quota_gate(self, tenant_id: str, message_type: MessageType, channel: Optional[Channel]) -> None:
        """Advisory check before a job starts; the per-attempt reserve is the hard limit."""
        if message_type.is_call:
            candidates: tuple[Channel, ...] = (Channel.VOICE,)
        elif message_type.is_interactive:
            candidates = (Channel.WHATSAPP,)
        elif channel is not None:
            candidates = (channel,)
        else:
            candidates = MESSAGE_CHANNELS

        last = None
        for candidate in candidates:
            result = await self._ledger.check(tenant_id, candidate)
            if result.allowed:
                return
            last = (candidate, result)

        DispatchMetrics.quota_denied(last[0].value)
        raise QuotaExceededError(
            last[1].reason or f"{'/'.join(c.value for c in candidates)} limit reached",
            channel=last[0].value,
            remaining=0,
        )

    def _start(self, job_id: str) -> bool:
        if self._submit is None:
            logger.info(f"No job runner in this process, job {job_id} left for the worker")
            return False
        return self._submit(job_id)

    async def run_job(self, job_id: str) -> Optional[BulkSummary]:
        """
        Execute a job (fresh or resumed). Only PENDING attempts are sent.

        Attempts that were handed to a provider but never recorded (process
        died mid-window) are closed as FAILED/INTERRUPTED instead of being
        sent again.
        """
        job = await self._jobs.get(job_id)
        if job is None:
            logger.warning(f"run_job: job {job_id} not found")
            return None

        log = LogContext(logger, tenant_id=job.tenant_id, job_id=job.id)

        if job.status is JobStatus.PENDING:
            if not await self._jobs.mark_processing(job_id):
                log.info("Job already claimed or no longer pending")
                return None
            job.status = JobStatus.PROCESSING
        elif job.status is not JobStatus.PROCESSING:
            log.info(f"Job is {job.status.value}, nothing to run")
            return None

        tenant = await self._directory.get_tenant(job.tenant_id)
        if tenant is None or not tenant.is_active:
            await self._fail(job, f"Tenant '{job.tenant_id}' not found or inactive")
            return None

        event = await self._directory.get_event(job.event_id)
        if event is None:
            await self._fail(job, f"Event '{job.event_id}' not found")
            return None

        config_error = self._sender.configuration_error(job.message_type, job.channel_override, tenant)
        if config_error:
            await self._fail(job, config_error)
            return None

        pending = await self._recorder.pending_for_job(job_id)
        interrupted = [a for a in pending if a.dispatched_at is not None]
        fresh = [a for a in pending if a.dispatched_at is None]

        closing = BulkSummary(total=len(interrupted))
        if interrupted:
            log.warning(f"Closing {len(interrupted)} attempt(s) interrupted mid-window")
            await self._dispatcher.flush(
                job,
                [
                    AttemptOutcome(
                        attempt_id=a.id,
                        tenant_id=a.tenant_id,
                        channel=a.channel,
                        status=AttemptStatus.FAILED,
                        error_code=ErrorCode.INTERRUPTED.value,
                        error_message="Dispatch interrupted before the outcome was recorded",
                    )
                    for a in interrupted
                ],
                closing,
            )

        recipients = await self._directory.get_recipients(job.event_id, [a.recipient_id for a in fresh])
        by_id = {r.id: r for r in recipients}
        tasks = [DispatchTask(attempt=a, recipient=by_id.get(a.recipient_id)) for a in fresh]

        log.info(f"Dispatching job: pending={len(tasks)}, concurrency={self._dispatcher.concurrency}")
        summary = await self._dispatcher.dispatch(job, tasks, event)
        summary.unrecorded = closing.unrecorded + summary.unrecorded
        if summary.unrecorded:
            await self._record_leftovers(job, summary, log)

        if summary.cancelled:
            DispatchMetrics.job_finished(JobStatus.CANCELLED.value)
            return summary

        if await self._jobs.mark_completed(job_id):
            DispatchMetrics.job_finished(JobStatus.COMPLETED.value)
            log.info(
                f"Job completed: sent={summary.sent}, failed={summary.failed}, "
                f"skipped_limit={summary.skipped_limit}, total={summary.total}"
            )
        else:
            log.info("Job was cancelled during its last window")
            DispatchMetrics.job_finished(JobStatus.CANCELLED.value)
            summary.cancelled = True
        return summary

    async def _record_leftovers(self, job: BulkJob, summary: BulkSummary, log: LogContext) -> None:
        """
        Second chance for outcomes whose record write failed during the run.

        A job that is still running must not complete with attempts left
        PENDING: raising keeps it PROCESSING so the runner requeues it and
        the next run closes them as interrupted. A cancelled job is never
        run again, so its leftovers only give their quota holds back.
        """
        leftovers = summary.unrecorded
        retry = BulkSummary(total=len(leftovers))
        await self._dispatcher.flush(job, leftovers, retry)
        summary.sent += retry.sent
        summary.failed += retry.failed
        summary.skipped_limit += retry.skipped_limit
        summary.unrecorded = retry.unrecorded
        if not summary.unrecorded:
            log.info(f"Recorded {len(leftovers)} outcome(s) on second attempt")
            return

        if summary.cancelled or await self._jobs.get_status(job.id) is JobStatus.CANCELLED:
            released = await self._dispatcher.release_holds(summary.unrecorded)
            log.warning(f"Cancelled job left {len(summary.unrecorded)} unrecorded outcome(s), {released} hold(s) released")
            return

        raise OutcomeNotRecordedError(job.id, [o.attempt_id for o in summary.unrecorded])

    async def _fail(self, job: BulkJob, error: str) -> None:
        await self._jobs.mark_failed(job.id, error)
        DispatchMetrics.job_finished(JobStatus.FAILED.value)
        logger.warning(f"Job failed: {error}", extra={"tenant_id": job.tenant_id, "job_id": job.id})

    async def trigger_due_jobs(self, now: Optional[datetime] = None) -> list[str]:
        """Submit PENDING jobs whose scheduled time has passed."""
        due = await self._jobs.list_due(now or self._clock())
        for job_id in due:
            self._start(job_id)
        if due:
            logger.info(f"Triggered {len(due)} due job(s)")
        return due

    async def resume_jobs(self, now: Optional[datetime] = None) -> list[str]:
        """On worker start: resubmit interrupted PROCESSING jobs and due PENDING ones."""
        resumable = await self._jobs.list_resumable(now or self._clock())
        for job_id in resumable:
            self._start(job_id)
        if resumable:
            logger.info(f"Resuming {len(resumable)} job(s)")
        return resumable

    # ------------------------------------------------------------------
    # Single recipient
    # ------------------------------------------------------------------

    async def send_single(
        self,
        tenant_id: str,
        recipient_id: str,
        message_type: MessageType = MessageType.INVITE,
        *,
        channel: Optional[Channel] = None,
        template_override: Optional[str] = None,
        content_sid: Optional[str] = None,
    ) -> SendOutcome:
        tenant = await self._directory.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found")

        recipient = await self._directory.get_recipient(recipient_id)
        if recipient is None:
            raise RecipientNotFoundError(f"Recipient '{recipient_id}' not found")

        event = await self._directory.get_event(recipient.event_id)
        if event is None or event.tenant_id != tenant_id:
            raise RecipientNotFoundError(f"Recipient '{recipient_id}' not found")

        config_error = self._sender.configuration_error(message_type, channel, tenant)
        if config_error:
            raise ConfigurationError(config_error)

        attempt = DispatchAttempt(
            id=_new_id(),
            tenant_id=tenant_id,
            event_id=event.id,
            recipient_id=recipient.id,
            message_type=message_type,
            channel=infer_channel(recipient.phone, message_type, channel),
            created_at=self._clock(),
        )
        return await self._send_one(attempt, recipient, event, template_override, content_sid)

    async def retry_attempt(self, attempt_id: str) -> SendOutcome:
        """Re-send through the same sender operation and channel; the old attempt is untouched."""
        previous = await self._recorder.get(attempt_id)
        if previous is None:
            raise AttemptNotFoundError(f"Attempt '{attempt_id}' not found")
        if previous.status not in RETRYABLE_STATUSES:
            raise AttemptNotRetryableError(
                f"Attempt '{attempt_id}' is {previous.status.value}; only failed or unanswered attempts can be retried"
            )

        tenant = await self._directory.get_tenant(previous.tenant_id)
        if tenant is None or not tenant.is_active:
            raise TenantNotFoundError(f"Tenant '{previous.tenant_id}' not found")

        recipient = await self._directory.get_recipient(previous.recipient_id)
        if recipient is None:
            raise RecipientNotFoundError(f"Recipient '{previous.recipient_id}' not found")

        event = await self._directory.get_event(previous.event_id)
        if event is None:
            raise EventNotFoundError(f"Event '{previous.event_id}' not found")

        config_error = self._sender.configuration_error(previous.message_type, previous.channel, tenant)
        if config_error:
            raise ConfigurationError(config_error)

        template_override = content_sid = None
        if previous.job_id:
            job = await self._jobs.get(previous.job_id)
            if job is not None:
                template_override, content_sid = job.template_override, job.content_sid

        attempt = DispatchAttempt(
            id=_new_id(),
            tenant_id=previous.tenant_id,
            event_id=previous.event_id,
            recipient_id=previous.recipient_id,
            message_type=previous.message_type,
            channel=previous.channel,
            retry_of=previous.id,
            created_at=self._clock(),
        )
        logger.info(f"Retrying attempt {previous.id}", extra={"tenant_id": attempt.tenant_id, "attempt_id": attempt.id})
        return await self._send_one(attempt, recipient, event, template_override, content_sid)

    async def _send_one(self, attempt, recipient, event, template_override, content_sid) -> SendOutcome:
        await self._recorder.create(attempt)

        options = {"content_sid": content_sid} if content_sid else {}
        try:
            outcome = await self._dispatcher.run_task(attempt, recipient, event, template_override, **options)
        except Exception as exc:
            outcome = self._dispatcher.settle(attempt, exc)

        summary = BulkSummary(total=1)
        await self._dispatcher.flush(None, [outcome], summary)
        if summary.unrecorded:
            # No job run will ever close this attempt
            await self._dispatcher.release_holds(summary.unrecorded)

        return SendOutcome(
            success=outcome.success,
            channel=outcome.channel,
            status=outcome.status,
            attempt_id=attempt.id,
            error=outcome.error_message,
            limit_reached=outcome.limit_reached,
        )

    async def correct_attempt_status(self, attempt_id: str, new_status: AttemptStatus) -> None:
        """Manual fix-up of a terminal attempt, limited to STATUS_CORRECTIONS."""
        attempt = await self._recorder.get(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"Attempt '{attempt_id}' not found")

        allowed = STATUS_CORRECTIONS.get(attempt.status, frozenset())
        if new_status not in allowed:
            raise InvalidStatusTransitionError(
                f"Cannot change attempt status {attempt.status.value} -> {new_status.value}"
            )

        if not await self._recorder.correct_status(attempt_id, attempt.status, new_status):
            raise InvalidStatusTransitionError(f"Attempt '{attempt_id}' changed concurrently")

        if attempt.status.is_success and not new_status.is_success:
            await self._ledger.increment(attempt.tenant_id, {attempt.channel: -1})

        logger.info(
            f"Attempt status corrected: {attempt.status.value} -> {new_status.value}",
            extra={"tenant_id": attempt.tenant_id, "attempt_id": attempt_id},
        )
