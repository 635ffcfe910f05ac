# rsvp_dispatch/core/dispatcher.py
"""
Windowed batch dispatcher.

Tasks run in fixed windows of ``concurrency`` attempts. A window is gathered
to completion before the next one starts, with ``delay`` seconds between
windows (none after the last). After every window the outcomes are recorded,
the job counters and usage counters are bumped, and the job's persisted
status is re-read so a cancellation stops the loop at the window boundary.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, Sequence

from rsvp_dispatch.core.dispatch_table import dispatch_message
from rsvp_dispatch.core.domain import (
    AttemptOutcome,
    AttemptStatus,
    BulkJob,
    BulkSummary,
    Channel,
    DispatchAttempt,
    ErrorCode,
    EventContext,
    FAILURE_STATUSES,
    JobStatus,
    Recipient,
)
from rsvp_dispatch.core.errors import PhoneNormalizationError
from rsvp_dispatch.core.phone import normalize_phone
from rsvp_dispatch.core.ports import AttemptRecorder, BulkJobStore, ChannelSender, QuotaLedger
from rsvp_dispatch.infra.logging_config import get_logger, LogContext, mask_phone
from rsvp_dispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


@dataclass
class DispatchTask:
    attempt: DispatchAttempt
    recipient: Optional[Recipient]


class BatchDispatcher:
    """
    Usage:
        dispatcher = BatchDispatcher(sender, ledger, recorder, jobs, concurrency=3, delay=1.0)
        summary = await dispatcher.dispatch(job, tasks, event)
    """

    def __init__(
        self,
        sender: ChannelSender,
        ledger: QuotaLedger,
        recorder: AttemptRecorder,
        jobs: BulkJobStore,
        *,
        concurrency: int = 3,
        delay: float = 1.0,
        default_country: str = "IL",
        min_digits: int = 8,
        max_digits: int = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        record_retries: int = 2,
        record_retry_delay: float = 0.2,
    ):
        self._sender = sender
        self._ledger = ledger
        self._recorder = recorder
        self._jobs = jobs
        self._concurrency = max(concurrency, 1)
        self._delay = max(delay, 0.0)
        self._default_country = default_country
        self._min_digits = min_digits
        self._max_digits = max_digits
        self._sleep = sleep
        self._record_retries = max(record_retries, 0)
        self._record_retry_delay = record_retry_delay

    @property
    def concurrency(self) -> int:
        return self._concurrency

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    async def run_task(
        self,
        attempt: DispatchAttempt,
        recipient: Optional[Recipient],
        event: EventContext,
        template: Optional[str] = None,
        **options,
    ) -> AttemptOutcome:
        """
        Normalize, reserve quota, call the provider. Never records anything.

        Validation and quota failures produce a FAILED outcome without a
        provider call. Provider errors come back from the sender as a failed
        DispatchResult; anything raised here is handled by the caller.
        """
        channel = attempt.channel
        if recipient is None:
            return self._failed(attempt, ErrorCode.VALIDATION, "Recipient no longer exists")

        try:
            phone = normalize_phone(
                recipient.phone,
                default_country=self._default_country,
                min_digits=self._min_digits,
                max_digits=self._max_digits,
            )
        except PhoneNormalizationError as exc:
            logger.info(
                f"Phone normalization failed: phone={mask_phone(recipient.phone)}, error={exc.detail}",
                extra={"attempt_id": attempt.id, "tenant_id": attempt.tenant_id},
            )
            return self._failed(attempt, ErrorCode.VALIDATION, exc.detail, phone=recipient.phone)

        reservation = await self._ledger.reserve(attempt.tenant_id, channel, 1, [attempt.id])
        if not reservation.allowed:
            DispatchMetrics.quota_denied(channel.value)
            return self._failed(
                attempt, ErrorCode.QUOTA_EXCEEDED,
                reservation.reason or f"{channel.value} limit reached",
                phone=phone,
            )

        with DispatchMetrics.track_provider_call(channel.value):
            result = await dispatch_message(
                self._sender,
                attempt.message_type,
                replace(recipient, phone=phone),
                event,
                channel=channel,
                template=template,
                **options,
            )

        status = result.status
        if not result.success and status not in FAILURE_STATUSES:
            status = AttemptStatus.FAILED

        return AttemptOutcome(
            attempt_id=attempt.id,
            tenant_id=attempt.tenant_id,
            channel=result.channel,
            status=status,
            phone=phone,
            provider_id=result.provider_id,
            provider_response=result.provider_response,
            error_code=None if result.success else (result.error_code or ErrorCode.PROVIDER_ERROR.value),
            error_message=None if result.success else result.error,
        )

    @staticmethod
    def _failed(
        attempt: DispatchAttempt, code: ErrorCode, message: str, phone: Optional[str] = None,
    ) -> AttemptOutcome:
        return AttemptOutcome(
            attempt_id=attempt.id,
            tenant_id=attempt.tenant_id,
            channel=attempt.channel,
            status=AttemptStatus.FAILED,
            phone=phone,
            error_code=code.value,
            error_message=message,
        )

    def settle(self, attempt: DispatchAttempt, result: AttemptOutcome | BaseException) -> AttemptOutcome:
        """Turn a gathered result into an outcome; exceptions become FAILED attempts."""
        if isinstance(result, AttemptOutcome):
            return result
        logger.error(
            f"Dispatch task raised: {result.__class__.__name__}: {result}",
            exc_info=(type(result), result, result.__traceback__),
            extra={"attempt_id": attempt.id, "tenant_id": attempt.tenant_id},
        )
        return self._failed(attempt, ErrorCode.INTERNAL, f"{result.__class__.__name__}: {result}"[:500])

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        job: BulkJob,
        tasks: Sequence[DispatchTask],
        event: EventContext,
    ) -> BulkSummary:
        """
        Process ``tasks`` in windows, in the order given.

        Returns the aggregate summary for the tasks processed by this call.
        """
        log = LogContext(logger, tenant_id=job.tenant_id, job_id=job.id)
        summary = BulkSummary(total=len(tasks))
        windows = [tasks[i:i + self._concurrency] for i in range(0, len(tasks), self._concurrency)]
        options = {"content_sid": job.content_sid} if job.content_sid else {}

        for index, window in enumerate(windows, start=1):
            claimed = set(await self._recorder.mark_dispatched([t.attempt.id for t in window]))
            runnable = [t for t in window if t.attempt.id in claimed]

            if runnable:
                results = await asyncio.gather(
                    *(self.run_task(t.attempt, t.recipient, event, job.template_override, **options)
                      for t in runnable),
                    return_exceptions=True,
                )
                outcomes = [self.settle(t.attempt, r) for t, r in zip(runnable, results)]
                await self.flush(job, outcomes, summary)
                DispatchMetrics.window_processed()

            log.info(
                f"Window {index}/{len(windows)} done: size={len(runnable)}, "
                f"sent={summary.sent}, failed={summary.failed}, skipped_limit={summary.skipped_limit}"
            )

            if index == len(windows):
                break

            await self._sleep(self._delay)

            if await self._jobs.get_status(job.id) is JobStatus.CANCELLED:
                cancelled = await self._jobs.cancel_remaining(job.id)
                summary.cancelled = True
                log.info(f"Job cancelled after window {index}: {cancelled} remaining attempts cancelled")
                break

        if summary.record_failures:
            log.warning(f"{summary.record_failures} attempt record(s) could not be written")

        return summary

    async def _record(self, outcome: AttemptOutcome) -> bool:
        for retry in range(self._record_retries + 1):
            try:
                return await self._recorder.record(outcome)
            except Exception as exc:
                if retry >= self._record_retries:
                    raise
                logger.warning(
                    f"Record write failed ({exc}), retry {retry + 1}/{self._record_retries}",
                    extra={"attempt_id": outcome.attempt_id, "tenant_id": outcome.tenant_id},
                )
                await asyncio.sleep(self._record_retry_delay * (retry + 1))
        return False

    async def release_holds(self, outcomes: Sequence[AttemptOutcome]) -> int:
        """Best effort: free the quota held by attempts whose outcome was never written."""
        released = 0
        for outcome in outcomes:
            try:
                if await self._recorder.release_hold(outcome.attempt_id):
                    released += 1
            except Exception as exc:
                DispatchMetrics.database_error("release_hold")
                logger.error(
                    f"Quota hold could not be released: {exc}",
                    extra={"attempt_id": outcome.attempt_id, "tenant_id": outcome.tenant_id},
                )
        return released

    async def flush(self, job: Optional[BulkJob], outcomes: Sequence[AttemptOutcome], summary: BulkSummary) -> None:
        """
        Record outcomes, then bump job and usage counters.

        Write failures are logged and counted; they never abort the loop.
        Only outcomes actually written count towards job progress and usage.
        One whose record keeps failing lands in ``summary.unrecorded`` with
        its attempt still PENDING, so the caller can write it again later.
        """
        counted: list[AttemptOutcome] = []
        usage: dict[Channel, int] = {}

        for outcome in outcomes:
            try:
                applied = await self._record(outcome)
            except Exception as exc:
                summary.record_failures += 1
                summary.unrecorded.append(outcome)
                DispatchMetrics.record_failed()
                logger.error(
                    f"Failed to record attempt outcome: status={outcome.status.value}, error={exc}",
                    exc_info=True,
                    extra={"attempt_id": outcome.attempt_id, "tenant_id": outcome.tenant_id},
                )
                continue

            if not applied:
                logger.warning(
                    "Attempt already terminal, outcome ignored",
                    extra={"attempt_id": outcome.attempt_id, "tenant_id": outcome.tenant_id},
                )
                continue

            counted.append(outcome)
            if outcome.success:
                usage[outcome.channel] = usage.get(outcome.channel, 0) + 1

        for outcome in counted:
            DispatchMetrics.attempt_finished(outcome.channel.value, outcome.status.value)
            if outcome.success:
                summary.sent += 1
            elif outcome.limit_reached:
                summary.skipped_limit += 1
            else:
                summary.failed += 1

        if job is not None and counted:
            success = sum(1 for o in counted if o.success)
            skipped = sum(1 for o in counted if o.limit_reached)
            try:
                await self._jobs.add_progress(
                    job.id,
                    processed=len(counted),
                    success=success,
                    failed=len(counted) - success,
                    skipped_limit=skipped,
                )
            except Exception as exc:
                summary.record_failures += 1
                DispatchMetrics.record_failed()
                logger.error(f"Failed to update job progress: {exc}", exc_info=True, extra={"job_id": job.id})

        if usage:
            tenant_id = counted[0].tenant_id
            try:
                await self._ledger.increment(tenant_id, usage)
            except Exception as exc:
                summary.record_failures += 1
                DispatchMetrics.database_error("usage_increment")
                logger.error(f"Failed to increment usage counters: {exc}", exc_info=True, extra={"tenant_id": tenant_id})
