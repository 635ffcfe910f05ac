# tests/fakes.py
"""In-memory implementations of the engine ports, mirroring the Postgres semantics."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Sequence

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
from rsvp_dispatch.core.errors import JobNotFoundError, JobStateError
from rsvp_dispatch.core.plans import UNLIMITED, evaluate_reservation, remaining_quota


FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """AttemptRecorder + BulkJobStore over two dicts."""

    def __init__(self):
        self.attempts: dict[str, DispatchAttempt] = {}
        self.jobs: dict[str, BulkJob] = {}
        self.fail_record_for: set[str] = set()
        self.flaky_records: dict[str, int] = {}   # attempt id -> record failures left
        self.progress_calls: list[tuple] = []

    # --- AttemptRecorder -------------------------------------------------

    async def create(self, attempt: DispatchAttempt) -> str:
        self.attempts[attempt.id] = replace(attempt, status=AttemptStatus.PENDING)
        return attempt.id

    async def record(self, outcome: AttemptOutcome) -> bool:
        if outcome.attempt_id in self.fail_record_for:
            raise ConnectionError("attempt table unavailable")
        if self.flaky_records.get(outcome.attempt_id, 0) > 0:
            self.flaky_records[outcome.attempt_id] -= 1
            raise ConnectionError("attempt table unavailable")
        attempt = self.attempts.get(outcome.attempt_id)
        if attempt is None or attempt.status is not AttemptStatus.PENDING:
            return False
        attempt.status = outcome.status
        attempt.channel = outcome.channel
        attempt.phone = outcome.phone or attempt.phone
        attempt.provider_id = outcome.provider_id
        attempt.provider_response = outcome.provider_response
        attempt.error_code = outcome.error_code
        attempt.error_message = outcome.error_message
        attempt.quota_held = False
        if outcome.success:
            attempt.sent_at = _now()
        return True

    async def release_hold(self, attempt_id: str) -> bool:
        attempt = self.attempts.get(attempt_id)
        if attempt is None or attempt.status is not AttemptStatus.PENDING or not attempt.quota_held:
            return False
        attempt.quota_held = False
        return True

    async def mark_dispatched(self, attempt_ids: Sequence[str]) -> list[str]:
        claimed = []
        for attempt_id in attempt_ids:
            attempt = self.attempts.get(attempt_id)
            if attempt and attempt.status is AttemptStatus.PENDING and attempt.dispatched_at is None:
                attempt.dispatched_at = _now()
                claimed.append(attempt_id)
        return claimed

    async def get(self, attempt_id: str) -> Optional[DispatchAttempt]:
        attempt = self.attempts.get(attempt_id)
        return replace(attempt) if attempt else None

    async def list_for_job(self, job_id: str) -> list[DispatchAttempt]:
        return sorted(
            (replace(a) for a in self.attempts.values() if a.job_id == job_id),
            key=lambda a: a.position,
        )

    async def pending_for_job(self, job_id: str) -> list[DispatchAttempt]:
        return [a for a in await self.list_for_job(job_id) if a.status is AttemptStatus.PENDING]

    async def list_for_event(self, event_id: str, limit: int = 50, offset: int = 0):
        rows = [replace(a) for a in self.attempts.values() if a.event_id == event_id]
        return rows[offset:offset + limit], len(rows)

    async def correct_status(self, attempt_id: str, expected: AttemptStatus, new_status: AttemptStatus) -> bool:
        attempt = self.attempts.get(attempt_id)
        if attempt is None or attempt.status is not expected:
            return False
        attempt.status = new_status
        return True

    # --- BulkJobStore ----------------------------------------------------

    async def create_job(self, job: BulkJob, attempts: Sequence[DispatchAttempt]) -> str:
        self.jobs[job.id] = replace(job)
        for attempt in attempts:
            self.attempts[attempt.id] = replace(attempt, job_id=job.id, status=AttemptStatus.PENDING)
        return job.id

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = self.jobs.get(job_id)
        return job.status if job else None

    async def mark_processing(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.PENDING:
            return False
        job.status = JobStatus.PROCESSING
        job.started_at = _now()
        return True

    async def mark_completed(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.PROCESSING:
            return False
        job.status = JobStatus.COMPLETED
        job.completed_at = _now()
        return True

    async def mark_failed(self, job_id: str, error: str) -> None:
        job = self.jobs.get(job_id)
        if job is None or not job.status.is_active:
            return
        job.status = JobStatus.FAILED
        job.error = error
        self._cancel_undispatched(job_id)

    async def add_progress(self, job_id: str, processed: int, success: int, failed: int, skipped_limit: int) -> None:
        self.progress_calls.append((job_id, processed, success, failed, skipped_limit))
        job = self.jobs[job_id]
        job.processed += processed
        job.success += success
        job.failed += failed
        job.skipped_limit += skipped_limit
        assert job.processed == job.success + job.failed
        assert job.processed <= job.total

    async def cancel(self, job_id: str) -> int:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        if not job.status.is_active:
            raise JobStateError(f"Job is already {job.status.value.lower()}")
        job.status = JobStatus.CANCELLED
        return self._cancel_undispatched(job_id)

    async def cancel_remaining(self, job_id: str) -> int:
        return self._cancel_undispatched(job_id)

    def _cancel_undispatched(self, job_id: str) -> int:
        count = 0
        for attempt in self.attempts.values():
            if attempt.job_id == job_id and attempt.status is AttemptStatus.PENDING and attempt.dispatched_at is None:
                attempt.status = AttemptStatus.CANCELLED
                attempt.quota_held = False
                count += 1
        return count

    async def list_resumable(self, now: datetime) -> list[str]:
        return [
            j.id for j in self.jobs.values()
            if j.status is JobStatus.PROCESSING
            or (j.status is JobStatus.PENDING and j.scheduled_at <= now)
        ]

    async def list_due(self, now: datetime) -> list[str]:
        return [j.id for j in self.jobs.values() if j.status is JobStatus.PENDING and j.scheduled_at <= now]


class JobStoreView:
    """BulkJobStore facade over InMemoryStore (create/get resolve to jobs)."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    async def create(self, job: BulkJob, attempts: Sequence[DispatchAttempt]) -> str:
        return await self._store.create_job(job, attempts)

    async def get(self, job_id: str) -> Optional[BulkJob]:
        job = self._store.jobs.get(job_id)
        return replace(job) if job else None

    def __getattr__(self, name):
        return getattr(self._store, name)


class FakeDirectory:
    def __init__(self, tenants=(), events=(), recipients=()):
        self.tenants: dict[str, Tenant] = {t.id: t for t in tenants}
        self.events: dict[str, EventContext] = {e.id: e for e in events}
        self.recipients: dict[str, Recipient] = {r.id: r for r in recipients}

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.tenants.get(tenant_id)

    async def get_event(self, event_id: str) -> Optional[EventContext]:
        return self.events.get(event_id)

    async def get_recipients(self, event_id: str, recipient_ids: Sequence[str]) -> list[Recipient]:
        return [
            self.recipients[rid] for rid in recipient_ids
            if rid in self.recipients and self.recipients[rid].event_id == event_id
        ]

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        return self.recipients.get(recipient_id)


class FakeLedger:
    """
    Derives usage from the store's attempts (success statuses plus PENDING
    attempts holding quota), like the Postgres ledger. ``limits`` missing a
    channel means unlimited; ``used`` is usage from before the test.
    """

    def __init__(self, store: InMemoryStore, limits: Optional[dict] = None, used: Optional[dict] = None):
        self._store = store
        self.limits: dict[Channel, Optional[int]] = limits or {}
        self.baseline: dict[Channel, int] = used or {}
        self.increments: list[dict[Channel, int]] = []
        self.reserve_calls = 0
        self._lock = asyncio.Lock()

    def _used(self, tenant_id: str, channel: Channel, exclude: Sequence[str] = ()) -> int:
        used = self.baseline.get(channel, 0)
        for attempt in self._store.attempts.values():
            if attempt.tenant_id != tenant_id or attempt.channel is not channel or attempt.id in exclude:
                continue
            if attempt.status.is_success or (attempt.status is AttemptStatus.PENDING and attempt.quota_held):
                used += 1
        return used

    async def reserve(self, tenant_id, channel, count, attempt_ids=()) -> ReserveResult:
        self.reserve_calls += 1
        async with self._lock:
            used = self._used(tenant_id, channel, exclude=list(attempt_ids))
            await asyncio.sleep(0)
            result = evaluate_reservation(channel, self.limits.get(channel, UNLIMITED), 0, used, count)
            if result.allowed:
                for attempt_id in attempt_ids:
                    if attempt_id in self._store.attempts:
                        self._store.attempts[attempt_id].quota_held = True
            return result

    async def check(self, tenant_id, channel) -> ReserveResult:
        limit = self.limits.get(channel, UNLIMITED)
        remaining = remaining_quota(limit, 0, self._used(tenant_id, channel))
        if remaining is UNLIMITED or remaining > 0:
            return ReserveResult(allowed=True, remaining=remaining)
        return ReserveResult(allowed=False, remaining=0, reason=f"{channel.value} limit reached")

    async def increment(self, tenant_id, counts) -> None:
        self.increments.append(dict(counts))

    async def usage(self, tenant_id) -> list[ChannelUsage]:
        result = []
        for channel in Channel:
            limit = self.limits.get(channel, UNLIMITED)
            used = self._used(tenant_id, channel)
            result.append(ChannelUsage(channel=channel, used=used, limit=limit, bonus=0,
                                       remaining=remaining_quota(limit, 0, used)))
        return result

    def incremented(self, channel: Channel) -> int:
        return sum(c.get(channel, 0) for c in self.increments)


class FakeSender:
    """
    ChannelSender that records calls and tracks how many are in flight.

    ``fail`` maps recipient id to a DispatchResult or an exception to raise.
    """

    def __init__(self, config_error: Optional[str] = None, latency: float = 0.0):
        self.calls: list[dict] = []
        self.fail: dict[str, object] = {}
        self.config_error = config_error
        self.latency = latency
        self.in_flight = 0
        self.max_in_flight = 0

    def configuration_error(self, message_type, channel, tenant) -> Optional[str]:
        return self.config_error

    async def _send(self, method: str, recipient, event, channel=None, template=None, **options) -> DispatchResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
            self.calls.append({
                "method": method,
                "recipient_id": recipient.id,
                "phone": recipient.phone,
                "channel": channel,
                "template": template,
                "options": options,
            })
            failure = self.fail.get(recipient.id)
            if isinstance(failure, BaseException):
                raise failure
            if isinstance(failure, DispatchResult):
                return failure
            status = AttemptStatus.CALLING if method == "place_call" else AttemptStatus.SENT
            return DispatchResult(
                success=True,
                channel=channel or Channel.WHATSAPP,
                status=status,
                provider_response={"sid": f"SM-{recipient.id}"},
                provider_id=f"SM-{recipient.id}",
            )
        finally:
            self.in_flight -= 1

    async def send_invite(self, recipient, event, channel=None, template=None, **options):
        return await self._send("send_invite", recipient, event, channel, template, **options)

    async def send_reminder(self, recipient, event, channel=None, template=None, **options):
        return await self._send("send_reminder", recipient, event, channel, template, **options)

    async def send_interactive_invite(self, recipient, event, channel=None, template=None, **options):
        return await self._send("send_interactive_invite", recipient, event, channel, template, **options)

    async def send_interactive_reminder(self, recipient, event, channel=None, template=None, **options):
        return await self._send("send_interactive_reminder", recipient, event, channel, template, **options)

    async def place_call(self, recipient, event, channel=None, template=None, **options):
        return await self._send("place_call", recipient, event, channel, template, **options)

    def calls_for(self, method: str) -> list[dict]:
        return [c for c in self.calls if c["method"] == method]


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and can run a hook."""

    def __init__(self, hook=None):
        self.delays: list[float] = []
        self._hook = hook

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._hook is not None:
            await self._hook(len(self.delays))


def failed_result(channel: Channel = Channel.WHATSAPP, error: str = "Provider rejected") -> DispatchResult:
    return DispatchResult(
        success=False,
        channel=channel,
        status=AttemptStatus.FAILED,
        provider_response={"code": 21211, "message": error},
        error=error,
        error_code="21211",
    )


__all__ = [
    "FIXED_NOW",
    "FakeDirectory",
    "FakeLedger",
    "FakeSender",
    "InMemoryStore",
    "JobStoreView",
    "MessageType",
    "RecordingSleep",
    "failed_result",
]
