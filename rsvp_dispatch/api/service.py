# rsvp_dispatch/api/service.py
"""
Dispatch Application Service: the single entry point used by the HTTP routes.

Responsibilities:
    1. Accept validated request models
    2. Call the orchestrator / status service
    3. Map engine errors onto ApiError subtypes
    4. Return response models, never raw domain objects

Routes stay thin: parse request -> call service -> return JSON.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import timezone
from typing import Iterator

from rsvp_dispatch.api.errors import (
    ApiError,
    ConflictError,
    NotFoundError,
    QuotaError,
    ServiceUnavailableError,
    UnprocessableError,
)
from rsvp_dispatch.api.models import (
    AttemptPage,
    AttemptView,
    CancelResponse,
    ChannelUsageView,
    CreateJobRequest,
    JobCreatedResponse,
    JobStatusResponse,
    OkResponse,
    SendRequest,
    SendResponse,
    StatusCorrectionRequest,
    UsageResponse,
)
from rsvp_dispatch.config import settings
from rsvp_dispatch.core.dispatcher import BatchDispatcher
from rsvp_dispatch.core.errors import (
    AttemptNotFoundError,
    AttemptNotRetryableError,
    ConfigurationError,
    DispatchError,
    EventNotFoundError,
    InvalidStatusTransitionError,
    JobNotFoundError,
    JobStateError,
    PhoneNormalizationError,
    QuotaExceededError,
    RecipientNotFoundError,
    TenantNotFoundError,
)
from rsvp_dispatch.core.orchestrator import JobOrchestrator
from rsvp_dispatch.core.status import JobStatusService
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

_ERROR_MAP: list[tuple[type[DispatchError], type[ApiError]]] = [
    (QuotaExceededError, QuotaError),
    (TenantNotFoundError, NotFoundError),
    (EventNotFoundError, NotFoundError),
    (RecipientNotFoundError, NotFoundError),
    (JobNotFoundError, NotFoundError),
    (AttemptNotFoundError, NotFoundError),
    (JobStateError, ConflictError),
    (AttemptNotRetryableError, ConflictError),
    (InvalidStatusTransitionError, ConflictError),
    (PhoneNormalizationError, UnprocessableError),
    (ConfigurationError, ServiceUnavailableError),
]


def to_api_error(exc: DispatchError) -> ApiError:
    for engine_error, api_error in _ERROR_MAP:
        if isinstance(exc, engine_error):
            return api_error(exc.detail, code=exc.code)
    return UnprocessableError(exc.detail, code=exc.code)


@contextmanager
def _mapped_errors() -> Iterator[None]:
    try:
        yield
    except DispatchError as exc:
        raise to_api_error(exc) from exc


class DispatchApplicationService:
    """
    Stateless facade over the engine; safe to use as a singleton.
    """

    def __init__(self, orchestrator: JobOrchestrator, status: JobStatusService) -> None:
        self.orchestrator = orchestrator
        self.status = status

    # ------------------------------------------------------------------
    # Bulk jobs
    # ------------------------------------------------------------------

    async def create_job(self, tenant_id: str, req: CreateJobRequest) -> JobCreatedResponse:
        scheduled_at = req.scheduled_for
        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

        with _mapped_errors():
            created = await self.orchestrator.create_bulk_job(
                tenant_id,
                req.event_id,
                req.recipient_ids,
                req.message_type,
                channel=req.channel,
                template_override=req.template_override,
                content_sid=req.content_sid,
                scheduled_at=scheduled_at,
            )
        return JobCreatedResponse(
            job_id=created.job_id,
            total=created.total,
            skipped_responded=created.skipped_responded,
            status=created.status.value,
        )

    async def get_job(self, job_id: str) -> JobStatusResponse:
        with _mapped_errors():
            view = await self.status.get_job_status(job_id)
        return JobStatusResponse.from_view(view)

    async def cancel_job(self, job_id: str) -> CancelResponse:
        with _mapped_errors():
            result = await self.status.cancel_job(job_id)
        return CancelResponse(
            success=result.success,
            error=result.error,
            cancelled_attempts=result.cancelled_attempts,
        )

    # ------------------------------------------------------------------
    # Single recipient
    # ------------------------------------------------------------------

    async def send(self, tenant_id: str, req: SendRequest) -> SendResponse:
        with _mapped_errors():
            outcome = await self.orchestrator.send_single(
                tenant_id,
                req.recipient_id,
                req.message_type,
                channel=req.channel,
                template_override=req.template_override,
                content_sid=req.content_sid,
            )
        return SendResponse(
            success=outcome.success,
            channel=outcome.channel.value,
            status=outcome.status.value,
            attempt_id=outcome.attempt_id,
            error=outcome.error,
            limit_reached=outcome.limit_reached,
        )

    async def retry_attempt(self, attempt_id: str) -> SendResponse:
        with _mapped_errors():
            outcome = await self.orchestrator.retry_attempt(attempt_id)
        return SendResponse(
            success=outcome.success,
            channel=outcome.channel.value,
            status=outcome.status.value,
            attempt_id=outcome.attempt_id,
            error=outcome.error,
            limit_reached=outcome.limit_reached,
        )

    async def correct_status(self, attempt_id: str, req: StatusCorrectionRequest) -> OkResponse:
        with _mapped_errors():
            await self.orchestrator.correct_attempt_status(attempt_id, req.status)
        return OkResponse(attempt_id=attempt_id, status=req.status.value)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def usage(self, tenant_id: str) -> UsageResponse:
        with _mapped_errors():
            channels = await self.status.get_usage(tenant_id)
        return UsageResponse(
            tenant_id=tenant_id,
            channels=[ChannelUsageView.from_usage(c) for c in channels],
        )

    async def event_attempts(self, event_id: str, limit: int = 50, offset: int = 0) -> AttemptPage:
        attempts, total = await self.status.list_event_attempts(event_id, limit=limit, offset=offset)
        return AttemptPage(
            event_id=event_id,
            total=total,
            limit=limit,
            offset=offset,
            attempts=[AttemptView.from_attempt(a) for a in attempts],
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: DispatchApplicationService | None = None


def build_dispatch_service() -> DispatchApplicationService:
    """Wire the engine to the Postgres repositories and the provider router."""
    from rsvp_dispatch.infra.pg_attempt_repo_async import get_attempt_repo
    from rsvp_dispatch.infra.pg_bulk_job_repo_async import get_bulk_job_repo
    from rsvp_dispatch.infra.pg_directory_repo_async import get_directory_repo
    from rsvp_dispatch.infra.pg_quota_ledger_async import get_quota_ledger
    from rsvp_dispatch.transport.channel_router import ChannelRouter

    directory = get_directory_repo()
    ledger = get_quota_ledger()
    recorder = get_attempt_repo()
    jobs = get_bulk_job_repo()
    sender = ChannelRouter(directory)

    dispatcher = BatchDispatcher(
        sender,
        ledger,
        recorder,
        jobs,
        concurrency=settings.dispatch_concurrency,
        delay=settings.batch_delay_seconds,
        default_country=settings.default_country,
        min_digits=settings.phone_min_digits,
        max_digits=settings.phone_max_digits,
    )
    orchestrator = JobOrchestrator(
        directory=directory,
        sender=sender,
        ledger=ledger,
        recorder=recorder,
        jobs=jobs,
        dispatcher=dispatcher,
    )
    status = JobStatusService(jobs=jobs, recorder=recorder, ledger=ledger, directory=directory)
    return DispatchApplicationService(orchestrator, status)


def get_dispatch_service() -> DispatchApplicationService:
    """Get the global dispatch service instance."""
    global _service
    if _service is None:
        _service = build_dispatch_service()
    return _service


def set_dispatch_service(service: DispatchApplicationService | None) -> None:
    """Replace the global instance (tests wire in-memory fakes this way)."""
    global _service
    _service = service
