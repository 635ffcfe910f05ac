# rsvp_dispatch/api/models.py
"""
Pydantic request/response models for the dispatch API.

These live outside the transport layer so the service can validate payloads
without depending on FastAPI.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from rsvp_dispatch.core.domain import (
    AttemptStatus,
    Channel,
    ChannelUsage,
    DispatchAttempt,
    JobStatusView,
    MessageType,
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateJobRequest(BaseModel):
    """Start a bulk dispatch for a set of guests of one event."""

    event_id: str = Field(..., min_length=1)
    recipient_ids: list[str] = Field(..., min_length=1, max_length=5000)
    message_type: MessageType = MessageType.INVITE
    channel: Channel | None = Field(default=None, description="Explicit channel; omitted means inferred per guest")
    template_override: str | None = Field(default=None, max_length=1600)
    content_sid: str | None = None
    scheduled_for: datetime | None = None

    @field_validator("recipient_ids")
    @classmethod
    def ids_must_be_nonempty(cls, v: list[str]) -> list[str]:
        if any(not rid.strip() for rid in v):
            raise ValueError("recipient_ids must not contain empty ids")
        return v


class SendRequest(BaseModel):
    """Send one message or place one call to a single guest."""

    recipient_id: str = Field(..., min_length=1)
    message_type: MessageType = MessageType.INVITE
    channel: Channel | None = None
    template_override: str | None = Field(default=None, max_length=1600)
    content_sid: str | None = None


class StatusCorrectionRequest(BaseModel):
    status: AttemptStatus


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class JobCreatedResponse(BaseModel):
    job_id: str
    total: int
    skipped_responded: int
    status: str


class AttemptView(BaseModel):
    id: str
    recipient_id: str
    message_type: str
    channel: str
    status: str
    job_id: str | None = None
    phone: str | None = None
    provider_id: str | None = None
    provider_response: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    retry_of: str | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None
    ended_at: datetime | None = None

    @classmethod
    def from_attempt(cls, attempt: DispatchAttempt) -> "AttemptView":
        return cls(
            id=attempt.id,
            recipient_id=attempt.recipient_id,
            message_type=attempt.message_type.value,
            channel=attempt.channel.value,
            status=attempt.status.value,
            job_id=attempt.job_id,
            phone=attempt.phone,
            provider_id=attempt.provider_id,
            provider_response=attempt.provider_response,
            error_code=attempt.error_code,
            error_message=attempt.error_message,
            retry_of=attempt.retry_of,
            created_at=attempt.created_at,
            sent_at=attempt.sent_at,
            ended_at=attempt.ended_at,
        )


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    message_type: str
    total: int
    processed: int
    success: int
    failed: int
    skipped_limit: int
    error: str | None = None
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: list[AttemptView] = Field(default_factory=list)

    @classmethod
    def from_view(cls, view: JobStatusView) -> "JobStatusResponse":
        job = view.job
        return cls(
            job_id=job.id,
            status=job.status.value,
            message_type=job.message_type.value,
            total=job.total,
            processed=job.processed,
            success=job.success,
            failed=job.failed,
            skipped_limit=job.skipped_limit,
            error=job.error,
            scheduled_at=job.scheduled_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            attempts=[AttemptView.from_attempt(a) for a in view.attempts],
        )


class CancelResponse(BaseModel):
    success: bool
    error: str | None = None
    cancelled_attempts: int = 0


class SendResponse(BaseModel):
    success: bool
    channel: str
    status: str
    attempt_id: str | None = None
    error: str | None = None
    limit_reached: bool = False


class ChannelUsageView(BaseModel):
    channel: str
    used: int
    limit: int | None
    bonus: int
    remaining: int | None
    unlimited: bool

    @classmethod
    def from_usage(cls, usage: ChannelUsage) -> "ChannelUsageView":
        return cls(
            channel=usage.channel.value,
            used=usage.used,
            limit=usage.limit,
            bonus=usage.bonus,
            remaining=usage.remaining,
            unlimited=usage.unlimited,
        )


class UsageResponse(BaseModel):
    tenant_id: str
    channels: list[ChannelUsageView]


class AttemptPage(BaseModel):
    event_id: str
    total: int
    limit: int
    offset: int
    attempts: list[AttemptView]


class OkResponse(BaseModel):
    ok: bool = True
    attempt_id: str | None = None
    status: str | None = None
