# rsvp_dispatch/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMS
# ============================================================================

class Channel(str, Enum):
    """Message transports: two text channels and one voice channel"""
    WHATSAPP = "whatsapp"  # channel A
    SMS = "sms"            # channel B
    VOICE = "voice"

    @property
    def is_message(self) -> bool:
        return self is not Channel.VOICE


MESSAGE_CHANNELS: tuple[Channel, ...] = (Channel.WHATSAPP, Channel.SMS)


class MessageType(str, Enum):
    INVITE = "INVITE"
    REMINDER = "REMINDER"
    EVENT_DAY = "EVENT_DAY"
    INTERACTIVE_INVITE = "INTERACTIVE_INVITE"
    INTERACTIVE_REMINDER = "INTERACTIVE_REMINDER"
    CALL = "CALL"

    @property
    def is_call(self) -> bool:
        return self is MessageType.CALL

    @property
    def is_interactive(self) -> bool:
        return self in (MessageType.INTERACTIVE_INVITE, MessageType.INTERACTIVE_REMINDER)

    @property
    def requires_pending_rsvp(self) -> bool:
        """Reminders are suppressed for guests that already answered"""
        return self in (MessageType.REMINDER, MessageType.INTERACTIVE_REMINDER)


class AttemptStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    UNDELIVERED = "UNDELIVERED"
    CALLING = "CALLING"
    COMPLETED = "COMPLETED"
    NO_ANSWER = "NO_ANSWER"
    BUSY = "BUSY"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self in SUCCESS_STATUSES


# Statuses that consume quota. A call counts once the provider accepted it.
SUCCESS_STATUSES: frozenset[AttemptStatus] = frozenset({
    AttemptStatus.SENT,
    AttemptStatus.DELIVERED,
    AttemptStatus.CALLING,
    AttemptStatus.COMPLETED,
    AttemptStatus.NO_ANSWER,
    AttemptStatus.BUSY,
})

FAILURE_STATUSES: frozenset[AttemptStatus] = frozenset({
    AttemptStatus.FAILED,
    AttemptStatus.UNDELIVERED,
})


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)


class RsvpStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class Plan(str, Enum):
    FREE = "FREE"
    BASIC = "BASIC"
    ADVANCED = "ADVANCED"
    PREMIUM = "PREMIUM"
    BUSINESS = "BUSINESS"


class ErrorCode(str, Enum):
    """error_code values written on attempts by the engine itself"""
    VALIDATION = "VALIDATION"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INTERNAL = "INTERNAL"
    INTERRUPTED = "INTERRUPTED"


# ============================================================================
# TENANT / EVENT / RECIPIENT
# ============================================================================

@dataclass
class Tenant:
    id: str
    plan: Plan = Plan.FREE
    voice_addon_enabled: bool = False
    voice_phone_number_id: Optional[str] = None  # assigned originating number (VAPI)
    subscription_period_end: Optional[datetime] = None
    is_active: bool = True


@dataclass
class UsageCounters:
    """
    Stored mirror of per-period usage. The ledger derives current usage from
    attempt rows; these counters are informational and reset on period roll.
    """
    tenant_id: str
    whatsapp_sent: int = 0
    sms_sent: int = 0
    calls_made: int = 0
    whatsapp_bonus: int = 0
    sms_bonus: int = 0
    calls_bonus: int = 0
    period_start: Optional[datetime] = None

    def sent(self, channel: Channel) -> int:
        return {
            Channel.WHATSAPP: self.whatsapp_sent,
            Channel.SMS: self.sms_sent,
            Channel.VOICE: self.calls_made,
        }[channel]

    def bonus(self, channel: Channel) -> int:
        return {
            Channel.WHATSAPP: self.whatsapp_bonus,
            Channel.SMS: self.sms_bonus,
            Channel.VOICE: self.calls_bonus,
        }[channel]


@dataclass
class EventContext:
    id: str
    tenant_id: str
    title: str = ""
    starts_at: Optional[datetime] = None
    venue: Optional[str] = None
    address: Optional[str] = None
    slug: Optional[str] = None


@dataclass
class Recipient:
    id: str
    event_id: str
    name: str
    phone: Optional[str]
    rsvp_status: RsvpStatus = RsvpStatus.PENDING
    table_name: Optional[str] = None
    slug: Optional[str] = None


# ============================================================================
# PROVIDER RESULT
# ============================================================================

@dataclass
class DispatchResult:
    """Outcome of one provider call (or of a decision not to call it)"""
    success: bool
    channel: Channel
    status: AttemptStatus
    provider_response: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    provider_id: Optional[str] = None  # message SID / call id


# ============================================================================
# ATTEMPTS & JOBS
# ============================================================================

@dataclass
class DispatchAttempt:
    id: str
    tenant_id: str
    event_id: str
    recipient_id: str
    message_type: MessageType
    channel: Channel
    status: AttemptStatus = AttemptStatus.PENDING
    job_id: Optional[str] = None
    position: int = 0
    phone: Optional[str] = None
    provider_id: Optional[str] = None
    provider_response: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    quota_held: bool = False
    retry_of: Optional[str] = None
    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class AttemptOutcome:
    """Terminal result of one per-recipient task, as handed to the recorder"""
    attempt_id: str
    tenant_id: str
    channel: Channel
    status: AttemptStatus
    phone: Optional[str] = None
    provider_id: Optional[str] = None
    provider_response: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status.is_success

    @property
    def limit_reached(self) -> bool:
        return self.error_code == ErrorCode.QUOTA_EXCEEDED.value


@dataclass
class BulkJob:
    id: str
    tenant_id: str
    event_id: str
    message_type: MessageType
    status: JobStatus = JobStatus.PENDING
    channel_override: Optional[Channel] = None
    template_override: Optional[str] = None
    content_sid: Optional[str] = None
    total: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0         # includes quota-skipped attempts
    skipped_limit: int = 0
    error: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class ReserveResult:
    """remaining is None when the channel is unlimited for the tenant's plan"""
    allowed: bool
    remaining: Optional[int]
    reason: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.remaining is None


@dataclass
class ChannelUsage:
    channel: Channel
    used: int
    limit: Optional[int]
    bonus: int
    remaining: Optional[int]

    @property
    def unlimited(self) -> bool:
        return self.limit is None


@dataclass
class BulkSummary:
    """Aggregate returned by every bulk operation, even on partial failure"""
    sent: int = 0
    failed: int = 0          # provider/validation failures, quota skips excluded
    skipped_limit: int = 0
    total: int = 0
    record_failures: int = 0
    cancelled: bool = False
    unrecorded: list[AttemptOutcome] = field(default_factory=list)  # record write kept failing


@dataclass
class JobCreated:
    job_id: str
    total: int
    skipped_responded: int
    status: JobStatus


@dataclass
class JobStatusView:
    job: BulkJob
    attempts: list[DispatchAttempt] = field(default_factory=list)

    @property
    def status(self) -> JobStatus:
        return self.job.status


@dataclass
class SendOutcome:
    success: bool
    channel: Channel
    status: AttemptStatus
    attempt_id: Optional[str] = None
    error: Optional[str] = None
    limit_reached: bool = False
