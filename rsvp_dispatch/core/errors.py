# rsvp_dispatch/core/errors.py
"""
Typed errors raised by the dispatch engine.

The HTTP layer maps these onto ``ApiError`` subtypes; the engine itself
never imports transport code.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all engine errors."""

    code: str = "DISPATCH_ERROR"

    def __init__(self, detail: str = "Dispatch error"):
        self.detail = detail
        super().__init__(detail)


class QuotaExceededError(DispatchError):
    """Tenant has no remaining quota for the channel(s) required."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, detail: str, channel: str | None = None, remaining: int | None = 0):
        super().__init__(detail)
        self.channel = channel
        self.remaining = remaining


class ConfigurationError(DispatchError):
    """Missing provider credentials or originating number; fatal for a job."""

    code = "CONFIGURATION"


class PhoneNormalizationError(DispatchError):
    code = "VALIDATION"


class TenantNotFoundError(DispatchError):
    code = "TENANT_NOT_FOUND"


class EventNotFoundError(DispatchError):
    code = "EVENT_NOT_FOUND"


class RecipientNotFoundError(DispatchError):
    code = "RECIPIENT_NOT_FOUND"


class JobNotFoundError(DispatchError):
    code = "JOB_NOT_FOUND"


class JobStateError(DispatchError):
    """Operation not allowed in the job's current status."""

    code = "JOB_STATE"


class AttemptNotFoundError(DispatchError):
    code = "ATTEMPT_NOT_FOUND"


class AttemptNotRetryableError(DispatchError):
    code = "ATTEMPT_NOT_RETRYABLE"


class InvalidStatusTransitionError(DispatchError):
    code = "INVALID_STATUS_TRANSITION"


class ProviderSendError(Exception):
    """
    Raised by channel senders on a provider-side failure.

    ``response`` keeps the raw provider payload for diagnostics;
    ``retryable`` marks transient errors (5xx, 429, timeouts).
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error_code: str | None = None,
        retryable: bool = False,
        response: dict | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        self.response = response or {}


class OutcomeNotRecordedError(Exception):
    """A job run ended with provider outcomes that could not be written; the job stays PROCESSING."""

    def __init__(self, job_id: str, attempt_ids: list[str]):
        super().__init__(f"Job {job_id}: {len(attempt_ids)} outcome(s) not recorded")
        self.job_id = job_id
        self.attempt_ids = attempt_ids
