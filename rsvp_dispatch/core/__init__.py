# rsvp_dispatch/core/__init__.py
"""
Core dispatch engine: domain types, ports, and the use-case services.

Canonical imports:
    from rsvp_dispatch.core import JobOrchestrator, JobStatusService, BatchDispatcher
    from rsvp_dispatch.core.domain import Channel, MessageType, AttemptStatus
    from rsvp_dispatch.core.ports import QuotaLedger, AttemptRecorder
"""
from rsvp_dispatch.core.domain import (  # noqa: F401
    Channel,
    MessageType,
    AttemptStatus,
    JobStatus,
    Plan,
    BulkJob,
    DispatchAttempt,
    BulkSummary,
)
from rsvp_dispatch.core.dispatcher import BatchDispatcher, DispatchTask  # noqa: F401
from rsvp_dispatch.core.orchestrator import JobOrchestrator  # noqa: F401
from rsvp_dispatch.core.status import JobStatusService, CancelResult  # noqa: F401
