# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root (and this directory, for fakes.py) to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import (  # noqa: E402
    FIXED_NOW,
    FakeDirectory,
    FakeLedger,
    FakeSender,
    InMemoryStore,
    JobStoreView,
    RecordingSleep,
)

from rsvp_dispatch.core.dispatcher import BatchDispatcher  # noqa: E402
from rsvp_dispatch.core.domain import EventContext, Plan, Recipient, RsvpStatus, Tenant  # noqa: E402
from rsvp_dispatch.core.orchestrator import JobOrchestrator  # noqa: E402
from rsvp_dispatch.core.status import JobStatusService  # noqa: E402


@pytest.fixture
def tenant_id():
    return "tenant-1"


@pytest.fixture
def tenant(tenant_id):
    return Tenant(id=tenant_id, plan=Plan.PREMIUM, voice_phone_number_id="pn-tenant")


@pytest.fixture
def event(tenant_id):
    return EventContext(
        id="event-1",
        tenant_id=tenant_id,
        title="Dana & Yoni",
        starts_at=datetime(2026, 6, 18, 19, 30, tzinfo=timezone.utc),
        venue="Beit Hashita Gardens",
        address="Kibbutz Beit Hashita",
        slug="dana-yoni",
    )


@pytest.fixture
def recipients(event):
    """Seven guests: mixed phone formats, one already accepted, one without a phone"""
    return [
        Recipient(id="g1", event_id=event.id, name="Avi", phone="+972501111111"),
        Recipient(id="g2", event_id=event.id, name="Batya", phone="0502222222"),
        Recipient(id="g3", event_id=event.id, name="Chen", phone="+972503333333",
                  rsvp_status=RsvpStatus.ACCEPTED),
        Recipient(id="g4", event_id=event.id, name="Dov", phone="+972504444444"),
        Recipient(id="g5", event_id=event.id, name="Eli", phone=None),
        Recipient(id="g6", event_id=event.id, name="Fira", phone="+972506666666"),
        Recipient(id="g7", event_id=event.id, name="Gal", phone="+972507777777"),
    ]


@pytest.fixture
def directory(tenant, event, recipients):
    return FakeDirectory(tenants=[tenant], events=[event], recipients=recipients)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def jobs(store):
    return JobStoreView(store)


@pytest.fixture
def ledger(store):
    return FakeLedger(store)


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def dispatcher(sender, ledger, store, jobs, sleep):
    return BatchDispatcher(sender, ledger, store, jobs, concurrency=3, delay=1.0, sleep=sleep, record_retry_delay=0)


@pytest.fixture
def submitted():
    return []


@pytest.fixture
def orchestrator(directory, sender, ledger, store, jobs, dispatcher, submitted):
    def submit(job_id):
        submitted.append(job_id)
        return True

    return JobOrchestrator(
        directory=directory,
        sender=sender,
        ledger=ledger,
        recorder=store,
        jobs=jobs,
        dispatcher=dispatcher,
        submit=submit,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def status_service(jobs, store, ledger, directory):
    return JobStatusService(jobs=jobs, recorder=store, ledger=ledger, directory=directory)
