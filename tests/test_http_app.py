# tests/test_http_app.py
"""HTTP routes wired to the in-memory engine"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from fakes import failed_result

from rsvp_dispatch.api.service import DispatchApplicationService
from rsvp_dispatch.config import settings
from rsvp_dispatch.core.domain import AttemptStatus, Channel, JobStatus
from rsvp_dispatch.infra.metrics import get_metrics_collector
from rsvp_dispatch.transport.http_app import create_app


@pytest.fixture
def service(orchestrator, status_service):
    return DispatchApplicationService(orchestrator, status_service)


@pytest.fixture
def client(service):
    app = create_app(with_lifespan=False)
    app.state.dispatch_service = service
    with TestClient(app) as test_client:
        yield test_client


class TestPublicEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"

    def test_request_id_generated(self, client):
        response = client.get("/health")

        assert len(response.headers["X-Request-ID"]) == 36

    def test_ready_unhealthy(self, client):
        checker = MagicMock()
        checker.run_checks = AsyncMock(return_value={"status": "unhealthy"})
        with patch("rsvp_dispatch.transport.http_app.get_async_health_checker", return_value=checker):
            response = client.get("/ready")

        assert response.status_code == 503

    def test_health_details(self, client):
        checker = MagicMock()
        checker.run_checks = AsyncMock(return_value={"status": "degraded", "checks": {}})
        with patch("rsvp_dispatch.transport.http_app.get_async_health_checker", return_value=checker):
            response = client.get("/health/details")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["pool"] == {}
        assert body["job_runner"] is None
        checker.run_checks.assert_awaited_once_with(include_non_critical=True)

    def test_metrics_open_without_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "metrics_token", None)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "counters" in response.json()

    def test_metrics_requires_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "metrics_token", "s3cret")

        assert client.get("/metrics").status_code == 401
        assert client.get("/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert client.get("/metrics", headers={"Authorization": "Bearer s3cret"}).status_code == 200

    def test_metrics_disabled(self, client, monkeypatch):
        monkeypatch.setattr(settings, "enable_metrics", False)

        assert client.get("/metrics").status_code == 404


class TestJobs:
    def test_create_job(self, client, submitted, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1", "g2", "g4"],
        })

        assert response.status_code == 201
        body = response.json()
        assert body["total"] == 3
        assert body["status"] == "PENDING"
        assert submitted == [body["job_id"]]

    def test_reminder_skips_responded(self, client, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1", "g3"], "message_type": "REMINDER",
        })

        assert response.json()["skipped_responded"] == 1

    def test_scheduled_job_not_started(self, client, submitted, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1"], "scheduled_for": "2026-04-01T09:00:00",
        })

        assert response.status_code == 201
        assert submitted == []

    def test_unknown_event(self, client, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-404", "recipient_ids": ["g1"],
        })

        assert response.status_code == 404
        assert response.json()["code"] == "EVENT_NOT_FOUND"

    def test_quota_exhausted(self, client, ledger, tenant_id):
        ledger.limits = {Channel.WHATSAPP: 0, Channel.SMS: 0}

        response = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1"],
        })

        assert response.status_code == 429
        assert response.json()["code"] == "QUOTA_EXCEEDED"

    def test_validation_error_shape(self, client, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/jobs", json={"event_id": "event-1", "recipient_ids": []})

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION"
        assert body["details"][0]["loc"][-1] == "recipient_ids"

    def test_unknown_message_type(self, client, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1"], "message_type": "FAX",
        })

        assert response.status_code == 422

    def test_get_job(self, client, tenant_id):
        job_id = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1", "g2"],
        }).json()["job_id"]

        response = client.get(f"/jobs/{job_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["job_id"] == job_id
        assert body["total"] == 2
        assert [a["recipient_id"] for a in body["attempts"]] == ["g1", "g2"]
        assert body["attempts"][0]["channel"] == "whatsapp"
        assert body["attempts"][1]["channel"] == "sms"

    def test_get_unknown_job(self, client):
        response = client.get("/jobs/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "JOB_NOT_FOUND"

    def test_cancel_job(self, client, store, tenant_id):
        job_id = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1", "g2"],
        }).json()["job_id"]

        response = client.post(f"/jobs/{job_id}/cancel")

        assert response.status_code == 200
        assert response.json() == {"success": True, "error": None, "cancelled_attempts": 2}
        assert store.jobs[job_id].status is JobStatus.CANCELLED

    def test_cancel_twice_conflicts(self, client, tenant_id):
        job_id = client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1"],
        }).json()["job_id"]
        client.post(f"/jobs/{job_id}/cancel")

        response = client.post(f"/jobs/{job_id}/cancel")

        assert response.status_code == 409
        assert response.json()["success"] is False


class TestSingleSend:
    def test_send(self, client, sender, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["channel"] == "whatsapp"
        assert body["status"] == "SENT"
        assert body["limit_reached"] is False
        assert len(sender.calls) == 1

    def test_limit_reached(self, client, ledger, sender, tenant_id):
        ledger.limits = {Channel.WHATSAPP: 0}

        response = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"})

        assert response.status_code == 200
        assert response.json()["limit_reached"] is True
        assert sender.calls == []

    def test_unknown_recipient(self, client, tenant_id):
        response = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "ghost"})

        assert response.status_code == 404
        assert response.json()["code"] == "RECIPIENT_NOT_FOUND"

    def test_provider_not_configured(self, client, sender, tenant_id):
        sender.config_error = "WhatsApp channel is not configured"

        response = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"})

        assert response.status_code == 503
        assert response.json() == {"error": "WhatsApp channel is not configured", "code": "CONFIGURATION"}


class TestAttempts:
    def test_retry_failed_attempt(self, client, sender, store, tenant_id):
        sender.fail["g1"] = failed_result()
        first = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"}).json()
        sender.fail.clear()

        response = client.post(f"/attempts/{first['attempt_id']}/retry")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert store.attempts[body["attempt_id"]].retry_of == first["attempt_id"]

    def test_retry_sent_attempt_conflicts(self, client, tenant_id):
        first = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"}).json()

        response = client.post(f"/attempts/{first['attempt_id']}/retry")

        assert response.status_code == 409
        assert response.json()["code"] == "ATTEMPT_NOT_RETRYABLE"

    def test_correct_status(self, client, store, tenant_id):
        first = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"}).json()

        response = client.patch(f"/attempts/{first['attempt_id']}/status", json={"status": "DELIVERED"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "attempt_id": first["attempt_id"], "status": "DELIVERED"}
        assert store.attempts[first["attempt_id"]].status is AttemptStatus.DELIVERED

    def test_invalid_correction(self, client, tenant_id):
        first = client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"}).json()

        response = client.patch(f"/attempts/{first['attempt_id']}/status", json={"status": "BUSY"})

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATUS_TRANSITION"

    def test_event_attempts_paginated(self, client, tenant_id):
        client.post(f"/tenants/{tenant_id}/jobs", json={
            "event_id": "event-1", "recipient_ids": ["g1", "g2", "g4"],
        })

        response = client.get("/events/event-1/attempts", params={"limit": 2})

        body = response.json()
        assert body["total"] == 3
        assert len(body["attempts"]) == 2

    def test_event_attempts_limit_bounds(self, client):
        assert client.get("/events/event-1/attempts", params={"limit": 0}).status_code == 422


class TestUsage:
    def test_usage(self, client, ledger, tenant_id):
        ledger.limits = {Channel.WHATSAPP: 50}
        client.post(f"/tenants/{tenant_id}/send", json={"recipient_id": "g1"})

        response = client.get(f"/tenants/{tenant_id}/usage")

        assert response.status_code == 200
        channels = {c["channel"]: c for c in response.json()["channels"]}
        assert channels["whatsapp"]["used"] == 1
        assert channels["whatsapp"]["remaining"] == 49
        assert channels["sms"]["unlimited"] is True

    def test_unknown_tenant(self, client):
        response = client.get("/tenants/ghost/usage")

        assert response.status_code == 404
        assert response.json()["code"] == "TENANT_NOT_FOUND"


class TestMiddleware:
    def test_unhandled_error_becomes_json_500(self, service):
        app = create_app(with_lifespan=False)
        app.state.dispatch_service = service

        @app.get("/boom")
        async def boom():
            raise RuntimeError("kaboom")

        with TestClient(app) as client:
            response = client.get("/boom", headers={"X-Request-ID": "req-1"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error", "code": "INTERNAL", "request_id": "req-1"}
        assert response.headers["X-Request-ID"] == "req-1"

    def test_requests_counted_per_route(self, client):
        collector = get_metrics_collector()
        labels = {"method": "GET", "route": "/jobs/{job_id}", "status": "404"}
        before = collector.get_counter("http_requests_total", **labels)

        client.get("/jobs/nope-1")
        client.get("/jobs/nope-2")

        assert collector.get_counter("http_requests_total", **labels) == before + 2
