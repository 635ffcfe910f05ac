# rsvp_dispatch/transport/http_app.py
"""
HTTP application for the dispatch service.

Authentication happens upstream (gateway / calling app); this service only
protects /metrics with an optional bearer token. Routes are thin:
parse request -> call DispatchApplicationService -> return JSON.
"""
from __future__ import annotations

import hmac
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from rsvp_dispatch.api.errors import ApiError
from rsvp_dispatch.api.models import CreateJobRequest, SendRequest, StatusCorrectionRequest
from rsvp_dispatch.api.service import DispatchApplicationService, get_dispatch_service
from rsvp_dispatch.config import settings
from rsvp_dispatch.infra.db_async import close_pool, init_pool, pool_stats
from rsvp_dispatch.infra.health_checks_async import get_async_health_checker
from rsvp_dispatch.infra.http_client import close_all_sessions
from rsvp_dispatch.infra.logging_config import get_logger, setup_logging
from rsvp_dispatch.infra.metrics import get_metrics_collector
from rsvp_dispatch.infra.schema_validator import validate_schema_version
from rsvp_dispatch.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)

setup_logging(level=settings.log_level, use_json=settings.is_production)

logger = get_logger(__name__)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    logger.info(f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}")

    await init_pool()
    logger.info("Database pool initialized")

    # Does NOT run migrations: python -m rsvp_dispatch.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}", extra=schema_result)
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m rsvp_dispatch.infra.migrate",
            exc_info=True,
        )
        raise

    service = get_dispatch_service()
    fastapi_app.state.dispatch_service = service

    # Bulk jobs only execute in "all" or "worker" mode; a web-only process
    # persists jobs and leaves them to the worker's due-job trigger.
    job_runner = None
    if settings.run_mode in ("all", "worker") and settings.job_runner_enabled:
        from rsvp_dispatch.infra.job_runner import JobRunner

        orchestrator = service.orchestrator
        job_runner = JobRunner(
            orchestrator.run_job,
            trigger=orchestrator.trigger_due_jobs,
            resume=orchestrator.resume_jobs,
            max_concurrent_jobs=settings.job_runner_max_concurrent_jobs,
            trigger_interval=settings.job_runner_trigger_interval,
        )
        orchestrator.attach_submitter(job_runner.submit)
        await job_runner.start()
    else:
        logger.info(
            f"Job runner skipped (run_mode={settings.run_mode}, enabled={settings.job_runner_enabled})"
        )
    fastapi_app.state.job_runner = job_runner

    logger.info(
        f"Channels: whatsapp={settings.whatsapp_enabled}, sms={settings.sms_enabled} "
        f"({settings.sms_provider}), voice={settings.voice_enabled}"
    )
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")

    if job_runner is not None:
        await job_runner.stop()

    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(*, with_lifespan: bool = True) -> FastAPI:
    fastapi_app = FastAPI(
        title="RSVP Dispatch",
        description="Quota-enforced bulk dispatch of invitations, reminders and calls",
        version="0.1.0",
        lifespan=lifespan if with_lifespan else None,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    fastapi_app.add_exception_handler(ApiError, api_error_handler)
    fastapi_app.add_exception_handler(HTTPException, http_exception_handler)
    fastapi_app.add_exception_handler(RequestValidationError, validation_exception_handler)

    fastapi_app.include_router(router_public)
    fastapi_app.include_router(router_dispatch)
    return fastapi_app


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error(f"Service error: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail, "code": exc.code})


async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "code": "HTTP_ERROR"},
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "code": "VALIDATION", "details": errors},
    )


# ============================================================================
# DEPENDENCIES
# ============================================================================

metrics_bearer_scheme = HTTPBearer(auto_error=False)


def require_metrics_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
) -> None:
    """Bearer token check for /metrics; open when no metrics_token is configured."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    if not settings.metrics_token:
        return
    if credentials is None or not hmac.compare_digest(credentials.credentials, settings.metrics_token):
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})


def get_service(request: Request) -> DispatchApplicationService:
    service = getattr(request.app.state, "dispatch_service", None)
    return service or get_dispatch_service()


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

router_public = APIRouter()
router_dispatch = APIRouter()


@router_public.get("/health")
def health():
    """Liveness: the process is up."""
    return {"status": "healthy"}


@router_public.get("/ready")
async def readiness():
    """Readiness: database reachable."""
    health_checker = get_async_health_checker()
    result = await health_checker.run_checks(include_non_critical=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@router_public.get("/health/details", dependencies=[Depends(require_metrics_auth)])
async def health_details(request: Request):
    """All checks (job backlog included), schema state, pool occupancy and job runner load."""
    result = await get_async_health_checker().run_checks(include_non_critical=True)
    job_runner = getattr(request.app.state, "job_runner", None)
    result["pool"] = pool_stats()
    result["job_runner"] = {"in_flight": job_runner.in_flight} if job_runner is not None else None
    status_code = 503 if result["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=result)


@router_public.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    return get_metrics_collector().get_metrics()


# ============================================================================
# DISPATCH ENDPOINTS
# ============================================================================

@router_dispatch.post("/tenants/{tenant_id}/jobs", status_code=201)
async def create_job(tenant_id: str, req: CreateJobRequest, service: DispatchApplicationService = Depends(get_service)):
    result = await service.create_job(tenant_id, req)
    return result.model_dump()


@router_dispatch.get("/jobs/{job_id}")
async def get_job(job_id: str, service: DispatchApplicationService = Depends(get_service)):
    result = await service.get_job(job_id)
    return result.model_dump(mode="json")


@router_dispatch.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, service: DispatchApplicationService = Depends(get_service)):
    result = await service.cancel_job(job_id)
    if not result.success:
        return JSONResponse(status_code=409, content=result.model_dump())
    return result.model_dump()


@router_dispatch.post("/tenants/{tenant_id}/send")
async def send_single(tenant_id: str, req: SendRequest, service: DispatchApplicationService = Depends(get_service)):
    result = await service.send(tenant_id, req)
    return result.model_dump()


@router_dispatch.post("/attempts/{attempt_id}/retry")
async def retry_attempt(attempt_id: str, service: DispatchApplicationService = Depends(get_service)):
    result = await service.retry_attempt(attempt_id)
    return result.model_dump()


@router_dispatch.patch("/attempts/{attempt_id}/status")
async def correct_attempt_status(
    attempt_id: str,
    req: StatusCorrectionRequest,
    service: DispatchApplicationService = Depends(get_service),
):
    result = await service.correct_status(attempt_id, req)
    return result.model_dump(exclude_none=True)


@router_dispatch.get("/tenants/{tenant_id}/usage")
async def tenant_usage(tenant_id: str, service: DispatchApplicationService = Depends(get_service)):
    result = await service.usage(tenant_id)
    return result.model_dump()


@router_dispatch.get("/events/{event_id}/attempts")
async def event_attempts(
    event_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: DispatchApplicationService = Depends(get_service),
):
    result = await service.event_attempts(event_id, limit=limit, offset=offset)
    return result.model_dump(mode="json")


app = create_app()
