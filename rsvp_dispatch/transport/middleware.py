# rsvp_dispatch/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from rsvp_dispatch.infra.logging_config import get_logger, LogContext
from rsvp_dispatch.infra.metrics import inc_counter, observe_histogram

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Probes are polled every few seconds; logged at DEBUG only
_PROBE_PATHS = frozenset({"/health", "/ready", "/metrics"})


def route_template(request: Request) -> str:
    """``/jobs/{job_id}`` rather than the concrete path, to keep metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Request-ID (gateway-assigned) or mint one"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
        request_id = incoming[:128] if incoming else str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line plus request count and latency per route"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        log = LogContext(logger, request_id=getattr(request.state, "request_id", None))
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            log.error(
                f"{request.method} {request.url.path} raised {exc.__class__.__name__} "
                f"after {(time.monotonic() - started) * 1000:.1f}ms",
                exc_info=True,
            )
            raise

        duration_ms = (time.monotonic() - started) * 1000
        route = route_template(request)
        inc_counter("http_requests_total", method=request.method, route=route, status=str(response.status_code))
        observe_histogram("http_request_duration_ms", duration_ms, method=request.method, route=route)

        level_log = log.debug if request.url.path in _PROBE_PATHS else log.info
        level_log(
            f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={"status_code": response.status_code, "duration_ms": round(duration_ms, 1)},
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn anything that escaped the exception handlers into a JSON 500"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "code": "INTERNAL", "request_id": request_id},
            )
