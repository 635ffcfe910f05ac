# rsvp_dispatch/api/errors.py
"""
Typed errors for the dispatch application service.

Each error maps to a specific HTTP status code. The transport layer turns
``ApiError`` subtypes into ``{"error": ..., "code": ...}`` responses without
embedding business logic in the route handlers.
"""
from __future__ import annotations


class ApiError(Exception):
    """Base class for all API-facing errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error", code: str | None = None):
        self.detail = detail
        self.code = code or self.__class__.__name__.replace("Error", "").upper()
        super().__init__(detail)


class BadRequestError(ApiError):
    """Malformed request payload (400)."""

    status_code = 400


class NotFoundError(ApiError):
    """Resource not found (404)."""

    status_code = 404


class ConflictError(ApiError):
    """Operation not allowed in the resource's current state (409)."""

    status_code = 409


class UnprocessableError(ApiError):
    """Well-formed request the engine cannot act on (422)."""

    status_code = 422


class QuotaError(ApiError):
    """Tenant usage limit reached (429)."""

    status_code = 429


class ServiceUnavailableError(ApiError):
    """Providers or storage not configured / reachable (503)."""

    status_code = 503
