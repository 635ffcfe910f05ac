# rsvp_dispatch/infra/health_checks_async.py
"""
Probes behind /ready and /health/details.

The database probe is critical (it decides readiness). The job backlog probe
only degrades the report: a pile of PROCESSING jobs usually means a worker
died without releasing them.
"""
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from rsvp_dispatch.infra.db_async import get_pool
from rsvp_dispatch.infra.logging_config import get_logger
from rsvp_dispatch.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("tenants", "usage_counters", "bulk_jobs", "dispatch_attempts")
SLOW_QUERY_SECONDS = 1.0
STUCK_JOB_THRESHOLD = 20


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _report(status: HealthStatus, details: str, **fields) -> Dict[str, Any]:
    return {"status": status, "details": details, **fields}


class AsyncHealthCheck:
    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                missing = [
                    table for table in REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
        except Exception as exc:
            logger.error("Database probe failed", exc_info=True)
            return _report(HealthStatus.UNHEALTHY, "Database unreachable", error=str(exc)[:200])

        if missing:
            return _report(HealthStatus.UNHEALTHY, "Schema incomplete", error=f"Missing: {', '.join(missing)}")

        elapsed = round(time.monotonic() - started, 4)
        if elapsed > SLOW_QUERY_SECONDS:
            return _report(HealthStatus.DEGRADED, "Database slow", response_time=elapsed)
        return _report(HealthStatus.HEALTHY, "Database operational", response_time=elapsed)


class AsyncJobBacklogHealthCheck(AsyncHealthCheck):
    def __init__(self, stuck_threshold: int = STUCK_JOB_THRESHOLD):
        super().__init__("job_backlog", critical=False)
        self.stuck_threshold = stuck_threshold

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                      count(*) FILTER (WHERE status = 'PENDING' AND scheduled_at <= now()) AS due,
                      count(*) FILTER (WHERE status = 'PROCESSING') AS processing
                    FROM bulk_jobs
                    WHERE status IN ('PENDING', 'PROCESSING')
                    """
                )
        except Exception as exc:
            logger.warning(f"Job backlog probe failed: {exc}")
            return _report(HealthStatus.DEGRADED, "Job backlog unreadable", error=str(exc)[:200])

        counts = {"due_jobs": row["due"], "processing_jobs": row["processing"]}
        if row["processing"] > self.stuck_threshold:
            return _report(HealthStatus.DEGRADED, "Many jobs stuck in PROCESSING", **counts)
        return _report(HealthStatus.HEALTHY, "Job backlog normal", **counts)


class AsyncHealthChecker:
    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks = checks if checks is not None else [AsyncDatabaseHealthCheck(), AsyncJobBacklogHealthCheck()]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """Critical failure -> unhealthy; any other non-healthy result -> degraded."""
        selected = [c for c in self.checks if c.critical or include_non_critical]
        results = {check.name: await check.check() for check in selected}

        overall = HealthStatus.HEALTHY
        for check in selected:
            status = results[check.name]["status"]
            if status == HealthStatus.UNHEALTHY and check.critical:
                overall = HealthStatus.UNHEALTHY
                break
            if status != HealthStatus.HEALTHY:
                overall = HealthStatus.DEGRADED

        return {
            "status": overall.value,
            "checks": results,
            "schema": None if overall == HealthStatus.UNHEALTHY else await get_schema_info(),
            "timestamp": time.time(),
        }


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    return _async_health_checker
