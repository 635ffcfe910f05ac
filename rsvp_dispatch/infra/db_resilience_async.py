# rsvp_dispatch/infra/db_resilience_async.py
"""
Retry helpers around asyncpg.

Two failure families are replayed:
  * transient: the connection dropped, the pool is exhausted, a deadlock was
    broken, a statement timed out;
  * serialization conflicts: a SERIALIZABLE quota transaction lost a race.

The unit of work being retried must open its own connection, so a replay
starts from a clean transaction.
"""
from __future__ import annotations
import asyncio
from typing import Callable, Iterator
from contextlib import asynccontextmanager, AsyncExitStack
from functools import wraps

import asyncpg
from rsvp_dispatch.infra.db_async import db_conn
from rsvp_dispatch.infra.logging_config import get_logger
from rsvp_dispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_TRANSIENT_TYPES = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.DeadlockDetectedError,
    ConnectionError,
    asyncio.TimeoutError,
)
_TRANSIENT_MARKERS = ("connection reset", "server closed", "too many connections", "timeout")

ACQUIRE_RETRIES = 3


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def is_serialization_conflict(exc: Exception) -> bool:
    """40001 / 40P01: the whole transaction must be replayed."""
    return isinstance(exc, (asyncpg.SerializationError, asyncpg.DeadlockDetectedError))


def backoff_delays(retries: int, initial: float, factor: float = 2.0, cap: float = 5.0) -> Iterator[float]:
    delay = initial
    for _ in range(retries):
        yield delay
        delay = min(delay * factor, cap)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
    should_retry: Callable[[Exception], bool] = is_transient_error,
):
    """
    Replay an async unit of work while ``should_retry`` accepts the error.

        @retry_on_transient_error(max_retries=5, should_retry=is_serialization_conflict)
        async def reserve(...):
            async with safe_db_conn(autocommit=False, isolation="serializable") as conn:
                ...

    After ``max_retries`` replays the last error propagates.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delays = backoff_delays(max_retries, initial_delay, backoff_factor, max_delay)
            replay = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not should_retry(exc):
                        raise
                    delay = next(delays, None)
                    if delay is None:
                        logger.error(f"{func.__name__}: giving up after {max_retries} replays ({exc})")
                        DispatchMetrics.database_error(func.__name__)
                        raise
                    replay += 1
                    logger.warning(
                        f"{func.__name__}: {exc.__class__.__name__}, replay {replay}/{max_retries} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, isolation: str | None = None):
    """
    ``db_conn`` whose acquisition survives transient errors.

    Statements inside the block are not replayed; they may not be idempotent.
    """
    delays = backoff_delays(ACQUIRE_RETRIES, 0.1)
    async with AsyncExitStack() as stack:
        while True:
            try:
                conn = await stack.enter_async_context(db_conn(autocommit=autocommit, isolation=isolation))
                break
            except Exception as exc:
                if not is_transient_error(exc):
                    raise
                delay = next(delays, None)
                if delay is None:
                    logger.error(f"Could not acquire a database connection: {exc}")
                    DispatchMetrics.database_error("acquire")
                    raise
                logger.warning(f"Connection acquire failed ({exc}); retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

        yield conn
