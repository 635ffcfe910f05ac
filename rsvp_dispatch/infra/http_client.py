# rsvp_dispatch/infra/http_client.py
"""
Pooled aiohttp sessions for outbound provider calls.

Upsend and VAPI go through the ``sender`` profile; Twilio uses its own
REST client. Sessions are created lazily on first use inside the event
loop and closed once by ``close_all_sessions()`` at shutdown.
"""
from __future__ import annotations

import aiohttp

from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

USER_AGENT = "rsvp-dispatch/0.1"

# profile -> (timeout, connection pool limit)
_PROFILES: dict[str, tuple[aiohttp.ClientTimeout, int]] = {
    "sender": (aiohttp.ClientTimeout(total=25, connect=5), 20),
}

_sessions: dict[str, aiohttp.ClientSession] = {}


def get_session(profile: str) -> aiohttp.ClientSession:
    session = _sessions.get(profile)
    if session is not None and not session.closed:
        return session

    if profile not in _PROFILES:
        raise ValueError(f"Unknown HTTP session profile: {profile}")
    timeout, limit = _PROFILES[profile]

    session = aiohttp.ClientSession(
        timeout=timeout,
        headers={"User-Agent": USER_AGENT},
        connector=aiohttp.TCPConnector(limit=limit, keepalive_timeout=30, enable_cleanup_closed=True),
    )
    _sessions[profile] = session
    logger.debug(f"HTTP session '{profile}' opened (limit={limit})")
    return session


def get_sender_session() -> aiohttp.ClientSession:
    return get_session("sender")


async def close_all_sessions() -> int:
    """Close every open session; returns how many were closed."""
    closed = 0
    while _sessions:
        profile, session = _sessions.popitem()
        if not session.closed:
            await session.close()
            closed += 1
            logger.debug(f"HTTP session '{profile}' closed")
    return closed
