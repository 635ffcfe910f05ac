# rsvp_dispatch/transport/vapi_sender.py
"""
VAPI outbound voice calls.

A call is placed with ``POST /call``; the provider answers with the call
object immediately and the conversation itself runs asynchronously, so a
successful response means the call is CALLING, not completed.
"""
from __future__ import annotations

import aiohttp

from rsvp_dispatch.config import settings
from rsvp_dispatch.core.errors import ProviderSendError
from rsvp_dispatch.infra.http_client import get_sender_session
from rsvp_dispatch.infra.logging_config import get_logger, mask_phone
from rsvp_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


def _auth_headers() -> dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.vapi_api_key}",
        "Content-Type": "application/json",
    }


async def create_call(
    to: str,
    *,
    phone_number_id: str,
    customer_name: str,
    variables: dict[str, str] | None = None,
    metadata: dict[str, str] | None = None,
) -> dict:
    """
    Start an outbound call from ``phone_number_id`` to ``to``.

    ``variables`` are exposed to the assistant prompt; ``metadata`` is echoed
    back on provider callbacks.

    Raises:
        ProviderSendError: On non-2xx responses or transport failure
    """
    if not settings.vapi_api_key or not settings.vapi_assistant_id:
        raise ProviderSendError("VAPI credentials not configured", error_code="CONFIGURATION")

    payload = {
        "phoneNumberId": phone_number_id,
        "assistantId": settings.vapi_assistant_id,
        "customer": {"number": to, "name": customer_name},
        "assistantOverrides": {
            "variableValues": variables or {},
            "metadata": metadata or {},
        },
    }
    url = f"{settings.vapi_base_url.rstrip('/')}/call"

    try:
        session = get_sender_session()
        async with session.post(url, json=payload, headers=_auth_headers()) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None

            if resp.status in (200, 201) and body is not None:
                inc_counter("vapi_call_created")
                logger.info(f"VAPI call created: to={mask_phone(to)}, call_id={body.get('id')}")
                return body

            message = (body or {}).get("message") or f"VAPI HTTP {resp.status}"
            if isinstance(message, list):
                message = "; ".join(str(m) for m in message)
            retryable = resp.status == 429 or resp.status >= 500

            inc_counter("vapi_call_error", code=str(resp.status))
            logger.warning(
                f"VAPI call failed: to={mask_phone(to)}, status={resp.status}",
                extra={"error_code": resp.status},
            )
            raise ProviderSendError(
                str(message),
                status=resp.status,
                error_code=str(resp.status),
                retryable=retryable,
                response=body or {},
            )

    except ProviderSendError:
        raise
    except (aiohttp.ClientError, TimeoutError) as exc:
        inc_counter("vapi_call_error", code="network")
        logger.error(f"VAPI network error: {type(exc).__name__}", exc_info=True)
        raise ProviderSendError(f"Network error: {type(exc).__name__}", status=0, retryable=True) from exc
