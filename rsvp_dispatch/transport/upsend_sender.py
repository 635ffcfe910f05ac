# rsvp_dispatch/transport/upsend_sender.py
"""
Upsend SMS gateway sender (channel B when ``sms_provider=upsend``).

Upsend answers HTTP 200 for most business failures and reports the outcome
in ``StatusId``: 1 is success, negative values are error codes.

Error classification (ProviderSendError.retryable):
- Bad credentials / blocked user (-2, -22, -26) → NOT retryable
- Gateway quota exhausted (-13, -14, -15)        → NOT retryable
- Invalid recipient / sender (-6, -17, -18, -21, -90, -94) → NOT retryable
- Generic send failure (-1)                      → retryable
- 5xx / network / timeout                        → retryable
"""
from __future__ import annotations

import re

import aiohttp

from rsvp_dispatch.config import settings
from rsvp_dispatch.core.errors import ProviderSendError
from rsvp_dispatch.infra.http_client import get_sender_session
from rsvp_dispatch.infra.logging_config import get_logger, mask_phone
from rsvp_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

UPSEND_ERRORS: dict[int, str] = {
    -1: "Failed to send message",
    -2: "Bad username or password",
    -6: "Recipients data not exists",
    -9: "Message text not exists",
    -13: "User quota exceeded",
    -14: "Project quota exceeded",
    -15: "Customer quota exceeded",
    -16: "Wrong date/time format",
    -17: "Wrong number parameter",
    -18: "No valid recipients",
    -21: "Invalid sender name",
    -22: "User blocked",
    -26: "User authentication error",
    -90: "Invalid sender identification",
    -94: "Sender ID is not in allow list",
}

QUOTA_ERROR_CODES = frozenset({-13, -14, -15})
_RETRYABLE_CODES = frozenset({-1})


def local_israeli_number(phone: str) -> str:
    """+972501234567 -> 0501234567; Upsend expects the domestic form."""
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("972"):
        return "0" + digits[3:]
    if not digits.startswith("0") and len(digits) == 9:
        return "0" + digits
    return digits


def sender_id() -> str:
    """Alphanumeric sender (max 11 chars) or the originating number's digits (max 14)."""
    if settings.sms_alpha_sender_id:
        return settings.sms_alpha_sender_id[:11]
    return re.sub(r"\D", "", settings.twilio_sms_number or "")[:14]


async def send_sms(to: str, body: str) -> dict:
    """
    Send one SMS through Upsend.

    Returns the parsed response; ``RequestId`` is the provider message id.

    Raises:
        ProviderSendError: On any non-success StatusId or transport failure
    """
    if not settings.upsend_username or not settings.upsend_api_token:
        raise ProviderSendError("Upsend credentials not configured", error_code="CONFIGURATION")

    payload = {
        "Data": {
            "Message": body,
            "Recipients": [{"Phone": local_israeli_number(to)}],
            "Settings": {"Sender": sender_id()},
        }
    }
    url = f"{settings.upsend_base_url.rstrip('/')}/SMS/SendSms"

    try:
        session = get_sender_session()
        async with session.post(
            url,
            json=payload,
            auth=aiohttp.BasicAuth(settings.upsend_username, settings.upsend_api_token),
        ) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None

            if resp.status >= 500 or data is None:
                inc_counter("upsend_outbound_error", code=str(resp.status))
                logger.error(f"Upsend API error: status={resp.status}, to={mask_phone(to)}")
                raise ProviderSendError(
                    f"Upsend HTTP {resp.status}",
                    status=resp.status,
                    retryable=resp.status >= 500 or resp.status == 429,
                    response=data or {},
                )

            status_id = data.get("StatusId")
            if status_id == 1:
                inc_counter("upsend_outbound_sent")
                logger.info(f"Upsend SMS sent: to={mask_phone(to)}, request_id={data.get('RequestId')}")
                return data

            message = (
                UPSEND_ERRORS.get(status_id)
                or data.get("DetailedDescription")
                or data.get("StatusDescription")
                or "Unknown error"
            )
            if status_id in QUOTA_ERROR_CODES:
                message = f"SMS gateway quota exceeded: {message}"

            inc_counter("upsend_outbound_error", code=str(status_id))
            logger.warning(
                f"Upsend SMS rejected: to={mask_phone(to)}, status_id={status_id}",
                extra={"error_code": status_id},
            )
            raise ProviderSendError(
                message,
                status=resp.status,
                error_code=str(status_id),
                retryable=status_id in _RETRYABLE_CODES,
                response=data,
            )

    except ProviderSendError:
        raise
    except (aiohttp.ClientError, TimeoutError) as exc:
        inc_counter("upsend_outbound_error", code="network")
        logger.error(f"Upsend network error: {type(exc).__name__}", exc_info=True)
        raise ProviderSendError(f"Network error: {type(exc).__name__}", status=0, retryable=True) from exc
