# rsvp_dispatch/transport/twilio_sender.py
"""
Twilio outbound sender: WhatsApp (channel A) and SMS (channel B).

The Twilio REST client is synchronous; calls run in the default executor so
a window of concurrent sends does not serialize on the event loop.

Error classification (ProviderSendError.retryable):
- Auth failure (20003)            → NOT retryable
- Invalid / unreachable number    → NOT retryable (21211, 21614, 63003)
- Outside WhatsApp 24h window     → NOT retryable (63016, needs a Content Template)
- Rate limiting (429, 20429, 63038) → retryable
- 5xx / network                   → retryable
"""
from __future__ import annotations

import asyncio
import json
from functools import partial

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from rsvp_dispatch.config import settings
from rsvp_dispatch.core.errors import ProviderSendError
from rsvp_dispatch.infra.logging_config import get_logger, mask_phone
from rsvp_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

_NON_RETRYABLE_CODES = {20003, 21211, 21408, 21610, 21614, 63003, 63016}
_RATE_LIMIT_CODES = {20429, 63038}

_twilio_client: Client | None = None


def get_twilio_client() -> Client:
    """Get or create the Twilio REST client."""
    global _twilio_client
    if _twilio_client is None:
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            raise ProviderSendError("Twilio credentials not configured", error_code="CONFIGURATION")
        _twilio_client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
    return _twilio_client


def _whatsapp_address(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def _message_to_dict(message) -> dict:
    return {
        "sid": message.sid,
        "status": message.status,
        "to": message.to,
        "error_code": message.error_code,
        "error_message": message.error_message,
    }


async def _create_message(channel: str, to: str, **kwargs) -> dict:
    client = get_twilio_client()
    loop = asyncio.get_running_loop()

    try:
        message = await loop.run_in_executor(None, partial(client.messages.create, to=to, **kwargs))
    except TwilioRestException as exc:
        retryable = (
            exc.status == 429
            or exc.code in _RATE_LIMIT_CODES
            or (exc.status >= 500 and exc.code not in _NON_RETRYABLE_CODES)
        )
        inc_counter("twilio_outbound_error", channel=channel, code=str(exc.code))
        logger.warning(
            f"Twilio {channel} send failed: to={mask_phone(to)}, status={exc.status}, code={exc.code}",
            extra={"error_code": exc.code},
        )
        raise ProviderSendError(
            exc.msg or str(exc),
            status=exc.status,
            error_code=str(exc.code) if exc.code else None,
            retryable=retryable,
            response={"status": exc.status, "code": exc.code, "message": exc.msg, "more_info": exc.uri},
        ) from exc
    except TwilioException as exc:
        inc_counter("twilio_outbound_error", channel=channel, code="connection")
        logger.error(f"Twilio {channel} connection error: {type(exc).__name__}", exc_info=True)
        raise ProviderSendError(str(exc), status=0, retryable=True) from exc

    inc_counter("twilio_outbound_sent", channel=channel)
    logger.info(f"Twilio {channel} message sent: to={mask_phone(to)}, sid={message.sid[:8]}***")
    return _message_to_dict(message)


async def send_whatsapp(
    to: str,
    body: str | None = None,
    *,
    content_sid: str | None = None,
    content_variables: dict[str, str] | None = None,
) -> dict:
    """
    Send a WhatsApp message.

    With ``content_sid`` the approved Content Template is used (required for
    interactive buttons and outside the 24h session window); otherwise a
    free-form ``body`` is sent.
    """
    if not settings.twilio_whatsapp_number:
        raise ProviderSendError("WhatsApp sender number not configured", error_code="CONFIGURATION")

    kwargs: dict = {"from_": _whatsapp_address(settings.twilio_whatsapp_number)}
    if content_sid:
        kwargs["content_sid"] = content_sid
        if content_variables:
            kwargs["content_variables"] = json.dumps(content_variables, ensure_ascii=False)
    elif body:
        kwargs["body"] = body
    else:
        raise ProviderSendError("WhatsApp message needs a body or a content template", error_code="EMPTY_MESSAGE")

    return await _create_message("whatsapp", _whatsapp_address(to), **kwargs)


async def send_sms(to: str, body: str) -> dict:
    """Send an SMS through a messaging service, alpha sender ID, or phone number (first configured)."""
    kwargs: dict = {"body": body}
    if settings.twilio_messaging_service_sid:
        kwargs["messaging_service_sid"] = settings.twilio_messaging_service_sid
    elif settings.sms_alpha_sender_id:
        kwargs["from_"] = settings.sms_alpha_sender_id[:11]
    elif settings.twilio_sms_number:
        kwargs["from_"] = settings.twilio_sms_number
    else:
        raise ProviderSendError("SMS sender not configured", error_code="CONFIGURATION")

    return await _create_message("sms", to, **kwargs)
