# rsvp_dispatch/transport/channel_router.py
"""
Channel router: the ChannelSender implementation used in production.

Renders the message body (or Content Template variables), picks the provider
for the channel and converts provider errors into failed DispatchResults with
the raw provider response kept for diagnostics. Nothing is logged to the
attempt table here; the dispatcher records every outcome.
"""
from __future__ import annotations

from typing import Optional

from rsvp_dispatch.config import settings
from rsvp_dispatch.core.domain import (
    AttemptStatus,
    Channel,
    DispatchResult,
    EventContext,
    MessageType,
    Recipient,
    Tenant,
)
from rsvp_dispatch.core.errors import ProviderSendError
from rsvp_dispatch.core.phone import infer_channel
from rsvp_dispatch.core.ports import Directory
from rsvp_dispatch.infra.logging_config import get_logger
from rsvp_dispatch.transport import twilio_sender, upsend_sender, vapi_sender

logger = get_logger(__name__)


DEFAULT_BODIES: dict[str, str] = {
    "INVITE": (
        "Hello {{guestName}}!\n\n"
        "You are invited to {{eventTitle}}!\n\n"
        "Please confirm your attendance using the link below:\n"
        "{{rsvpLink}}\n\n"
        "We look forward to seeing you!"
    ),
    "REMINDER": (
        "Hello {{guestName}}!\n\n"
        "This is a reminder to confirm your attendance at {{eventTitle}}.\n\n"
        "Please RSVP here:\n"
        "{{rsvpLink}}\n\n"
        "Thank you!"
    ),
    "EVENT_DAY": (
        "Hello {{guestName}}!\n\n"
        "Today is the day: {{eventTitle}} at {{eventTime}}.\n"
        "Venue: {{eventVenue}}\n"
        "Your table: {{tableName}}\n\n"
        "See you soon!"
    ),
}


def rsvp_link(recipient: Recipient) -> str:
    base = settings.public_app_url.rstrip("/")
    return f"{base}/rsvp/{recipient.slug}" if recipient.slug else base


def template_context(recipient: Recipient, event: EventContext) -> dict[str, str]:
    starts_at = event.starts_at
    return {
        "guestName": recipient.name,
        "eventTitle": event.title,
        "rsvpLink": rsvp_link(recipient),
        "eventDate": starts_at.strftime("%d/%m/%Y") if starts_at else "",
        "eventTime": starts_at.strftime("%H:%M") if starts_at else "",
        "eventVenue": event.venue or event.address or "",
        "eventLocation": event.address or event.venue or "",
        "tableName": recipient.table_name or "-",
    }


def render_message(template: str, context: dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown placeholders are left as is."""
    for key, value in context.items():
        template = template.replace("{{" + key + "}}", value)
    return template


def _failed(channel: Channel, exc: ProviderSendError) -> DispatchResult:
    return DispatchResult(
        success=False,
        channel=channel,
        status=AttemptStatus.FAILED,
        provider_response={
            **exc.response,
            "http_status": exc.status,
            "retryable": exc.retryable,
        },
        error=str(exc),
        error_code=exc.error_code or "PROVIDER_ERROR",
    )


class ChannelRouter:
    """
    Usage:
        router = ChannelRouter(directory)
        result = await router.send_invite(recipient, event, channel=Channel.SMS)

    ``directory`` is used only to resolve the tenant's assigned originating
    number when placing calls.
    """

    def __init__(self, directory: Optional[Directory] = None):
        self._directory = directory

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configuration_error(
        self, message_type: MessageType, channel: Optional[Channel], tenant: Tenant,
    ) -> Optional[str]:
        if message_type.is_call:
            if not settings.voice_enabled:
                return "Voice calls are not configured"
            if not (tenant.voice_phone_number_id or settings.vapi_default_phone_number_id):
                return "No originating phone number assigned for voice calls"
            return None

        if message_type.is_interactive or channel is Channel.WHATSAPP:
            if not settings.whatsapp_enabled:
                return "WhatsApp channel is not configured"
            return None

        if channel is Channel.SMS:
            if not settings.sms_enabled:
                return f"SMS channel is not configured (provider: {settings.sms_provider})"
            return None

        if not (settings.whatsapp_enabled or settings.sms_enabled):
            return "No message channel is configured"
        return None

    # ------------------------------------------------------------------
    # ChannelSender operations
    # ------------------------------------------------------------------

    async def send_invite(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult:
        return await self._send_text(MessageType.INVITE, "INVITE", recipient, event, channel, template, **options)

    async def send_reminder(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult:
        event_day = options.pop("event_day", False)
        body_key = "EVENT_DAY" if event_day else "REMINDER"
        message_type = MessageType.EVENT_DAY if event_day else MessageType.REMINDER
        return await self._send_text(message_type, body_key, recipient, event, channel, template, **options)

    async def send_interactive_invite(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult:
        return await self._send_interactive(recipient, event, options.get("content_sid"))

    async def send_interactive_reminder(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult:
        return await self._send_interactive(recipient, event, options.get("content_sid"))

    async def place_call(
        self, recipient: Recipient, event: EventContext,
        channel: Optional[Channel] = None, template: Optional[str] = None,
        **options,
    ) -> DispatchResult:
        phone_number_id = options.get("phone_number_id") or await self._tenant_phone_number_id(event.tenant_id)
        if not phone_number_id:
            return DispatchResult(
                success=False,
                channel=Channel.VOICE,
                status=AttemptStatus.FAILED,
                error="No originating phone number assigned for voice calls",
                error_code="CONFIGURATION",
            )

        context = template_context(recipient, event)
        details = f"{event.title}, {context['eventDate']} {context['eventTime']}, {context['eventVenue']}".strip(", ")
        try:
            call = await vapi_sender.create_call(
                recipient.phone,
                phone_number_id=phone_number_id,
                customer_name=recipient.name,
                variables={"guest_name": recipient.name, "wedding_details": details},
                metadata={"eventId": event.id, "guestId": recipient.id},
            )
        except ProviderSendError as exc:
            return _failed(Channel.VOICE, exc)

        return DispatchResult(
            success=True,
            channel=Channel.VOICE,
            status=AttemptStatus.CALLING,
            provider_response=call,
            provider_id=call.get("id"),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _tenant_phone_number_id(self, tenant_id: str) -> Optional[str]:
        if self._directory is not None:
            tenant = await self._directory.get_tenant(tenant_id)
            if tenant is not None and tenant.voice_phone_number_id:
                return tenant.voice_phone_number_id
        return settings.vapi_default_phone_number_id

    async def _send_text(
        self,
        message_type: MessageType,
        body_key: str,
        recipient: Recipient,
        event: EventContext,
        channel: Optional[Channel],
        template: Optional[str],
        content_sid: Optional[str] = None,
        **_ignored,
    ) -> DispatchResult:
        channel = channel or infer_channel(recipient.phone, message_type)
        context = template_context(recipient, event)
        body = render_message(template or DEFAULT_BODIES[body_key], context)

        if channel is Channel.WHATSAPP:
            if content_sid:
                return await self._whatsapp(recipient, content_sid=content_sid, content_variables=_content_variables(context))
            return await self._whatsapp(recipient, body=body)

        if channel is Channel.SMS:
            return await self._sms(recipient, body)

        return DispatchResult(
            success=False,
            channel=channel,
            status=AttemptStatus.FAILED,
            error=f"Channel {channel.value} cannot carry {message_type.value} messages",
            error_code="VALIDATION",
        )

    async def _send_interactive(
        self, recipient: Recipient, event: EventContext, content_sid: Optional[str],
    ) -> DispatchResult:
        content_sid = content_sid or settings.twilio_whatsapp_content_sid
        if not content_sid:
            return DispatchResult(
                success=False,
                channel=Channel.WHATSAPP,
                status=AttemptStatus.FAILED,
                error="No WhatsApp content template configured for interactive messages",
                error_code="CONFIGURATION",
            )
        context = template_context(recipient, event)
        return await self._whatsapp(recipient, content_sid=content_sid, content_variables=_content_variables(context))

    async def _whatsapp(self, recipient: Recipient, **kwargs) -> DispatchResult:
        try:
            message = await twilio_sender.send_whatsapp(recipient.phone, **kwargs)
        except ProviderSendError as exc:
            return _failed(Channel.WHATSAPP, exc)
        return DispatchResult(
            success=True,
            channel=Channel.WHATSAPP,
            status=AttemptStatus.SENT,
            provider_response=message,
            provider_id=message.get("sid"),
        )

    async def _sms(self, recipient: Recipient, body: str) -> DispatchResult:
        try:
            if settings.sms_provider == "upsend":
                response = await upsend_sender.send_sms(recipient.phone, body)
                provider_id = response.get("RequestId")
            else:
                response = await twilio_sender.send_sms(recipient.phone, body)
                provider_id = response.get("sid")
        except ProviderSendError as exc:
            return _failed(Channel.SMS, exc)
        return DispatchResult(
            success=True,
            channel=Channel.SMS,
            status=AttemptStatus.SENT,
            provider_response=response,
            provider_id=provider_id,
        )


def _content_variables(context: dict[str, str]) -> dict[str, str]:
    """Positional variables of the approved Content Templates: {{1}} name, {{2}} title, {{3}} link."""
    return {"1": context["guestName"], "2": context["eventTitle"], "3": context["rsvpLink"]}
