# rsvp_dispatch/core/dispatch_table.py
"""
Message type -> ChannelSender operation.

Used by the dispatcher for every task and by the retry path, so a retried
attempt always goes through the same sender method as the original.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from rsvp_dispatch.core.domain import Channel, DispatchResult, EventContext, MessageType, Recipient
from rsvp_dispatch.core.ports import ChannelSender


@dataclass(frozen=True)
class SenderRoute:
    method: str
    options: dict[str, Any] = field(default_factory=dict)


DISPATCH_TABLE: dict[MessageType, SenderRoute] = {
    MessageType.INVITE: SenderRoute("send_invite"),
    MessageType.REMINDER: SenderRoute("send_reminder"),
    MessageType.EVENT_DAY: SenderRoute("send_reminder", {"event_day": True}),
    MessageType.INTERACTIVE_INVITE: SenderRoute("send_interactive_invite"),
    MessageType.INTERACTIVE_REMINDER: SenderRoute("send_interactive_reminder"),
    MessageType.CALL: SenderRoute("place_call"),
}

_missing = set(MessageType) - set(DISPATCH_TABLE)
if _missing:
    raise RuntimeError(f"DISPATCH_TABLE has no route for: {sorted(m.value for m in _missing)}")


async def dispatch_message(
    sender: ChannelSender,
    message_type: MessageType,
    recipient: Recipient,
    event: EventContext,
    channel: Optional[Channel] = None,
    template: Optional[str] = None,
    **options,
) -> DispatchResult:
    route = DISPATCH_TABLE[message_type]
    method = getattr(sender, route.method)
    return await method(recipient, event, channel=channel, template=template, **route.options, **options)
