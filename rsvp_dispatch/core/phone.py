# rsvp_dispatch/core/phone.py
"""
Phone normalization and channel inference.

Both functions are pure: no I/O, no settings lookups. Callers pass the
default country and digit bounds explicitly.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from rsvp_dispatch.core.domain import Channel, MessageType
from rsvp_dispatch.core.errors import PhoneNormalizationError

_NON_DIAL_CHARS = re.compile(r"[^\d+]")


@dataclass(frozen=True)
class CountryRule:
    calling_code: str
    trunk_prefix: str       # "" when local numbers carry no trunk digit
    national_length: int    # digits in the local form, trunk prefix included
    short_national: str = ""  # leading digits of local numbers still valid with the trunk prefix dropped


COUNTRY_RULES: dict[str, CountryRule] = {
    "IL": CountryRule(calling_code="972", trunk_prefix="0", national_length=10, short_national="5"),
    "UK": CountryRule(calling_code="44", trunk_prefix="0", national_length=11),
    "US": CountryRule(calling_code="1", trunk_prefix="", national_length=10),
}


def normalize_phone(
    raw: Optional[str],
    default_country: str = "IL",
    min_digits: int = 8,
    max_digits: int = 15,
) -> str:
    """
    Normalize a phone number to E.164 (``+<digits>``).

    Rules, first match wins:
        1. ``+`` prefix: already international, keep digits.
        2. ``00`` prefix: international dialing prefix, replaced by ``+``.
        3. Local form of ``default_country`` (trunk prefix + national length):
           trunk prefix replaced by the country calling code.
        4. Local form with the trunk prefix dropped (IL mobiles as "584003578",
           common in spreadsheet exports): calling code prepended.
        5. Starts with the default country's calling code: prefixed with ``+``.
        6. Anything else between 11 and ``max_digits`` digits is assumed to be
           international without the ``+``.

    Raises PhoneNormalizationError when the result is outside
    ``[min_digits, max_digits]`` or nothing matched.

    >>> normalize_phone("0584003578")
    '+972584003578'
    >>> normalize_phone("+1 (415) 555-1234")
    '+14155551234'
    """
    if not raw or not raw.strip():
        raise PhoneNormalizationError("Phone number is empty")

    rule = COUNTRY_RULES.get(default_country.upper())
    if rule is None:
        raise PhoneNormalizationError(f"Unsupported default country: {default_country}")

    cleaned = _NON_DIAL_CHARS.sub("", raw.strip())
    if "+" in cleaned[1:]:
        raise PhoneNormalizationError("Phone number has a misplaced '+'")

    digits: Optional[str] = None
    if cleaned.startswith("+"):
        digits = cleaned[1:]
    elif cleaned.startswith("00"):
        digits = cleaned[2:]
    elif _is_local_form(cleaned, rule):
        digits = rule.calling_code + cleaned[len(rule.trunk_prefix):]
    elif _is_short_national(cleaned, rule):
        digits = rule.calling_code + cleaned
    elif cleaned.startswith(rule.calling_code) and len(cleaned) > rule.national_length - len(rule.trunk_prefix):
        digits = cleaned
    elif 11 <= len(cleaned) <= max_digits and not cleaned.startswith("0"):
        digits = cleaned

    if not digits or not digits.isdigit():
        raise PhoneNormalizationError(f"Unrecognized phone number format ({len(cleaned)} chars)")

    if not (min_digits <= len(digits) <= max_digits):
        raise PhoneNormalizationError(
            f"Phone number has {len(digits)} digits, expected {min_digits}-{max_digits}"
        )

    return "+" + digits


def _is_local_form(cleaned: str, rule: CountryRule) -> bool:
    if len(cleaned) != rule.national_length:
        return False
    if rule.trunk_prefix:
        return cleaned.startswith(rule.trunk_prefix) and not cleaned.startswith(rule.trunk_prefix * 2)
    return True


def _is_short_national(cleaned: str, rule: CountryRule) -> bool:
    return (
        bool(rule.short_national and rule.trunk_prefix)
        and len(cleaned) == rule.national_length - len(rule.trunk_prefix)
        and cleaned.startswith(rule.short_national)
    )


def infer_channel(
    phone: Optional[str],
    message_type: MessageType = MessageType.INVITE,
    override: Optional[Channel] = None,
) -> Channel:
    """
    Pick the channel for one recipient.

    Precedence:
        1. Calls always go to the voice channel.
        2. Interactive messages (buttons/templates) exist only on WhatsApp.
        3. An explicit message-channel override.
        4. Shape of the stored number: full international form (``+`` prefix)
           means WhatsApp, anything else means SMS.
    """
    if message_type.is_call:
        return Channel.VOICE
    if message_type.is_interactive:
        return Channel.WHATSAPP
    if override is not None and override.is_message:
        return override
    if phone and phone.strip().startswith("+"):
        return Channel.WHATSAPP
    return Channel.SMS
