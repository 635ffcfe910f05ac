# rsvp_dispatch/core/plans.py
"""
Plan limits and billing-period boundaries.

A limit of ``UNLIMITED`` (None) is never used in arithmetic; every helper
checks for it first.
"""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

from rsvp_dispatch.core.domain import Channel, Plan, ReserveResult

UNLIMITED = None

VOICE_ADDON_CALL_LIMIT = 2000
DEFAULT_PERIOD_DAYS = 30

# Monthly limits per plan. Voice for BUSINESS is granted by the add-on.
PLAN_LIMITS: dict[Plan, dict[Channel, Optional[int]]] = {
    Plan.FREE: {Channel.WHATSAPP: 0, Channel.SMS: 0, Channel.VOICE: 0},
    Plan.BASIC: {Channel.WHATSAPP: 650, Channel.SMS: 0, Channel.VOICE: 0},
    Plan.ADVANCED: {Channel.WHATSAPP: 750, Channel.SMS: 30, Channel.VOICE: 50},
    Plan.PREMIUM: {Channel.WHATSAPP: 1000, Channel.SMS: 50, Channel.VOICE: 100},
    Plan.BUSINESS: {Channel.WHATSAPP: UNLIMITED, Channel.SMS: UNLIMITED, Channel.VOICE: 0},
}


def plan_limit(plan: Plan, channel: Channel, voice_addon: bool = False) -> Optional[int]:
    """Monthly limit for ``channel`` on ``plan``; None means unlimited."""
    if channel is Channel.VOICE and voice_addon:
        base = PLAN_LIMITS[plan][Channel.VOICE] or 0
        return max(base, VOICE_ADDON_CALL_LIMIT)
    return PLAN_LIMITS[plan][channel]


def total_allowed(limit: Optional[int], bonus: int) -> Optional[int]:
    if limit is UNLIMITED:
        return UNLIMITED
    return limit + max(bonus, 0)


def remaining_quota(limit: Optional[int], bonus: int, used: int) -> Optional[int]:
    """Units left this period, floored at 0; None when unlimited."""
    allowed = total_allowed(limit, bonus)
    if allowed is UNLIMITED:
        return UNLIMITED
    return max(allowed - used, 0)


def evaluate_reservation(
    channel: Channel, limit: Optional[int], bonus: int, used: int, count: int,
) -> ReserveResult:
    """
    Decide a reservation of ``count`` units given current usage.

    ``remaining`` in the result is what is left after the reservation when
    allowed, and what was left before it when denied.
    """
    remaining = remaining_quota(limit, bonus, used)
    if remaining is UNLIMITED:
        return ReserveResult(allowed=True, remaining=UNLIMITED)
    if count > remaining:
        return ReserveResult(
            allowed=False,
            remaining=remaining,
            reason=f"{channel.value} limit reached ({used}/{total_allowed(limit, bonus)})",
        )
    return ReserveResult(allowed=True, remaining=remaining - count)


def subtract_month(moment: datetime) -> datetime:
    """Same day/time one calendar month earlier, clamped to the month's last day."""
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


def billing_period_start(
    subscription_period_end: Optional[datetime],
    stored_period_start: Optional[datetime],
    now: Optional[datetime] = None,
) -> datetime:
    """
    Start of the tenant's current billing window.

    Precedence:
        1. Subscription renewal date minus one calendar month.
        2. Stored period start.
        3. 30 days before ``now``.
    """
    if subscription_period_end is not None:
        return subtract_month(_aware(subscription_period_end))
    if stored_period_start is not None:
        return _aware(stored_period_start)
    now = now or datetime.now(timezone.utc)
    return _aware(now) - timedelta(days=DEFAULT_PERIOD_DAYS)


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment
