# rsvp_dispatch/infra/pg_quota_ledger_async.py
"""
Async PostgreSQL quota ledger (asyncpg).

A reservation runs in a SERIALIZABLE transaction that locks the tenant's
usage_counters row FOR UPDATE. Usage is derived from dispatch_attempts
(success statuses plus PENDING attempts holding quota) so the stored
counters can drift without letting a tenant exceed the limit.
"""
from __future__ import annotations

from datetime import datetime
from typing import Sequence

from rsvp_dispatch.config import settings
from rsvp_dispatch.core.domain import (
    Channel,
    ChannelUsage,
    Plan,
    ReserveResult,
    SUCCESS_STATUSES,
)
from rsvp_dispatch.core.plans import (
    UNLIMITED,
    billing_period_start,
    evaluate_reservation,
    plan_limit,
    remaining_quota,
)
from rsvp_dispatch.infra.db_resilience_async import (
    is_serialization_conflict,
    retry_on_transient_error,
    safe_db_conn,
)
from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# (sent column, bonus column) per channel
CHANNEL_COLUMNS: dict[Channel, tuple[str, str]] = {
    Channel.WHATSAPP: ("whatsapp_sent", "whatsapp_bonus"),
    Channel.SMS: ("sms_sent", "sms_bonus"),
    Channel.VOICE: ("calls_made", "calls_bonus"),
}

_SUCCESS_VALUES = sorted(s.value for s in SUCCESS_STATUSES)


class AsyncPostgresQuotaLedger:
    """Per-tenant, per-channel quota enforcement."""

    def __init__(self, max_retries: int | None = None):
        self._max_retries = settings.quota_tx_max_retries if max_retries is None else max_retries

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def reserve(
        self,
        tenant_id: str,
        channel: Channel,
        count: int,
        attempt_ids: Sequence[str] = (),
    ) -> ReserveResult:
        run = retry_on_transient_error(
            max_retries=self._max_retries,
            initial_delay=0.05,
            max_delay=1.0,
            should_retry=is_serialization_conflict,
        )(self._reserve_once)
        result = await run(tenant_id, channel, count, list(attempt_ids))

        if not result.allowed:
            logger.info(
                f"Quota denied: channel={channel.value}, requested={count}, remaining={result.remaining}",
                extra={"tenant_id": tenant_id},
            )
        return result

    async def _reserve_once(
        self, tenant_id: str, channel: Channel, count: int, attempt_ids: list[str],
    ) -> ReserveResult:
        async with safe_db_conn(autocommit=False, isolation="serializable") as conn:
            tenant = await conn.fetchrow(
                "SELECT plan, voice_addon_enabled, subscription_period_end FROM tenants WHERE id = $1",
                tenant_id,
            )
            if tenant is None:
                return ReserveResult(allowed=False, remaining=0, reason="Tenant not found")

            counters = await self._lock_counters(conn, tenant_id)
            period_start = await self._current_period(conn, tenant_id, tenant, counters)

            limit = plan_limit(Plan(tenant["plan"]), channel, tenant["voice_addon_enabled"])
            bonus = counters[CHANNEL_COLUMNS[channel][1]]

            if limit is UNLIMITED:
                used = 0
            else:
                used = await self._count_used(conn, tenant_id, channel, period_start, exclude=attempt_ids)

            result = evaluate_reservation(channel, limit, bonus, used, count)

            if result.allowed and attempt_ids:
                await conn.execute(
                    """
                    UPDATE dispatch_attempts
                    SET quota_held = true, updated_at = now()
                    WHERE id = ANY($1::text[]) AND status = 'PENDING'
                    """,
                    attempt_ids,
                )
            return result

    async def _lock_counters(self, conn, tenant_id: str):
        await conn.execute(
            "INSERT INTO usage_counters (tenant_id) VALUES ($1) ON CONFLICT (tenant_id) DO NOTHING",
            tenant_id,
        )
        return await conn.fetchrow(
            "SELECT * FROM usage_counters WHERE tenant_id = $1 FOR UPDATE",
            tenant_id,
        )

    async def _current_period(self, conn, tenant_id: str, tenant, counters) -> datetime:
        """Compute the billing window; reset the stored counters when a new one started."""
        period_start = billing_period_start(tenant["subscription_period_end"], counters["period_start"])
        stored = counters["period_start"]

        if stored is None or stored < period_start:
            await conn.execute(
                """
                UPDATE usage_counters
                SET whatsapp_sent = 0, sms_sent = 0, calls_made = 0,
                    period_start = $2, updated_at = now()
                WHERE tenant_id = $1
                """,
                tenant_id,
                period_start,
            )
            logger.info(f"Usage counters rolled to period starting {period_start.isoformat()}",
                        extra={"tenant_id": tenant_id})
        return period_start

    @staticmethod
    async def _count_used(
        conn, tenant_id: str, channel: Channel, period_start: datetime, exclude: Sequence[str] = (),
    ) -> int:
        return await conn.fetchval(
            """
            SELECT count(*)::int FROM dispatch_attempts
            WHERE tenant_id = $1
              AND channel = $2
              AND created_at >= $3
              AND (status = ANY($4::text[]) OR (status = 'PENDING' AND quota_held))
              AND NOT (id = ANY($5::text[]))
            """,
            tenant_id,
            channel.value,
            period_start,
            _SUCCESS_VALUES,
            list(exclude),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def check(self, tenant_id: str, channel: Channel) -> ReserveResult:
        """Coarse, non-locking read: allowed when at least one unit is left."""
        usage = {u.channel: u for u in await self.usage(tenant_id)}
        if not usage:
            return ReserveResult(allowed=False, remaining=0, reason="Tenant not found")

        item = usage[channel]
        if item.remaining is UNLIMITED:
            return ReserveResult(allowed=True, remaining=UNLIMITED)
        if item.remaining <= 0:
            return ReserveResult(
                allowed=False,
                remaining=0,
                reason=f"{channel.value} limit reached ({item.used}/{item.limit + item.bonus})",
            )
        return ReserveResult(allowed=True, remaining=item.remaining)

    async def usage(self, tenant_id: str) -> list[ChannelUsage]:
        async with safe_db_conn() as conn:
            tenant = await conn.fetchrow(
                "SELECT plan, voice_addon_enabled, subscription_period_end FROM tenants WHERE id = $1",
                tenant_id,
            )
            if tenant is None:
                return []

            counters = await conn.fetchrow("SELECT * FROM usage_counters WHERE tenant_id = $1", tenant_id)
            stored_start = counters["period_start"] if counters else None
            period_start = billing_period_start(tenant["subscription_period_end"], stored_start)

            result = []
            for channel, (_, bonus_col) in CHANNEL_COLUMNS.items():
                limit = plan_limit(Plan(tenant["plan"]), channel, tenant["voice_addon_enabled"])
                bonus = counters[bonus_col] if counters else 0
                used = await self._count_used(conn, tenant_id, channel, period_start)
                result.append(ChannelUsage(
                    channel=channel,
                    used=used,
                    limit=limit,
                    bonus=bonus,
                    remaining=remaining_quota(limit, bonus, used),
                ))
            return result

    # ------------------------------------------------------------------
    # Stored counters
    # ------------------------------------------------------------------

    async def increment(self, tenant_id: str, counts: dict[Channel, int]) -> None:
        """Bump the stored mirror; negative counts undo a corrected success."""
        deltas = {channel: n for channel, n in counts.items() if n}
        if not deltas:
            return

        whatsapp = deltas.get(Channel.WHATSAPP, 0)
        sms = deltas.get(Channel.SMS, 0)
        calls = deltas.get(Channel.VOICE, 0)

        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO usage_counters (tenant_id, whatsapp_sent, sms_sent, calls_made)
                VALUES ($1, greatest($2, 0), greatest($3, 0), greatest($4, 0))
                ON CONFLICT (tenant_id) DO UPDATE SET
                  whatsapp_sent = greatest(usage_counters.whatsapp_sent + $2, 0),
                  sms_sent = greatest(usage_counters.sms_sent + $3, 0),
                  calls_made = greatest(usage_counters.calls_made + $4, 0),
                  updated_at = now()
                """,
                tenant_id,
                whatsapp,
                sms,
                calls,
            )


_quota_ledger: AsyncPostgresQuotaLedger | None = None


def get_quota_ledger() -> AsyncPostgresQuotaLedger:
    """Get the global quota ledger instance."""
    global _quota_ledger
    if _quota_ledger is None:
        _quota_ledger = AsyncPostgresQuotaLedger()
    return _quota_ledger
