"""Send-or-hold decision for generated replies, working hours and the monthly AI quota."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, time
from zoneinfo import ZoneInfo

from inbox_engine.schemas import WEEKDAY_KEYS, AutomationSettings
from inbox_engine.services.engine_store import EngineStore, TenantRecord

logger = logging.getLogger(__name__)

LIMIT_REACHED_CLASSIFICATION = "limit_reached"


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(hour=int(hours), minute=int(minutes))


def is_within_working_hours(settings: AutomationSettings, now: datetime) -> bool:
    """Day whitelist AND time range in the tenant timezone; end <= start wraps past midnight."""

    if not settings.respect_working_hours:
        return True
    local = now.astimezone(ZoneInfo(settings.timezone)) if now.tzinfo else now
    if WEEKDAY_KEYS[local.weekday()] not in settings.working_days:
        return False
    start = _parse_hhmm(settings.working_hours_start)
    end = _parse_hhmm(settings.working_hours_end)
    current = local.time().replace(second=0, microsecond=0)
    if end > start:
        return start <= current < end
    # overnight shift, e.g. 22:00-06:00
    return current >= start or current < end


@dataclass(frozen=True)
class GateDecision:
    auto_send: bool
    reason: str


def decide(settings: AutomationSettings, *, now: datetime, is_new_contact: bool) -> GateDecision:
    """Auto-send only with auto-approve on, inside working hours, and not a gated new contact."""

    if not settings.ai_auto_approve:
        return GateDecision(False, "auto_approve_disabled")
    if not is_within_working_hours(settings, now):
        return GateDecision(False, "outside_working_hours")
    if is_new_contact and settings.require_approval_for_new:
        return GateDecision(False, "new_contact_requires_approval")
    return GateDecision(True, "auto_approved")


# ---------------------------------------------------------------------------
# Monthly AI usage quota
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    used: int
    limit: int | None


def limit_notice_text(used: int, limit: int | None) -> str:
    return (
        f"[SYSTEM] AI conversation limit reached ({used}/{limit}). "
        "Please upgrade your plan to continue using AI responses."
    )


def needs_monthly_reset(last_reset_at: datetime | None, now: datetime) -> bool:
    if last_reset_at is None:
        return False
    last = last_reset_at.astimezone(UTC)
    current = now.astimezone(UTC)
    return (last.year, last.month) != (current.year, current.month)


class UsageQuota:
    """Per-tenant monthly counter of AI generations."""

    def __init__(self, *, store: EngineStore) -> None:
        self._store = store

    def check(self, tenant: TenantRecord, now: datetime) -> QuotaStatus:
        """Reset the counter on a new calendar month, then compare against the plan limit."""

        used = tenant.ai_used
        if tenant.ai_last_reset_at is None:
            # first observation: start the period without discarding existing usage
            self._store.start_ai_usage_period(tenant.id, started_at=now)
            tenant.ai_last_reset_at = now
        elif needs_monthly_reset(tenant.ai_last_reset_at, now):
            logger.info("monthly AI usage reset for tenant %s (was %s)", tenant.id, used)
            self._store.reset_ai_usage(tenant.id, reset_at=now)
            tenant.ai_used = used = 0
            tenant.ai_last_reset_at = now
        if tenant.ai_limit is None:
            return QuotaStatus(True, used, None)
        return QuotaStatus(used < tenant.ai_limit, used, tenant.ai_limit)

    def record_generation(self, tenant: TenantRecord) -> None:
        self._store.increment_ai_usage(tenant.id)
        tenant.ai_used += 1
