"""Pydantic schemas for tenant automation settings and API request/response contracts."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class StepLog(BaseModel):
    """One execution step recorded by a pipeline stage."""

    module: str
    prompt: dict[str, Any]
    response: dict[str, Any]


# ---------------------------------------------------------------------------
# Tenant automation settings
# ---------------------------------------------------------------------------


class AutomationSettings(BaseModel):
    """Per-tenant automation configuration with an explicit default for every field.

    Persisted as a JSON blob written by the tenant-facing settings screen (camelCase
    keys); snake_case keys are accepted too. The engine only ever reads it.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    # AI behaviour
    auto_respond_emails: bool = True
    ai_auto_approve: bool = False
    auto_categorize_leads: bool = True
    default_classification: str = "lead"
    auto_assign_priority: bool = True

    # Follow-ups
    auto_follow_up: bool = False
    follow_up_delay_days: int = Field(default=3, ge=0, le=365)

    # Working hours
    respect_working_hours: bool = True
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    working_days: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri")
    timezone: str = "America/New_York"

    # Email filters
    spam_filter: bool = True
    auto_archive_marketing: bool = False
    require_approval_for_new: bool = True

    # Quotes
    auto_generate_quotes: bool = True
    require_quote_approval: bool = True
    min_quote_amount: float = Field(default=100.0, ge=0)
    max_quote_amount: float = Field(default=10000.0, ge=0)

    # Calendar & booking
    send_booking_reminders: bool = True
    reminder_hours_before: int = Field(default=24, ge=1, le=24 * 30)
    booking_duration_minutes: int = Field(default=60, ge=15, le=8 * 60)

    @field_validator("working_hours_start", "working_hours_end")
    @classmethod
    def _validate_hhmm(cls, value: str) -> str:
        text = value.strip()
        match = _HHMM_RE.match(text)
        if not match:
            raise ValueError(f"Expected HH:MM time, got {value!r}")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("working_days", mode="before")
    @classmethod
    def _validate_days(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            raise ValueError("working_days must be a list of weekday keys")
        days: list[str] = []
        for item in value:
            key = str(item).strip().lower()[:3]
            if key not in WEEKDAY_KEYS:
                raise ValueError(f"Unknown weekday {item!r}")
            if key not in days:
                days.append(key)
        return tuple(days)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {value!r}") from exc
        return value

    @field_validator("default_classification")
    @classmethod
    def _validate_default_classification(cls, value: str) -> str:
        label = value.strip().lower()
        if not label:
            raise ValueError("default_classification must not be empty")
        return label


def parse_automation_settings(raw: str | dict[str, Any] | None) -> AutomationSettings:
    """Parse persisted settings, dropping invalid fields so their defaults apply.

    Never raises: unreadable JSON yields the all-defaults settings object.
    """

    if raw is None or raw == "":
        return AutomationSettings()
    data: Any = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning("automation settings are not valid JSON, using defaults: %s", exc)
            return AutomationSettings()
    if not isinstance(data, dict):
        logger.warning("automation settings must be a JSON object, got %s", type(data).__name__)
        return AutomationSettings()

    data = dict(data)
    # Each pass removes at least one offending key, so this terminates.
    for _ in range(len(data) + 1):
        try:
            return AutomationSettings.model_validate(data)
        except ValidationError as exc:
            bad_keys = {err["loc"][0] for err in exc.errors() if err.get("loc")}
            bad_keys &= set(data)
            if not bad_keys:
                break
            logger.warning("automation settings fields ignored (invalid): %s", sorted(bad_keys))
            for key in bad_keys:
                data.pop(key, None)
    return AutomationSettings()


# ---------------------------------------------------------------------------
# API contracts
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response schema for `GET /api/health`."""

    status: Literal["ok"]
    engine_enabled: bool
    schedulers: dict[str, bool]


class DraftResponse(BaseModel):
    """Serialized outbound draft awaiting a human decision."""

    id: str
    lead_id: str
    lead_name: str | None = None
    to_email: str | None
    subject: str | None
    content: str
    is_ai_generated: bool
    ai_approval_needed: bool
    ai_confidence: float | None
    classification: str | None
    in_reply_to_id: str | None
    created_at: str


class DraftListResponse(BaseModel):
    """Response schema for `GET /api/tenants/{tenant_id}/drafts`."""

    tenant_id: str
    drafts: list[DraftResponse]


class DraftEditRequest(BaseModel):
    """Input schema for `PATCH /api/drafts/{message_id}`."""

    subject: str | None = Field(default=None, min_length=1)
    content: str | None = Field(default=None, min_length=1)


class DraftActionResponse(BaseModel):
    """Outcome of approve/reject/edit on a draft."""

    status: Literal["sent", "rejected", "edited", "error"]
    message_id: str
    error: str | None = None
    provider_message_id: str | None = None


class StageResetRequest(BaseModel):
    """Input schema for the manual lead stage reset."""

    stage: Literal["new", "contacted", "quoted", "scheduled", "won", "lost", "completed"]


class StageResetResponse(BaseModel):
    lead_id: str
    stage: str


class EngineRunResponse(BaseModel):
    """Summary of a manually triggered engine cycle."""

    job: str
    tenants_processed: int
    tenants_failed: int
    summary: dict[str, int]
