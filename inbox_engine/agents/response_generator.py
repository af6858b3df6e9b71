"""Reply generation with booking/quote intent analysis and its lead consequences."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from inbox_engine.agents.lead_resolver import advance_stage, escalate_priority
from inbox_engine.schemas import AutomationSettings, StepLog
from inbox_engine.services.ai_service import AiProviderError, AiService, ConversationTurn, ReplyRequest
from inbox_engine.services.calendar_service import CalendarError, CalendarProvider, TimeSlot
from inbox_engine.services.engine_store import (
    DIRECTION_INBOUND,
    PRIORITY_HIGH,
    STAGE_CONTACTED,
    STAGE_QUOTED,
    STAGE_SCHEDULED,
    EngineStore,
    LeadRecord,
    TenantRecord,
    utc_now,
)
from inbox_engine.services.gmail_service import MailAccount
from inbox_engine.services.quotes import build_quote, has_quote_signal

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
MAX_CANDIDATE_SLOTS = 5

BOOKING_KEYWORDS = (
    "schedule",
    "book",
    "appointment",
    "visit",
    "meeting",
    "consultation",
    "come out",
    "stop by",
    "available",
)
QUOTE_KEYWORDS = (
    "quote",
    "estimate",
    "price",
    "pricing",
    "cost",
    "how much",
    "charge",
    "rate",
    "budget",
)
CONFIRMATION_PHRASES = (
    "works for me",
    "sounds good",
    "perfect",
    "that works",
    "works",
    "i'll take",
    "book that",
    "confirm",
    "yes",
    "okay",
    "ok",
)
WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
MONTH_NAMES = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)

_DATE_TOKEN_RE = re.compile(
    r"\b(?:" + "|".join(WEEKDAY_NAMES + MONTH_NAMES) + r")\b|\b\d{1,2}:\d{2}\b",
    re.IGNORECASE,
)
_DAY_TOKEN_RE = re.compile(r"\b(?:" + "|".join(WEEKDAY_NAMES + MONTH_NAMES) + r")\b", re.IGNORECASE)
_TIME_TOKEN_RE = re.compile(
    r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b|\b\d{1,2}:\d{2}\b|\bat\s+\d{1,2}\b",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Pure text analysis
# ---------------------------------------------------------------------------


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"(?<![a-z']){re.escape(phrase)}(?![a-z'])", text) is not None


def _starts_word(text: str, keyword: str) -> bool:
    return re.search(rf"(?<![a-z]){re.escape(keyword)}", text) is not None


def detect_booking_intent(text: str) -> bool:
    lowered = (text or "").lower()
    return any(_starts_word(lowered, k) for k in BOOKING_KEYWORDS)


def detect_quote_intent(text: str) -> bool:
    lowered = (text or "").lower()
    return any(_starts_word(lowered, k) for k in QUOTE_KEYWORDS)


def has_confirmation_phrase(text: str) -> bool:
    lowered = (text or "").lower()
    return any(_contains_phrase(lowered, p) for p in CONFIRMATION_PHRASES)


def _slot_date_matches(text: str, start: datetime) -> bool:
    weekday = f"{start:%A}".lower()
    month = f"{start:%B}".lower()
    if re.search(rf"\b{weekday}\b", text):
        return True
    return re.search(rf"\b{month}\s+{start.day}(?:st|nd|rd|th)?\b", text) is not None


def _slot_time_matches(text: str, start: datetime) -> bool:
    hour12 = start.hour % 12 or 12
    minutes = f"{start.minute:02d}"
    meridiem = "am" if start.hour < 12 else "pm"
    other = "pm" if meridiem == "am" else "am"
    minute_part = rf"(?::{minutes})?" if minutes == "00" else rf":{minutes}"
    patterns = (
        rf"\b{hour12}{minute_part}\s*{meridiem}\b",
        rf"(?<![\d:]){start.hour:02d}:{minutes}\b(?!\s*{other})",
        rf"(?<![\d:]){hour12}:{minutes}\b(?!\s*{other})",
        rf"\bat\s+{hour12}\b(?!:)(?!\s*{other}\b)",
    )
    return any(re.search(p, text) for p in patterns)


def find_confirmed_slot(text: str, slots: Sequence[TimeSlot]) -> TimeSlot | None:
    """Match a customer's confirmation against the offered slots; first match wins."""

    if not slots or not text:
        return None
    lowered = text.lower()
    if not has_confirmation_phrase(lowered) or not _DATE_TOKEN_RE.search(lowered):
        return None
    mentions_day = _DAY_TOKEN_RE.search(lowered) is not None
    mentions_time = _TIME_TOKEN_RE.search(lowered) is not None
    for slot in slots:
        date_ok = _slot_date_matches(lowered, slot.start) if mentions_day else None
        time_ok = _slot_time_matches(lowered, slot.start) if mentions_time else None
        if date_ok is False or time_ok is False:
            continue
        if date_ok or time_ok:
            return slot
    return None


def reply_subject(subject: str | None) -> str:
    text = (subject or "").strip()
    if text.lower().startswith("re:"):
        return text
    return f"Re: {text}" if text else "Re: your message"


def reply_confidence(lead: LeadRecord, text: str) -> float:
    """Heuristic score of how safe an unattended reply is."""

    confidence = 0.5
    for value in (lead.name, lead.phone, lead.address, lead.service_type):
        if value:
            confidence += 0.1
    if len(text or "") > 1000:
        confidence -= 0.1
    if (text or "").count("?") > 3:
        confidence -= 0.1
    return round(max(0.2, min(0.95, confidence)), 2)


def lead_snapshot(lead: LeadRecord) -> dict[str, str | None]:
    return {
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "address": lead.address,
        "service_type": lead.service_type,
        "stage": lead.stage,
        "priority": lead.priority,
    }


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


@dataclass
class GeneratedReply:
    subject: str
    body: str
    confidence: float
    booking_requested: bool = False
    quote_requested: bool = False
    confirmed_slot: TimeSlot | None = None
    candidate_slots: list[TimeSlot] = field(default_factory=list)
    steps: list[StepLog] = field(default_factory=list)


@dataclass
class ReplyOutcome:
    lead: LeadRecord
    quote_id: str | None = None
    event_id: str | None = None
    steps: list[StepLog] = field(default_factory=list)


class ResponseGenerator:
    """Builds the generation context, calls the AI provider and analyses the inbound text."""

    def __init__(
        self,
        *,
        store: EngineStore,
        ai_service: AiService,
        calendar: CalendarProvider | None,
        calendar_days_ahead: int = 14,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._ai = ai_service
        self._calendar = calendar
        self._days_ahead = calendar_days_ahead
        self._now = now_fn

    def _candidate_slots(
        self,
        *,
        tenant: TenantRecord,
        account: MailAccount,
        settings: AutomationSettings,
        text: str,
    ) -> list[TimeSlot]:
        if not detect_booking_intent(text):
            return []
        if not tenant.calendar_connected or self._calendar is None:
            logger.info("booking request for tenant %s but calendar is not connected", tenant.id)
            return []
        try:
            slots = self._calendar.list_available_slots(
                account,
                duration_minutes=settings.booking_duration_minutes,
                days_ahead=self._days_ahead,
                timezone=settings.timezone,
            )
        except CalendarError as exc:
            logger.warning("slot lookup failed for tenant %s: %s", tenant.id, exc)
            return []
        return list(slots)[:MAX_CANDIDATE_SLOTS]

    def generate(
        self,
        *,
        tenant: TenantRecord,
        account: MailAccount,
        lead: LeadRecord,
        inbound_subject: str,
        inbound_text: str,
        settings: AutomationSettings,
        follow_up: bool = False,
    ) -> GeneratedReply:
        """Raises AiProviderError when the model cannot produce a reply."""

        history = [
            ConversationTurn(
                role="user" if m.direction == DIRECTION_INBOUND else "assistant",
                content=m.content,
            )
            for m in self._store.recent_messages(lead.id, limit=HISTORY_LIMIT)
        ]
        slots = [] if follow_up else self._candidate_slots(
            tenant=tenant, account=account, settings=settings, text=inbound_text
        )
        request = ReplyRequest(
            business_name=tenant.business_name,
            business_type=tenant.business_type,
            lead=lead_snapshot(lead),
            inbound_subject=inbound_subject,
            inbound_text=inbound_text,
            history=history,
            available_slots=[s.formatted for s in slots],
            follow_up=follow_up,
        )
        body = self._ai.generate_reply(request)

        booking = detect_booking_intent(inbound_text)
        quote = False if follow_up else detect_quote_intent(inbound_text)
        confirmed = find_confirmed_slot(inbound_text, slots)
        reply = GeneratedReply(
            subject=reply_subject(inbound_subject),
            body=body,
            confidence=reply_confidence(lead, inbound_text),
            booking_requested=booking,
            quote_requested=quote,
            confirmed_slot=confirmed,
            candidate_slots=slots,
        )
        reply.steps.append(
            StepLog(
                module="response_generator.generate",
                prompt={
                    "lead_id": lead.id,
                    "history_size": len(history),
                    "candidate_slots": request.available_slots,
                    "follow_up": follow_up,
                    "model": self._ai.model,
                },
                response={
                    "subject": reply.subject,
                    "confidence": reply.confidence,
                    "booking_requested": booking,
                    "quote_requested": quote,
                    "confirmed_slot": confirmed.formatted if confirmed else None,
                },
            )
        )
        return reply

    def apply_consequences(
        self,
        *,
        tenant: TenantRecord,
        account: MailAccount,
        lead: LeadRecord,
        reply: GeneratedReply,
        inbound_text: str,
        settings: AutomationSettings,
    ) -> ReplyOutcome:
        """Book confirmed slots, generate quotes and move the lead forward."""

        now = self._now()
        outcome = ReplyOutcome(lead=lead)
        stage = advance_stage(lead.stage, STAGE_CONTACTED)
        changes: dict[str, object] = {}

        if reply.confirmed_slot is not None and self._calendar is not None:
            slot = reply.confirmed_slot
            try:
                outcome.event_id = self._calendar.create_event(
                    account,
                    summary=f"Site Visit - {lead.name or lead.email}",
                    description=(
                        f"Site visit for {lead.service_type or 'service'}\n\n"
                        f"Customer: {lead.name or 'N/A'}\n"
                        f"Email: {lead.email}\n"
                        f"Phone: {lead.phone or 'N/A'}\n"
                        f"Address: {lead.address or 'N/A'}"
                    ),
                    start=slot.start,
                    end=slot.end,
                    timezone=settings.timezone,
                    attendee_email=lead.email,
                )
            except CalendarError as exc:
                logger.warning("calendar event creation failed for lead %s: %s", lead.id, exc)
            else:
                stage = advance_stage(stage, STAGE_SCHEDULED)
                changes["appointment_date"] = slot.start
                changes["appointment_notes"] = "Site visit scheduled via AI"

        if reply.quote_requested:
            changes["priority"] = escalate_priority(lead.priority, PRIORITY_HIGH)
            changes["intent"] = "quote_requested"
            if settings.auto_generate_quotes and has_quote_signal(inbound_text, lead):
                outcome.quote_id = self._generate_quote(
                    tenant=tenant, lead=lead, inbound_text=inbound_text, settings=settings, now=now
                )
            if outcome.quote_id:
                stage = advance_stage(stage, STAGE_QUOTED)
        elif reply.booking_requested:
            changes["intent"] = "booking_requested"

        if stage != lead.stage:
            changes["stage"] = stage
        changes = {k: v for k, v in changes.items() if getattr(lead, k) != v}
        if changes:
            changes["updated_at"] = now
            outcome.lead = self._store.update_lead(lead.id, **changes)

        outcome.steps.append(
            StepLog(
                module="response_generator.consequences",
                prompt={"lead_id": lead.id, "stage_before": lead.stage},
                response={
                    "stage": outcome.lead.stage,
                    "priority": outcome.lead.priority,
                    "quote_id": outcome.quote_id,
                    "event_id": outcome.event_id,
                },
            )
        )
        return outcome

    def _generate_quote(
        self,
        *,
        tenant: TenantRecord,
        lead: LeadRecord,
        inbound_text: str,
        settings: AutomationSettings,
        now: datetime,
    ) -> str | None:
        try:
            draft = self._ai.generate_quote(
                business_type=tenant.business_type,
                service_type=lead.service_type,
                address=lead.address,
                request_text=inbound_text,
            )
        except AiProviderError as exc:
            logger.warning("quote generation failed for lead %s, leaving for manual quoting: %s", lead.id, exc)
            return None
        quote = build_quote(draft, tenant_id=tenant.id, lead_id=lead.id, settings=settings, now=now)
        self._store.insert_quote(quote)
        logger.info("generated quote %s (%s, total=%.2f) for lead %s", quote.quote_number, quote.status, quote.total, lead.id)
        return quote.id
