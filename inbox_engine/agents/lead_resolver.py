"""Lead resolution: find-or-create by (tenant, email), field merge, classification, priority."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from inbox_engine.schemas import AutomationSettings, StepLog
from inbox_engine.services.ai_service import AiOutputError, AiService, Classification, ExtractedFields
from inbox_engine.services.engine_store import (
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    STAGE_COMPLETED,
    STAGE_CONTACTED,
    STAGE_LOST,
    STAGE_NEW,
    STAGE_QUOTED,
    STAGE_SCHEDULED,
    STAGE_WON,
    EngineStore,
    LeadRecord,
    TenantRecord,
    new_id,
    utc_now,
)
from inbox_engine.services.gmail_service import InboundEmail

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_CHARS = 500

URGENCY_KEYWORDS = (
    "urgent",
    "emergency",
    "asap",
    "as soon as possible",
    "immediately",
    "right away",
    "leaking",
    "flooding",
    "burst pipe",
    "no heat",
    "no power",
)
HIGH_VALUE_KEYWORDS = (
    "commercial",
    "whole house",
    "entire house",
    "full renovation",
    "remodel",
    "new construction",
    "multiple properties",
    "large project",
    "annual contract",
    "ongoing contract",
)
QUOTE_LIKE_LABELS = frozenset({"quote", "quote_requested", "estimate"})
LOW_PRIORITY_LABELS = frozenset({"general", "spam"})

PRIORITY_RANK = {PRIORITY_LOW: 0, PRIORITY_MEDIUM: 1, PRIORITY_HIGH: 2}

STAGE_EDGES: dict[str, frozenset[str]] = {
    STAGE_NEW: frozenset({STAGE_CONTACTED}),
    STAGE_CONTACTED: frozenset({STAGE_QUOTED, STAGE_SCHEDULED}),
    STAGE_QUOTED: frozenset({STAGE_WON, STAGE_LOST, STAGE_COMPLETED}),
    STAGE_SCHEDULED: frozenset({STAGE_WON, STAGE_LOST, STAGE_COMPLETED}),
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def assign_priority(text: str, classification: str | None, intent: str | None = None) -> str:
    """Keyword heuristic; first matching rule wins."""

    lowered = (text or "").lower()
    if any(k in lowered for k in URGENCY_KEYWORDS):
        return PRIORITY_HIGH
    if any(k in lowered for k in HIGH_VALUE_KEYWORDS):
        return PRIORITY_HIGH
    if classification in QUOTE_LIKE_LABELS or intent in QUOTE_LIKE_LABELS:
        return PRIORITY_HIGH
    if classification in LOW_PRIORITY_LABELS:
        return PRIORITY_LOW
    return PRIORITY_MEDIUM


def escalate_priority(current: str | None, proposed: str) -> str:
    """Return the higher of the two; automated updates never lower priority."""

    if current not in PRIORITY_RANK:
        return proposed
    return proposed if PRIORITY_RANK[proposed] > PRIORITY_RANK[current] else current


def can_advance(current: str, target: str) -> bool:
    """True when `target` is reachable from `current` along forward edges."""

    if current == target:
        return False
    seen = {current}
    queue = deque([current])
    while queue:
        stage = queue.popleft()
        for nxt in STAGE_EDGES.get(stage, ()):
            if nxt == target:
                return True
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return False


def advance_stage(current: str, target: str) -> str:
    """Move forward when allowed, otherwise keep the current stage."""

    return target if can_advance(current, target) else current


def merge_fields(lead: LeadRecord, extracted: ExtractedFields) -> dict[str, str]:
    """Non-empty extracted values win; missing ones keep what the lead already has."""

    changes: dict[str, str] = {}
    for name in ("name", "phone", "address", "service_type"):
        value = getattr(extracted, name)
        if value and value != getattr(lead, name):
            changes[name] = value
    return changes


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass
class LeadResolution:
    lead: LeadRecord
    is_new: bool
    classification: str
    extracted: ExtractedFields
    intent: str | None = None
    steps: list[StepLog] = field(default_factory=list)


class LeadResolver:
    """Resolves the sender of an inbound email to a lead and refreshes its fields."""

    def __init__(
        self,
        *,
        store: EngineStore,
        ai_service: AiService,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._ai = ai_service
        self._now = now_fn

    def _classify(self, email: InboundEmail, settings: AutomationSettings) -> Classification:
        fallback = Classification(category=settings.default_classification, confidence=0.0)
        if not settings.auto_categorize_leads:
            return fallback
        try:
            return self._ai.classify(subject=email.subject, body=email.body)
        except AiOutputError as exc:
            logger.warning("classification output unusable for %s, using default: %s", email.id, exc)
            return fallback

    def _extract(self, email: InboundEmail) -> ExtractedFields:
        try:
            return self._ai.extract_contact_fields(
                sender=email.sender, subject=email.subject, body=email.body
            )
        except AiOutputError as exc:
            logger.warning("extraction output unusable for %s: %s", email.id, exc)
            return ExtractedFields()

    def resolve(
        self,
        *,
        tenant: TenantRecord,
        email: InboundEmail,
        settings: AutomationSettings,
    ) -> LeadResolution:
        """Find or create the lead; AiProviderError propagates so the message stays unread."""

        label = self._classify(email, settings)
        classification = label.category
        extracted = self._extract(email)

        now = self._now()
        proposed_priority = assign_priority(email.body, classification, label.intent)
        existing = self._store.find_lead(tenant.id, email.sender_email)

        if existing is None:
            candidate = LeadRecord(
                id=new_id(),
                tenant_id=tenant.id,
                email=email.sender_email,
                name=extracted.name or email.sender_name,
                phone=extracted.phone,
                address=extracted.address,
                service_type=extracted.service_type,
                description=(email.body or "")[:DESCRIPTION_MAX_CHARS] or None,
                source="email",
                stage=STAGE_NEW,
                priority=proposed_priority if settings.auto_assign_priority else PRIORITY_MEDIUM,
                classification=classification,
                intent=label.intent,
                created_at=now,
                updated_at=now,
            )
            lead = self._store.create_lead(candidate)
            is_new = lead.id == candidate.id
            changes: dict[str, object] = {} if is_new else dict(merge_fields(lead, extracted))
        else:
            lead = existing
            is_new = False
            changes = dict(merge_fields(lead, extracted))

        if not is_new:
            if classification != lead.classification:
                changes["classification"] = classification
            if label.intent and label.intent != lead.intent:
                changes["intent"] = label.intent
            if settings.auto_assign_priority:
                escalated = escalate_priority(lead.priority, proposed_priority)
                if escalated != lead.priority:
                    changes["priority"] = escalated
            if changes:
                changes["updated_at"] = now
                lead = self._store.update_lead(lead.id, **changes)

        step = StepLog(
            module="lead_resolver.resolve",
            prompt={"tenant_id": tenant.id, "sender": email.sender_email, "message_id": email.id},
            response={
                "lead_id": lead.id,
                "is_new": is_new,
                "classification": classification,
                "intent": label.intent,
                "confidence": label.confidence,
                "priority": lead.priority,
                "updated_fields": sorted(k for k in changes if k != "updated_at"),
            },
        )
        return LeadResolution(
            lead=lead,
            is_new=is_new,
            classification=classification,
            extracted=extracted,
            intent=label.intent,
            steps=[step],
        )
