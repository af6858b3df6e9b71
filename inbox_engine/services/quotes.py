"""Quote arithmetic and auto-generation signal detection."""

from __future__ import annotations

import re
from datetime import datetime

from inbox_engine.schemas import AutomationSettings
from inbox_engine.services.ai_service import QuoteDraft
from inbox_engine.services.engine_store import (
    QUOTE_APPROVED,
    QUOTE_PENDING_APPROVAL,
    LeadRecord,
    QuoteItem,
    QuoteRecord,
    new_id,
)

MEASUREMENT_RE = re.compile(
    r"\b\d+(?:[.,]\d+)?\s*(?:"
    r"sq\.?\s*ft|sqft|square\s+(?:feet|foot|meters?|metres?|yards?)|"
    r"sq\.?\s*m|m2|linear\s+(?:feet|ft)|"
    r"ft|feet|foot|meters?|metres?|yards?|yd|acres?|inches|in\.|"
    r"rooms?|windows?|doors?|stories|storeys|gallons?"
    r")(?![a-z])",
    re.IGNORECASE,
)


def has_quote_signal(text: str, lead: LeadRecord) -> bool:
    """Explicit measurements in the request, or service type and address already known."""

    if MEASUREMENT_RE.search(text or ""):
        return True
    return bool(lead.service_type and lead.address)


def compute_totals(items: list[QuoteItem], tax_rate: float) -> tuple[float, float, float]:
    """Return (subtotal, tax, total) rounded to cents."""

    subtotal = round(sum(i.quantity * i.unit_price for i in items), 2)
    tax = round(subtotal * tax_rate / 100.0, 2)
    return subtotal, tax, round(subtotal + tax, 2)


def quote_number(now: datetime) -> str:
    return f"QT-{int(now.timestamp() * 1000)}"


def build_quote(
    draft: QuoteDraft,
    *,
    tenant_id: str,
    lead_id: str,
    settings: AutomationSettings,
    now: datetime,
) -> QuoteRecord:
    """Turn a model draft into a persisted quote with computed totals and status."""

    items = [
        QuoteItem(description=line.description, quantity=line.quantity, unit_price=line.unit_price)
        for line in draft.items
    ]
    subtotal, tax, total = compute_totals(items, draft.tax_rate)
    within_bounds = settings.min_quote_amount <= total <= settings.max_quote_amount
    status = (
        QUOTE_APPROVED
        if not settings.require_quote_approval and within_bounds
        else QUOTE_PENDING_APPROVAL
    )
    return QuoteRecord(
        id=new_id(),
        tenant_id=tenant_id,
        lead_id=lead_id,
        quote_number=quote_number(now),
        title=draft.title,
        items=items,
        description=draft.description,
        notes=draft.notes,
        tax_rate=draft.tax_rate,
        subtotal=subtotal,
        tax=tax,
        total=total,
        status=status,
        created_at=now,
    )
