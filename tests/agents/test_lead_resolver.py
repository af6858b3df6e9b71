from __future__ import annotations

from datetime import timedelta

import pytest

from inbox_engine.agents.lead_resolver import (
    LeadResolver,
    advance_stage,
    assign_priority,
    can_advance,
    escalate_priority,
    merge_fields,
)
from inbox_engine.schemas import AutomationSettings
from inbox_engine.services.ai_service import AiOutputError, AiProviderError, ExtractedFields
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
    LeadRecord,
)


@pytest.mark.parametrize(
    ("text", "classification", "expected"),
    [
        ("Water is flooding the basement, please come ASAP", "lead", PRIORITY_HIGH),
        ("Looking for a quote on a full renovation of our kitchen", "lead", PRIORITY_HIGH),
        ("Can you send me pricing?", "quote", PRIORITY_HIGH),
        ("Cheap watches for sale", "spam", PRIORITY_LOW),
        ("What are your opening hours?", "general", PRIORITY_LOW),
        ("Could you fix a squeaky door?", "lead", PRIORITY_MEDIUM),
    ],
)
def test_assign_priority(text: str, classification: str, expected: str) -> None:
    assert assign_priority(text, classification) == expected


def test_quote_intent_raises_priority() -> None:
    assert assign_priority("Can you give me a quote for painting?", "lead") == PRIORITY_MEDIUM
    assert assign_priority("Can you give me a quote for painting?", "lead", "quote_requested") == PRIORITY_HIGH


def test_priority_never_decreases() -> None:
    assert escalate_priority(PRIORITY_HIGH, PRIORITY_LOW) == PRIORITY_HIGH
    assert escalate_priority(PRIORITY_MEDIUM, PRIORITY_LOW) == PRIORITY_MEDIUM
    assert escalate_priority(PRIORITY_LOW, PRIORITY_HIGH) == PRIORITY_HIGH
    assert escalate_priority(None, PRIORITY_LOW) == PRIORITY_LOW


def test_stage_edges_only_move_forward() -> None:
    assert can_advance(STAGE_NEW, STAGE_CONTACTED)
    assert can_advance(STAGE_NEW, STAGE_SCHEDULED)
    assert can_advance(STAGE_CONTACTED, STAGE_QUOTED)
    assert can_advance(STAGE_SCHEDULED, STAGE_WON)
    assert not can_advance(STAGE_QUOTED, STAGE_SCHEDULED)
    assert not can_advance(STAGE_SCHEDULED, STAGE_CONTACTED)
    assert not can_advance(STAGE_CONTACTED, STAGE_CONTACTED)
    for terminal in (STAGE_WON, STAGE_LOST, STAGE_COMPLETED):
        assert not can_advance(terminal, STAGE_CONTACTED)


def test_advance_stage_keeps_current_on_illegal_move() -> None:
    assert advance_stage(STAGE_SCHEDULED, STAGE_CONTACTED) == STAGE_SCHEDULED
    assert advance_stage(STAGE_NEW, STAGE_CONTACTED) == STAGE_CONTACTED


def test_merge_fields_keeps_existing_values_when_missing() -> None:
    lead = LeadRecord(id="l1", tenant_id="t", email="a@b.test", name="Ann", phone="555-0100")
    changes = merge_fields(lead, ExtractedFields(name=None, phone="555-0199", address="1 Main St"))
    assert changes == {"phone": "555-0199", "address": "1 Main St"}


def test_resolver_creates_lead_with_sender_name_fallback(store, ai, clock, make_tenant, make_email) -> None:
    tenant = make_tenant()
    ai.extracted = ExtractedFields(phone="555-0100", service_type="plumbing")
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)

    resolution = resolver.resolve(tenant=tenant, email=make_email(), settings=AutomationSettings())

    assert resolution.is_new is True
    lead = resolution.lead
    assert lead.email == "jane@example.com"
    assert lead.name == "Jane Doe"
    assert lead.phone == "555-0100"
    assert lead.stage == STAGE_NEW
    assert lead.classification == "lead"
    assert lead.description.startswith("Hi, my kitchen sink")
    assert resolution.steps[0].module == "lead_resolver.resolve"


def test_resolver_updates_existing_lead_and_escalates_priority(store, ai, clock, make_tenant, make_email) -> None:
    tenant = make_tenant()
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)
    first = resolver.resolve(tenant=tenant, email=make_email(), settings=AutomationSettings()).lead
    assert first.priority == PRIORITY_MEDIUM

    clock.advance(hours=2)
    ai.extracted = ExtractedFields(address="12 Elm St")
    second = resolver.resolve(
        tenant=tenant,
        email=make_email(id="gm-002", body="Now it is leaking everywhere, urgent!"),
        settings=AutomationSettings(),
    )

    assert second.is_new is False
    assert second.lead.id == first.id
    assert second.lead.priority == PRIORITY_HIGH
    assert second.lead.address == "12 Elm St"
    assert second.lead.updated_at == clock()
    assert second.lead.created_at == clock() - timedelta(hours=2)


def test_resolver_stores_intent_and_prioritizes_quote_requests(store, ai, clock, make_tenant, make_email) -> None:
    tenant = make_tenant()
    ai.intent = "quote_requested"
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)

    resolution = resolver.resolve(
        tenant=tenant,
        email=make_email(body="Can you give me a quote for painting?"),
        settings=AutomationSettings(),
    )

    assert resolution.intent == "quote_requested"
    assert resolution.lead.intent == "quote_requested"
    assert resolution.lead.priority == PRIORITY_HIGH


def test_later_email_keeps_extracted_name_over_display_name(store, ai, clock, make_tenant, make_email) -> None:
    tenant = make_tenant()
    ai.extracted = ExtractedFields(name="Jane Q. Doe")
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)
    first = resolver.resolve(tenant=tenant, email=make_email(), settings=AutomationSettings()).lead
    assert first.name == "Jane Q. Doe"

    ai.extracted = ExtractedFields()
    second = resolver.resolve(
        tenant=tenant,
        email=make_email(id="gm-002", sender="JD Mobile <jane@example.com>"),
        settings=AutomationSettings(),
    )

    assert second.lead.name == "Jane Q. Doe"


def test_lowering_signal_does_not_downgrade_priority(store, ai, clock, make_tenant, make_email) -> None:
    tenant = make_tenant()
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)
    resolver.resolve(tenant=tenant, email=make_email(body="Emergency, burst pipe!"), settings=AutomationSettings())

    ai.classification = "general"
    resolution = resolver.resolve(
        tenant=tenant, email=make_email(id="gm-002", body="Thanks, all good."), settings=AutomationSettings()
    )

    assert resolution.lead.priority == PRIORITY_HIGH
    assert resolution.lead.classification == "general"


def test_categorization_off_uses_default_classification(store, ai, clock, make_tenant, make_email) -> None:
    tenant = make_tenant()
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)
    settings = AutomationSettings(auto_categorize_leads=False, default_classification="customer")

    resolution = resolver.resolve(tenant=tenant, email=make_email(), settings=settings)

    assert resolution.classification == "customer"


def test_malformed_classification_falls_back_to_default(store, ai, clock, make_tenant, make_email, monkeypatch) -> None:
    tenant = make_tenant()

    def bad_classify(*, subject, body):
        raise AiOutputError("Unknown classification 'sales'")

    monkeypatch.setattr(ai, "classify", bad_classify)
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)

    resolution = resolver.resolve(tenant=tenant, email=make_email(), settings=AutomationSettings())

    assert resolution.classification == "lead"


def test_provider_failure_propagates(store, ai, clock, make_tenant, make_email) -> None:
    tenant = make_tenant()
    ai.fail = True
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)

    with pytest.raises(AiProviderError):
        resolver.resolve(tenant=tenant, email=make_email(), settings=AutomationSettings())
    assert store.find_lead(tenant.id, "jane@example.com") is None


def test_same_email_in_two_tenants_gives_two_leads(store, ai, clock, make_tenant, make_email) -> None:
    a = make_tenant("tenant-a")
    b = make_tenant("tenant-b")
    resolver = LeadResolver(store=store, ai_service=ai, now_fn=clock)

    lead_a = resolver.resolve(tenant=a, email=make_email(), settings=AutomationSettings()).lead
    lead_b = resolver.resolve(tenant=b, email=make_email(id="gm-b"), settings=AutomationSettings()).lead

    assert lead_a.id != lead_b.id
    assert {lead_a.tenant_id, lead_b.tenant_id} == {"tenant-a", "tenant-b"}
