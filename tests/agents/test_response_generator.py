from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from inbox_engine.agents.response_generator import (
    GeneratedReply,
    ResponseGenerator,
    detect_booking_intent,
    detect_quote_intent,
    find_confirmed_slot,
    has_confirmation_phrase,
    reply_confidence,
    reply_subject,
)
from inbox_engine.agents.base import mail_account_for
from inbox_engine.schemas import AutomationSettings
from inbox_engine.services.calendar_service import CalendarError, TimeSlot
from inbox_engine.services.engine_store import (
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    PRIORITY_HIGH,
    STAGE_CONTACTED,
    STAGE_NEW,
    STAGE_QUOTED,
    STAGE_SCHEDULED,
    LeadRecord,
    MessageRecord,
    new_id,
)

NY = ZoneInfo("America/New_York")


def _slot(day: int, hour: int, minute: int = 0) -> TimeSlot:
    start = datetime(2026, 3, day, hour, minute, tzinfo=NY)
    return TimeSlot(start=start, end=start + timedelta(hours=1))


# Monday 16th and Tuesday 17th March 2026
SLOTS = [_slot(16, 10), _slot(16, 14), _slot(17, 9), _slot(17, 15, 30)]


def test_confirmation_with_day_and_time_picks_matching_slot() -> None:
    assert find_confirmed_slot("Monday at 10 works great", SLOTS) == SLOTS[0]
    assert find_confirmed_slot("Monday 2pm sounds good", SLOTS) == SLOTS[1]
    assert find_confirmed_slot("Yes, Tuesday at 3:30 pm please", SLOTS) == SLOTS[3]
    assert find_confirmed_slot("Perfect, March 17 works", SLOTS) == SLOTS[2]


def test_confirmation_for_a_day_without_offered_slot_matches_nothing() -> None:
    assert find_confirmed_slot("Wednesday works", SLOTS) is None
    assert find_confirmed_slot("Tuesday works", SLOTS[:2]) is None


def test_time_mismatch_is_not_a_confirmation() -> None:
    assert find_confirmed_slot("Monday at 11 works for me", SLOTS) is None


def test_no_confirmation_phrase_means_no_booking() -> None:
    assert find_confirmed_slot("Is Monday at 10 still open?", SLOTS) is None
    assert find_confirmed_slot("Monday at 10 works", []) is None


def test_confirmation_phrase_needs_word_boundaries() -> None:
    assert has_confirmation_phrase("okay, see you then")
    assert not has_confirmation_phrase("I broke my bookcase")


def test_intent_keywords_match_word_starts() -> None:
    assert detect_booking_intent("Can we schedule a visit?")
    assert detect_booking_intent("Booking for next week")
    assert detect_quote_intent("How much would that cost?")
    assert not detect_quote_intent("That sounds great, thanks")
    assert not detect_booking_intent("Thanks again")


def test_reply_subject() -> None:
    assert reply_subject("Leaky faucet") == "Re: Leaky faucet"
    assert reply_subject("RE: Leaky faucet") == "RE: Leaky faucet"
    assert reply_subject("") == "Re: your message"


def test_reply_confidence_rewards_known_fields_and_penalizes_long_questions() -> None:
    bare = LeadRecord(id="l", tenant_id="t", email="a@b.test")
    full = LeadRecord(
        id="l", tenant_id="t", email="a@b.test", name="A", phone="1", address="x", service_type="roofing"
    )
    assert reply_confidence(bare, "Hello") == 0.5
    assert reply_confidence(full, "Hello") == 0.9
    assert reply_confidence(bare, "a? b? c? d?") == 0.4
    assert reply_confidence(bare, "a? b? c?") == 0.5
    assert reply_confidence(bare, "x" * 1001 + "?" * 4) == 0.3


def _generator(store, ai, calendar, clock) -> ResponseGenerator:
    return ResponseGenerator(store=store, ai_service=ai, calendar=calendar, calendar_days_ahead=14, now_fn=clock)


def _lead(store, tenant_id: str = "tenant-a", stage: str = STAGE_NEW, **fields) -> LeadRecord:
    return store.create_lead(
        LeadRecord(id=new_id(), tenant_id=tenant_id, email="jane@example.com", stage=stage, **fields)
    )


def test_generate_includes_history_and_slots_for_booking_request(store, ai, calendar, clock, make_tenant) -> None:
    tenant = make_tenant(calendar_connected=True)
    calendar.slots = [_slot(16, h) for h in range(9, 17)]
    lead = _lead(store)
    store.insert_message(
        MessageRecord(id=new_id(), lead_id=lead.id, direction=DIRECTION_INBOUND, content="Earlier question")
    )
    store.insert_message(
        MessageRecord(id=new_id(), lead_id=lead.id, direction=DIRECTION_OUTBOUND, content="Earlier answer")
    )

    reply = _generator(store, ai, calendar, clock).generate(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=lead,
        inbound_subject="Visit",
        inbound_text="Can we schedule an appointment next week?",
        settings=AutomationSettings(),
    )

    request = ai.reply_requests[-1]
    assert [turn.role for turn in request.history] == ["user", "assistant"]
    assert len(request.available_slots) == 5
    assert request.available_slots[0] == "Monday, March 16 at 9:00 AM"
    assert reply.booking_requested is True
    assert reply.confirmed_slot is None
    assert reply.subject == "Re: Visit"


def test_no_slots_without_connected_calendar(store, ai, calendar, clock, make_tenant) -> None:
    tenant = make_tenant(calendar_connected=False)
    calendar.slots = [_slot(16, 10)]

    reply = _generator(store, ai, calendar, clock).generate(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=_lead(store),
        inbound_subject="Visit",
        inbound_text="Can we book a visit?",
        settings=AutomationSettings(),
    )

    assert reply.candidate_slots == []
    assert ai.reply_requests[-1].available_slots == []


def test_calendar_error_degrades_to_no_slots(store, ai, clock, make_tenant) -> None:
    class BrokenCalendar:
        def list_available_slots(self, account, **kwargs):
            raise CalendarError("calendar API down")

    tenant = make_tenant(calendar_connected=True)
    reply = _generator(store, ai, BrokenCalendar(), clock).generate(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=_lead(store),
        inbound_subject="Visit",
        inbound_text="Can we book a visit?",
        settings=AutomationSettings(),
    )

    assert reply.candidate_slots == []


def test_consequences_move_new_lead_to_contacted(store, ai, calendar, clock, make_tenant) -> None:
    tenant = make_tenant()
    lead = _lead(store)
    reply = GeneratedReply(subject="Re: hi", body="Hello", confidence=0.5)

    outcome = _generator(store, ai, calendar, clock).apply_consequences(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=lead,
        reply=reply,
        inbound_text="hi",
        settings=AutomationSettings(),
    )

    assert outcome.lead.stage == STAGE_CONTACTED
    assert outcome.lead.updated_at == clock()


def test_confirmed_slot_creates_event_and_schedules(store, ai, calendar, clock, make_tenant) -> None:
    tenant = make_tenant(calendar_connected=True)
    lead = _lead(store, name="Jane Doe", address="1 Main St")
    slot = _slot(16, 10)
    reply = GeneratedReply(subject="Re: visit", body="See you then", confidence=0.7, confirmed_slot=slot)

    outcome = _generator(store, ai, calendar, clock).apply_consequences(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=lead,
        reply=reply,
        inbound_text="Monday at 10 works",
        settings=AutomationSettings(),
    )

    assert outcome.event_id == "event-1"
    assert calendar.events[0]["summary"] == "Site Visit - Jane Doe"
    assert calendar.events[0]["end"] == slot.end
    assert outcome.lead.stage == STAGE_SCHEDULED
    assert outcome.lead.appointment_date == slot.start
    assert outcome.lead.appointment_notes == "Site visit scheduled via AI"


def test_quote_request_without_signal_only_marks_intent(store, ai, calendar, clock, make_tenant) -> None:
    tenant = make_tenant()
    lead = _lead(store, stage=STAGE_CONTACTED)
    reply = GeneratedReply(subject="Re: price", body="Happy to help", confidence=0.5, quote_requested=True)

    outcome = _generator(store, ai, calendar, clock).apply_consequences(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=lead,
        reply=reply,
        inbound_text="What do you charge?",
        settings=AutomationSettings(),
    )

    assert outcome.quote_id is None
    assert outcome.lead.stage == STAGE_CONTACTED
    assert outcome.lead.priority == PRIORITY_HIGH
    assert outcome.lead.intent == "quote_requested"
    assert ai.calls == 0


def test_quote_generation_failure_leaves_stage(store, ai, calendar, clock, make_tenant) -> None:
    tenant = make_tenant()
    lead = _lead(store, stage=STAGE_CONTACTED, service_type="roofing", address="1 Main St")
    ai.quote = None
    reply = GeneratedReply(subject="Re: roof", body="We'll get back", confidence=0.5, quote_requested=True)

    outcome = _generator(store, ai, calendar, clock).apply_consequences(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=lead,
        reply=reply,
        inbound_text="Please send an estimate",
        settings=AutomationSettings(),
    )

    assert outcome.quote_id is None
    assert outcome.lead.stage == STAGE_CONTACTED
    assert store.list_quotes(lead.id) == []


@pytest.mark.parametrize("stage", [STAGE_QUOTED, STAGE_SCHEDULED])
def test_consequences_never_move_lead_backwards(store, ai, calendar, clock, make_tenant, stage: str) -> None:
    tenant = make_tenant()
    lead = _lead(store, stage=stage)
    reply = GeneratedReply(subject="Re: hi", body="Hello", confidence=0.5)

    outcome = _generator(store, ai, calendar, clock).apply_consequences(
        tenant=tenant,
        account=mail_account_for(tenant),
        lead=lead,
        reply=reply,
        inbound_text="thanks",
        settings=AutomationSettings(),
    )

    assert outcome.lead.stage == stage
