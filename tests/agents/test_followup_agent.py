from __future__ import annotations

from datetime import timedelta

from inbox_engine.services.engine_store import (
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    STAGE_CONTACTED,
    STAGE_WON,
    LeadRecord,
    MessageRecord,
    new_id,
)

FOLLOW_UP_ON = {"autoFollowUp": True, "followUpDelayDays": 3}


def _lead_with_message(store, clock, *, age: timedelta, direction: str = DIRECTION_INBOUND, stage=STAGE_CONTACTED):
    lead = store.create_lead(
        LeadRecord(
            id=new_id(),
            tenant_id="tenant-a",
            email=f"{new_id()[:8]}@example.com",
            name="Sam",
            stage=stage,
            created_at=clock() - age,
            updated_at=clock() - age,
        )
    )
    message = MessageRecord(
        id=new_id(),
        lead_id=lead.id,
        direction=direction,
        content="Could you come by to look at the roof?",
        subject="Roof",
        sent_at=clock() - age if direction == DIRECTION_OUTBOUND else None,
        created_at=clock() - age,
    )
    store.insert_message(message)
    return lead, message


def test_unanswered_inbound_gets_one_follow_up(engine, store, ai, clock, make_tenant) -> None:
    make_tenant(settings=FOLLOW_UP_ON)
    lead, inbound = _lead_with_message(store, clock, age=timedelta(days=4))

    summary = engine.follow_up_agent.run_all()

    assert summary.totals()["drafted"] == 1
    assert ai.reply_requests[-1].follow_up is True
    assert ai.reply_requests[-1].available_slots == []
    (follow_up,) = [m for m in store.recent_messages(lead.id, limit=10) if m.direction == DIRECTION_OUTBOUND]
    assert follow_up.in_reply_to_id == inbound.id
    assert follow_up.classification == "follow_up"
    assert follow_up.subject == "Re: Roof"
    assert store.get_tenant("tenant-a").ai_used == 1

    clock.advance(hours=1)
    engine.follow_up_agent.run_all()
    outbound = [m for m in store.recent_messages(lead.id, limit=10) if m.direction == DIRECTION_OUTBOUND]
    assert len(outbound) == 1


def test_recent_inbound_is_not_followed_up_yet(engine, store, ai, clock, make_tenant) -> None:
    make_tenant(settings=FOLLOW_UP_ON)
    _lead_with_message(store, clock, age=timedelta(days=1))

    summary = engine.follow_up_agent.run_all()

    assert ai.reply_requests == []
    assert summary.totals().get("drafted", 0) == 0


def test_last_message_outbound_needs_no_follow_up(engine, store, ai, clock, make_tenant) -> None:
    make_tenant(settings=FOLLOW_UP_ON)
    _lead_with_message(store, clock, age=timedelta(days=5), direction=DIRECTION_OUTBOUND)

    engine.follow_up_agent.run_all()

    assert ai.reply_requests == []


def test_closed_leads_are_ignored(engine, store, ai, clock, make_tenant) -> None:
    make_tenant(settings=FOLLOW_UP_ON)
    _lead_with_message(store, clock, age=timedelta(days=5), stage=STAGE_WON)

    engine.follow_up_agent.run_all()

    assert ai.reply_requests == []


def test_follow_ups_respect_tenant_toggle(engine, store, ai, clock, make_tenant) -> None:
    make_tenant(settings={"autoFollowUp": False})
    _lead_with_message(store, clock, age=timedelta(days=10))

    summary = engine.follow_up_agent.run_all()

    assert summary.totals()["disabled"] == 1
    assert ai.reply_requests == []


def test_follow_up_skipped_when_quota_exhausted(engine, store, ai, clock, make_tenant) -> None:
    make_tenant(settings=FOLLOW_UP_ON, ai_used=50, ai_limit=50)
    lead, _ = _lead_with_message(store, clock, age=timedelta(days=4))

    summary = engine.follow_up_agent.run_all()

    assert summary.totals()["quota_exhausted"] == 1
    assert ai.reply_requests == []
    assert len(store.recent_messages(lead.id, limit=10)) == 1


def test_follow_up_auto_sent_for_known_contact(engine, store, transport, clock, make_tenant) -> None:
    make_tenant(settings={**FOLLOW_UP_ON, "aiAutoApprove": True})
    _lead_with_message(store, clock, age=timedelta(days=4))

    summary = engine.follow_up_agent.run_all()

    assert summary.totals()["sent"] == 1
    assert len(transport.sent) == 1
