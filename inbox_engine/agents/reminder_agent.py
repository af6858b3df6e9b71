"""Hourly reminder sweep for scheduled appointments."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from inbox_engine.agents.base import CycleResult, TenantJob
from inbox_engine.agents.dispatcher import Dispatcher
from inbox_engine.schemas import AutomationSettings, StepLog
from inbox_engine.services.calendar_service import format_slot
from inbox_engine.services.engine_store import (
    DIRECTION_OUTBOUND,
    STAGE_SCHEDULED,
    EngineStore,
    LeadRecord,
    TenantRecord,
)
from inbox_engine.services.gmail_service import Mailbox

logger = logging.getLogger(__name__)

REMINDER_WINDOW_SLACK = timedelta(hours=1)
REMINDER_CLASSIFICATION = "booking_reminder"


def reminder_email(tenant: TenantRecord, lead: LeadRecord, settings: AutomationSettings) -> tuple[str, str]:
    """Templated (subject, body) for an appointment reminder."""

    when = format_slot(lead.appointment_date.astimezone(ZoneInfo(settings.timezone)))
    business = tenant.business_name or "our team"
    greeting = f"Hi {lead.name}," if lead.name else "Hi,"
    subject = f"Reminder: your appointment on {when}"
    body = (
        f"{greeting}\n\n"
        f"This is a friendly reminder of your appointment with {business} on {when}."
    )
    if lead.address:
        body += f"\nLocation: {lead.address}"
    body += (
        "\n\nIf you need to reschedule, just reply to this email.\n\n"
        f"Thank you,\n{business}"
    )
    return subject, body


def is_due(lead: LeadRecord, *, now: datetime, hours_before: int) -> bool:
    """Appointment inside [now + lead - 1h, now + lead + 1h] and lead untouched for an hour."""

    if lead.stage != STAGE_SCHEDULED or lead.appointment_date is None:
        return False
    target = now + timedelta(hours=hours_before)
    if not (target - REMINDER_WINDOW_SLACK <= lead.appointment_date <= target + REMINDER_WINDOW_SLACK):
        return False
    return lead.updated_at is None or lead.updated_at <= now - REMINDER_WINDOW_SLACK


def reminder_sent_for_appointment(store: EngineStore, lead: LeadRecord, *, hours_before: int) -> bool:
    """An outbound reminder exists from this appointment's send window onwards."""

    window_start = lead.appointment_date - timedelta(hours=hours_before) - 2 * REMINDER_WINDOW_SLACK
    return any(
        m.direction == DIRECTION_OUTBOUND and m.classification == REMINDER_CLASSIFICATION
        for m in store.messages_since(lead.id, window_start)
    )


class ReminderAgent(TenantJob):
    name = "reminders"

    def __init__(self, *, dispatcher: Dispatcher, **kwargs) -> None:
        super().__init__(**kwargs)
        self.dispatcher = dispatcher

    def run_tenant(
        self,
        tenant: TenantRecord,
        mailbox: Mailbox,
        settings: AutomationSettings,
        result: CycleResult,
    ) -> None:
        if not settings.send_booking_reminders:
            result.counts["disabled"] += 1
            return
        now = self.now()
        for lead in self.store.list_leads_in_stage(tenant.id, STAGE_SCHEDULED):
            if not is_due(lead, now=now, hours_before=settings.reminder_hours_before):
                continue
            if reminder_sent_for_appointment(self.store, lead, hours_before=settings.reminder_hours_before):
                result.counts["already_sent"] += 1
                continue
            subject, body = reminder_email(tenant, lead, settings)
            dispatched = self.dispatcher.dispatch(
                mailbox=mailbox,
                lead=lead,
                subject=subject,
                body=body,
                auto_send=True,
                is_ai_generated=False,
                classification=REMINDER_CLASSIFICATION,
            )
            self.store.update_lead(lead.id, updated_at=now)
            result.counts["sent" if dispatched.sent else "failed"] += 1
            result.steps.append(
                StepLog(
                    module="reminder.dispatch",
                    prompt={"lead_id": lead.id, "appointment": lead.appointment_date.isoformat()},
                    response={"message_id": dispatched.message.id, "sent": dispatched.sent},
                )
            )
