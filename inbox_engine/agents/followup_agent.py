"""Hourly follow-up sweep for leads whose latest inbound message went unanswered."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from inbox_engine.agents.approval_gate import UsageQuota, decide
from inbox_engine.agents.base import CycleResult, TenantJob, TenantLocks
from inbox_engine.agents.dispatcher import Dispatcher
from inbox_engine.agents.response_generator import ResponseGenerator
from inbox_engine.schemas import AutomationSettings, StepLog
from inbox_engine.services.ai_service import AiProviderError
from inbox_engine.services.engine_store import (
    DIRECTION_INBOUND,
    EngineStore,
    LeadRecord,
    MessageRecord,
    TenantRecord,
    utc_now,
)
from inbox_engine.services.gmail_service import Mailbox, MailTransport

logger = logging.getLogger(__name__)


class FollowUpAgent(TenantJob):
    name = "follow-ups"

    def __init__(
        self,
        *,
        store: EngineStore,
        transport: MailTransport,
        response_generator: ResponseGenerator,
        dispatcher: Dispatcher,
        quota: UsageQuota,
        locks: TenantLocks | None = None,
        max_auth_failures: int = 5,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(
            store=store,
            transport=transport,
            locks=locks,
            max_auth_failures=max_auth_failures,
            now_fn=now_fn,
        )
        self.generator = response_generator
        self.dispatcher = dispatcher
        self.quota = quota

    def pending_inbound(self, lead: LeadRecord, cutoff: datetime) -> MessageRecord | None:
        """Return the lead's last message when it is an unanswered inbound older than `cutoff`."""

        latest = self.store.recent_messages(lead.id, limit=1)
        if not latest:
            return None
        last = latest[-1]
        if last.direction != DIRECTION_INBOUND or last.created_at is None:
            return None
        if last.created_at > cutoff:
            return None
        if self.store.has_ai_reply_to(last.id):
            return None
        return last

    def run_tenant(
        self,
        tenant: TenantRecord,
        mailbox: Mailbox,
        settings: AutomationSettings,
        result: CycleResult,
    ) -> None:
        if not settings.auto_follow_up:
            result.counts["disabled"] += 1
            return
        now = self.now()
        cutoff = now - timedelta(days=settings.follow_up_delay_days)
        for lead in self.store.list_open_leads(tenant.id):
            inbound = self.pending_inbound(lead, cutoff)
            if inbound is None:
                continue
            if not self.quota.check(tenant, now).allowed:
                logger.debug("follow-up for lead %s skipped: AI quota exhausted", lead.id)
                result.counts["quota_exhausted"] += 1
                continue
            try:
                reply = self.generator.generate(
                    tenant=tenant,
                    account=mailbox.account,
                    lead=lead,
                    inbound_subject=inbound.subject or "",
                    inbound_text=inbound.content,
                    settings=settings,
                    follow_up=True,
                )
            except AiProviderError as exc:
                logger.warning("follow-up generation failed for lead %s: %s", lead.id, exc)
                result.counts["errors"] += 1
                continue
            self.quota.record_generation(tenant)
            decision = decide(settings, now=now, is_new_contact=False)
            dispatched = self.dispatcher.dispatch(
                mailbox=mailbox,
                lead=lead,
                subject=reply.subject,
                body=reply.body,
                auto_send=decision.auto_send,
                inbound=inbound,
                is_ai_generated=True,
                confidence=reply.confidence,
                classification="follow_up",
            )
            result.counts["sent" if dispatched.sent else "drafted"] += 1
            result.steps.append(
                StepLog(
                    module="follow_up.dispatch",
                    prompt={"lead_id": lead.id, "inbound_id": inbound.id, "reason": decision.reason},
                    response={"message_id": dispatched.message.id, "sent": dispatched.sent},
                )
            )
