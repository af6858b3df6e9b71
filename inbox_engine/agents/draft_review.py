"""Human review of outbound drafts: list, edit, approve-and-send, reject; manual stage reset."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from inbox_engine.agents.approval_gate import is_within_working_hours
from inbox_engine.agents.base import mail_account_for
from inbox_engine.agents.dispatcher import DispatchResult, Dispatcher
from inbox_engine.schemas import parse_automation_settings
from inbox_engine.services.engine_store import (
    DIRECTION_OUTBOUND,
    LEAD_STAGES,
    EngineStore,
    LeadRecord,
    MessageRecord,
    TenantRecord,
    utc_now,
)
from inbox_engine.services.gmail_service import MailAuthError, Mailbox, MailTransport

logger = logging.getLogger(__name__)


class DraftNotFoundError(LookupError):
    pass


class DraftStateError(ValueError):
    """The message is not an unsent outbound draft."""


class OutsideWorkingHoursError(RuntimeError):
    """Approval refused because the tenant is outside its working hours."""


@dataclass
class DraftContext:
    message: MessageRecord
    lead: LeadRecord
    tenant: TenantRecord


class DraftReviewService:
    def __init__(
        self,
        *,
        store: EngineStore,
        transport: MailTransport,
        dispatcher: Dispatcher,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._transport = transport
        self._dispatcher = dispatcher
        self._now = now_fn

    def _load_draft(self, message_id: str) -> DraftContext:
        message = self._store.get_message(message_id)
        if message is None:
            raise DraftNotFoundError(f"Message not found: {message_id}")
        if message.direction != DIRECTION_OUTBOUND or message.sent_at is not None:
            raise DraftStateError(f"Message {message_id} is not an unsent draft")
        lead = self._store.get_lead(message.lead_id)
        if lead is None:
            raise DraftNotFoundError(f"Lead not found for message {message_id}")
        tenant = self._store.get_tenant(lead.tenant_id)
        if tenant is None:
            raise DraftNotFoundError(f"Tenant not found for message {message_id}")
        return DraftContext(message=message, lead=lead, tenant=tenant)

    def list_pending_drafts(self, tenant_id: str) -> list[tuple[MessageRecord, LeadRecord | None]]:
        drafts = self._store.list_pending_drafts(tenant_id)
        leads: dict[str, LeadRecord | None] = {}
        for draft in drafts:
            if draft.lead_id not in leads:
                leads[draft.lead_id] = self._store.get_lead(draft.lead_id)
        return [(d, leads[d.lead_id]) for d in drafts]

    def edit_draft(
        self,
        message_id: str,
        *,
        subject: str | None = None,
        content: str | None = None,
    ) -> MessageRecord:
        ctx = self._load_draft(message_id)
        changes: dict[str, object] = {}
        if subject is not None:
            changes["subject"] = subject
        if content is not None:
            changes["content"] = content
        if not changes:
            return ctx.message
        logger.info("draft %s edited (%s)", message_id, ", ".join(sorted(changes)))
        return self._store.update_message(message_id, **changes)

    def approve_and_send(self, message_id: str) -> DispatchResult:
        ctx = self._load_draft(message_id)
        settings = parse_automation_settings(ctx.tenant.automation_settings_json)
        if not is_within_working_hours(settings, self._now()):
            raise OutsideWorkingHoursError(
                f"Outside working hours ({settings.working_hours_start}-{settings.working_hours_end} "
                f"{settings.timezone}); try again later"
            )
        if not ctx.tenant.gmail_connected:
            return DispatchResult(message=ctx.message, sent=False, error="mailbox is not connected")
        tenant_id = ctx.tenant.id
        mailbox = Mailbox(
            self._transport,
            mail_account_for(ctx.tenant),
            on_token_refresh=lambda token: self._store.update_tenant_tokens(tenant_id, access_token=token),
        )
        try:
            return self._dispatcher.send_draft(mailbox=mailbox, message=ctx.message)
        except MailAuthError as exc:
            return DispatchResult(message=ctx.message, sent=False, error=f"mailbox authorization failed: {exc}")

    def reject_draft(self, message_id: str) -> None:
        self._load_draft(message_id)
        self._store.delete_message(message_id)
        logger.info("draft %s rejected", message_id)

    def reset_stage(self, lead_id: str, stage: str) -> LeadRecord:
        """Manual override; the only path allowed to move a lead backwards."""

        if stage not in LEAD_STAGES:
            raise ValueError(f"Unknown stage {stage!r}")
        if self._store.get_lead(lead_id) is None:
            raise DraftNotFoundError(f"Lead not found: {lead_id}")
        return self._store.update_lead(lead_id, stage=stage, updated_at=self._now())
