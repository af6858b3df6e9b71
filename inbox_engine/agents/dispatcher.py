"""Outbound message persistence and delivery (drafts, auto-sends, approvals, reminders)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from inbox_engine.services.engine_store import (
    DIRECTION_OUTBOUND,
    EngineStore,
    LeadRecord,
    MessageRecord,
    new_id,
    utc_now,
)
from inbox_engine.services.gmail_service import MailAuthError, Mailbox, MailTransportError

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    message: MessageRecord
    sent: bool
    error: str | None = None


def thread_references(inbound: MessageRecord | None) -> tuple[str | None, str | None]:
    """Return (In-Reply-To, References) for a reply to `inbound`."""

    if inbound is None or not inbound.rfc_message_id:
        return None, inbound.rfc_references if inbound else None
    existing = (inbound.rfc_references or "").strip()
    references = f"{existing} {inbound.rfc_message_id}".strip()
    return inbound.rfc_message_id, references


class Dispatcher:
    """Creates outbound records and, when allowed, sends them through the mailbox."""

    def __init__(self, *, store: EngineStore, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._now = now_fn

    def dispatch(
        self,
        *,
        mailbox: Mailbox,
        lead: LeadRecord,
        subject: str,
        body: str,
        auto_send: bool,
        inbound: MessageRecord | None = None,
        is_ai_generated: bool = True,
        confidence: float | None = None,
        classification: str | None = None,
    ) -> DispatchResult:
        """Store the outbound message; send it now when `auto_send`, else keep it as a draft."""

        now = self._now()
        message = MessageRecord(
            id=new_id(),
            lead_id=lead.id,
            direction=DIRECTION_OUTBOUND,
            content=body,
            subject=subject,
            from_email=mailbox.account.email,
            to_email=lead.email,
            is_ai_generated=is_ai_generated,
            ai_approval_needed=not auto_send,
            ai_confidence=confidence,
            classification=classification,
            sent_at=now if auto_send else None,
            in_reply_to_id=inbound.id if inbound else None,
            provider_thread_id=inbound.provider_thread_id if inbound else None,
            created_at=now,
        )
        self._store.insert_message(message)
        if not auto_send:
            logger.info("draft %s stored for lead %s (approval needed)", message.id, lead.id)
            return DispatchResult(message=message, sent=False)
        return self._deliver(mailbox, message, inbound, revert_on_failure=True)

    def send_draft(self, *, mailbox: Mailbox, message: MessageRecord) -> DispatchResult:
        """Send an existing unsent draft (human approval path)."""

        inbound = self._store.get_message(message.in_reply_to_id) if message.in_reply_to_id else None
        return self._deliver(mailbox, message, inbound, revert_on_failure=False, approved=True)

    def _deliver(
        self,
        mailbox: Mailbox,
        message: MessageRecord,
        inbound: MessageRecord | None,
        *,
        revert_on_failure: bool,
        approved: bool = False,
    ) -> DispatchResult:
        in_reply_to, references = thread_references(inbound)
        try:
            sent = mailbox.send(
                to=message.to_email or "",
                subject=message.subject or "",
                body=message.content,
                thread_id=message.provider_thread_id,
                in_reply_to=in_reply_to,
                references=references,
            )
        except (MailTransportError, MailAuthError) as exc:
            logger.error("sending message %s failed: %s", message.id, exc)
            if revert_on_failure:
                message = self._store.update_message(message.id, sent_at=None, ai_approval_needed=True)
            if isinstance(exc, MailAuthError):
                raise
            return DispatchResult(message=message, sent=False, error=str(exc))

        now = self._now()
        changes: dict[str, object] = {
            "provider_message_id": sent.provider_message_id or None,
            "provider_thread_id": sent.thread_id,
            "rfc_message_id": sent.rfc_message_id,
            "rfc_references": references,
            "ai_approval_needed": False,
        }
        if approved:
            changes["sent_at"] = now
            changes["approved_at"] = now
        message = self._store.update_message(message.id, **changes)
        logger.info("message %s sent to %s", message.id, message.to_email)
        return DispatchResult(message=message, sent=True)
