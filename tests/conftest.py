"""Shared dummy collaborators for the engine tests (no network, SQLite on tmp_path)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from inbox_engine.config import load_settings
from inbox_engine.engine import Engine, build_engine
from inbox_engine.services.ai_service import (
    AiProviderError,
    Classification,
    ExtractedFields,
    QuoteDraft,
    ReplyRequest,
)
from inbox_engine.services.calendar_service import TimeSlot
from inbox_engine.services.engine_store import SqliteEngineStore, TenantRecord
from inbox_engine.services.gmail_service import InboundEmail, MailAccount, MailAuthError, SentMessage

# Monday 2026-03-09 10:00 in America/New_York (EDT, UTC-4).
MONDAY_10AM_UTC = datetime(2026, 3, 9, 14, 0, tzinfo=timezone.utc)


@dataclass
class FixedClock:
    now: datetime = MONDAY_10AM_UTC

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass
class DummyTransport:
    """In-memory mailboxes keyed by tenant id."""

    inboxes: dict[str, dict[str, InboundEmail]] = field(default_factory=dict)
    read: set[str] = field(default_factory=set)
    sent: list[dict[str, Any]] = field(default_factory=list)
    auth_fail_tenants: set[str] = field(default_factory=set)
    send_error: Exception | None = None
    refresh_calls: int = 0

    def deliver(self, tenant_id: str, email: InboundEmail) -> None:
        self.inboxes.setdefault(tenant_id, {})[email.id] = email
        self.read.discard(email.id)

    def _check(self, account: MailAccount) -> None:
        if account.tenant_id in self.auth_fail_tenants:
            raise MailAuthError("invalid_grant")

    def list_unread(self, account: MailAccount, *, max_results: int) -> list[str]:
        self._check(account)
        ids = [i for i in self.inboxes.get(account.tenant_id, {}) if i not in self.read]
        return ids[:max_results]

    def get_message(self, account: MailAccount, message_id: str) -> InboundEmail:
        self._check(account)
        return self.inboxes[account.tenant_id][message_id]

    def mark_read(self, account: MailAccount, message_id: str) -> None:
        self._check(account)
        self.read.add(message_id)

    def send(
        self,
        account: MailAccount,
        *,
        to: str,
        subject: str,
        body: str,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
        references: str | None = None,
    ) -> SentMessage:
        self._check(account)
        if self.send_error is not None:
            raise self.send_error
        n = len(self.sent) + 1
        self.sent.append(
            {
                "tenant_id": account.tenant_id,
                "to": to,
                "subject": subject,
                "body": body,
                "thread_id": thread_id,
                "in_reply_to": in_reply_to,
                "references": references,
            }
        )
        return SentMessage(
            provider_message_id=f"sent-{n}",
            thread_id=thread_id or f"thread-sent-{n}",
            rfc_message_id=f"<sent-{n}@example.test>",
        )

    def refresh(self, account: MailAccount) -> str:
        self.refresh_calls += 1
        self._check(account)
        return "fresh-token"


@dataclass
class DummyAiService:
    is_available: bool = True
    model: str = "test-model"
    classification: str = "lead"
    intent: str | None = None
    extracted: ExtractedFields = field(default_factory=ExtractedFields)
    reply: str = "Thanks for reaching out! We'd be happy to help."
    quote: QuoteDraft | None = None
    fail: bool = False
    reply_requests: list[ReplyRequest] = field(default_factory=list)
    calls: int = 0

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.fail:
            raise AiProviderError("provider down")

    def classify(self, *, subject: str, body: str) -> Classification:
        self._maybe_fail()
        return Classification(category=self.classification, confidence=0.9, intent=self.intent)

    def extract_contact_fields(self, *, sender: str, subject: str, body: str) -> ExtractedFields:
        self._maybe_fail()
        return self.extracted

    def generate_reply(self, request: ReplyRequest) -> str:
        self._maybe_fail()
        self.reply_requests.append(request)
        return self.reply

    def generate_quote(self, **kwargs: Any) -> QuoteDraft:
        self._maybe_fail()
        if self.quote is None:
            raise AiProviderError("no quote configured")
        return self.quote


@dataclass
class DummyCalendar:
    slots: list[TimeSlot] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)

    def list_available_slots(self, account: MailAccount, **kwargs: Any) -> list[TimeSlot]:
        return list(self.slots)

    def create_event(self, account: MailAccount, **kwargs: Any) -> str:
        self.events.append(kwargs)
        return f"event-{len(self.events)}"


def build_email(
    *,
    id: str = "gm-001",
    sender: str = "Jane Doe <jane@example.com>",
    subject: str = "Need a plumber",
    body: str = "Hi, my kitchen sink is clogged. Can you help?",
    headers: dict[str, str] | None = None,
    thread_id: str | None = "thread-1",
) -> InboundEmail:
    all_headers = {"message-id": f"<{id}@mail.example.com>"}
    all_headers.update({k.lower(): v for k, v in (headers or {}).items()})
    return InboundEmail(
        id=id,
        thread_id=thread_id,
        sender=sender,
        recipient="owner@acme-plumbing.test",
        subject=subject,
        body=body,
        headers=all_headers,
    )


@pytest.fixture
def make_email():
    return build_email


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store(tmp_path) -> SqliteEngineStore:
    return SqliteEngineStore(db_path=str(tmp_path / "engine.db"))


@pytest.fixture
def transport() -> DummyTransport:
    return DummyTransport()


@pytest.fixture
def ai() -> DummyAiService:
    return DummyAiService()


@pytest.fixture
def calendar() -> DummyCalendar:
    return DummyCalendar()


@pytest.fixture
def make_tenant(store):
    def _make(tenant_id: str = "tenant-a", settings: dict[str, Any] | None = None, **overrides: Any) -> TenantRecord:
        tenant = TenantRecord(
            id=tenant_id,
            email=f"owner@{tenant_id}.test",
            business_name="Acme Plumbing",
            business_type="plumbing",
            gmail_connected=True,
            gmail_refresh_token="refresh-token",
            ai_limit=50,
            ai_last_reset_at=MONDAY_10AM_UTC - timedelta(days=3),
            automation_settings_json=json.dumps(settings or {}),
        )
        tenant = replace(tenant, **overrides)
        return store.upsert_tenant(tenant)

    return _make


@pytest.fixture
def engine(store, transport, ai, calendar, clock) -> Engine:
    settings = replace(load_settings(), mail_max_auth_failures=5, max_unread_per_poll=10)
    return build_engine(
        settings,
        store=store,
        transport=transport,
        ai_service=ai,
        calendar=calendar,
        now_fn=clock,
    )
