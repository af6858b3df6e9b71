"""Persistence for tenants, leads, messages and quotes (SQLite locally, Postgres in production)."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

STAGE_NEW = "new"
STAGE_CONTACTED = "contacted"
STAGE_QUOTED = "quoted"
STAGE_SCHEDULED = "scheduled"
STAGE_WON = "won"
STAGE_LOST = "lost"
STAGE_COMPLETED = "completed"

LEAD_STAGES = (
    STAGE_NEW,
    STAGE_CONTACTED,
    STAGE_QUOTED,
    STAGE_SCHEDULED,
    STAGE_WON,
    STAGE_LOST,
    STAGE_COMPLETED,
)
TERMINAL_STAGES = frozenset({STAGE_WON, STAGE_LOST, STAGE_COMPLETED})

PRIORITY_LOW = "low"
PRIORITY_MEDIUM = "medium"
PRIORITY_HIGH = "high"

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"

QUOTE_PENDING_APPROVAL = "pending_approval"
QUOTE_APPROVED = "approved"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class TenantRecord:
    """A business account whose mailbox the engine automates."""

    id: str
    email: str
    business_name: str | None = None
    business_type: str | None = None
    gmail_connected: bool = False
    gmail_access_token: str | None = None
    gmail_refresh_token: str | None = None
    mail_failure_count: int = 0
    calendar_connected: bool = False
    ai_used: int = 0
    ai_limit: int | None = None
    ai_last_reset_at: datetime | None = None
    subscription_plan: str | None = None
    automation_settings_json: str | None = None


@dataclass
class LeadRecord:
    """One contact per (tenant, email)."""

    id: str
    tenant_id: str
    email: str
    name: str | None = None
    phone: str | None = None
    address: str | None = None
    service_type: str | None = None
    description: str | None = None
    source: str = "email"
    stage: str = STAGE_NEW
    priority: str = PRIORITY_MEDIUM
    classification: str | None = None
    intent: str | None = None
    appointment_date: datetime | None = None
    appointment_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class MessageRecord:
    """One exchanged communication; `sent_at=None` on an outbound record marks a draft."""

    id: str
    lead_id: str
    direction: str
    content: str
    channel: str = "email"
    subject: str | None = None
    from_email: str | None = None
    to_email: str | None = None
    is_ai_generated: bool = False
    ai_approval_needed: bool = False
    ai_confidence: float | None = None
    classification: str | None = None
    sent_at: datetime | None = None
    read_at: datetime | None = None
    in_reply_to_id: str | None = None
    provider_message_id: str | None = None
    provider_thread_id: str | None = None
    rfc_message_id: str | None = None
    rfc_references: str | None = None
    approved_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_draft(self) -> bool:
        return self.direction == DIRECTION_OUTBOUND and self.sent_at is None


@dataclass
class QuoteItem:
    description: str
    quantity: float
    unit_price: float

    @property
    def total(self) -> float:
        return round(self.quantity * self.unit_price, 2)


@dataclass
class QuoteRecord:
    """Engine-generated quote attached to a lead."""

    id: str
    tenant_id: str
    lead_id: str
    quote_number: str
    title: str
    items: list[QuoteItem] = field(default_factory=list)
    description: str | None = None
    notes: str | None = None
    tax_rate: float = 0.0
    subtotal: float = 0.0
    tax: float = 0.0
    total: float = 0.0
    status: str = QUOTE_PENDING_APPROVAL
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    """Return the current aware UTC datetime."""

    return datetime.now(tz=UTC)


def new_id() -> str:
    return uuid.uuid4().hex


def to_db_time(value: datetime | None) -> str | None:
    """Serialize to fixed-width UTC text so lexical order equals time order."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_db_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class EngineStore(Protocol):
    """Store contract used by the automation engine and the draft review API."""

    def upsert_tenant(self, tenant: TenantRecord) -> TenantRecord:
        """Insert or replace a tenant row."""

    def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        """Return one tenant or None."""

    def list_mail_tenants(self) -> list[TenantRecord]:
        """Return tenants with a connected mailbox, in stable order."""

    def update_tenant_tokens(self, tenant_id: str, *, access_token: str | None) -> None:
        """Persist a refreshed mailbox access token."""

    def record_mail_failure(self, tenant_id: str) -> int:
        """Increment the consecutive mail auth failure counter and return the new value."""

    def reset_mail_failures(self, tenant_id: str) -> None:
        """Clear the consecutive mail auth failure counter."""

    def disable_mailbox(self, tenant_id: str) -> None:
        """Mark the tenant mailbox as disconnected."""

    def reset_ai_usage(self, tenant_id: str, *, reset_at: datetime) -> None:
        """Zero the monthly AI usage counter."""

    def start_ai_usage_period(self, tenant_id: str, *, started_at: datetime) -> None:
        """Record the start of the usage period when none was tracked yet."""

    def increment_ai_usage(self, tenant_id: str) -> None:
        """Atomically add one to the AI usage counter."""

    def find_lead(self, tenant_id: str, email: str) -> LeadRecord | None:
        """Look a lead up by its (tenant, email) key."""

    def create_lead(self, lead: LeadRecord) -> LeadRecord:
        """Insert a lead, returning the stored copy (existing row on key conflict)."""

    def get_lead(self, lead_id: str) -> LeadRecord | None:
        """Return one lead or None."""

    def update_lead(self, lead_id: str, **changes: Any) -> LeadRecord:
        """Apply column changes to a lead and return the updated record."""

    def discard_empty_lead(self, lead_id: str) -> bool:
        """Delete a lead that has no messages on record; False when it was kept."""

    def list_open_leads(self, tenant_id: str) -> list[LeadRecord]:
        """Return leads not in a terminal stage."""

    def list_leads_in_stage(self, tenant_id: str, stage: str) -> list[LeadRecord]:
        """Return leads currently in one stage."""

    def message_exists(self, provider_message_id: str) -> bool:
        """Return True when a message with this provider id was already ingested."""

    def insert_message(self, message: MessageRecord) -> MessageRecord | None:
        """Insert a message; None when its provider id already exists."""

    def get_message(self, message_id: str) -> MessageRecord | None:
        """Return one message or None."""

    def update_message(self, message_id: str, **changes: Any) -> MessageRecord:
        """Apply column changes to a message and return the updated record."""

    def delete_message(self, message_id: str) -> bool:
        """Delete a message row; True when something was deleted."""

    def recent_messages(self, lead_id: str, *, limit: int) -> list[MessageRecord]:
        """Return the latest `limit` messages of a lead, oldest first."""

    def messages_since(self, lead_id: str, since: datetime) -> list[MessageRecord]:
        """Return messages created at or after `since`, oldest first."""

    def has_ai_reply_to(self, message_id: str) -> bool:
        """True when an outbound AI-generated message replies to `message_id`."""

    def list_pending_drafts(self, tenant_id: str) -> list[MessageRecord]:
        """Return unsent outbound drafts for a tenant, newest first."""

    def insert_quote(self, quote: QuoteRecord) -> QuoteRecord:
        """Persist a generated quote."""

    def list_quotes(self, lead_id: str) -> list[QuoteRecord]:
        """Return quotes attached to a lead."""


# ---------------------------------------------------------------------------
# SQL implementation shared by SQLite and Postgres
# ---------------------------------------------------------------------------

_TENANT_COLUMNS = [f.name for f in fields(TenantRecord)]
_LEAD_COLUMNS = [f.name for f in fields(LeadRecord)]
_MESSAGE_COLUMNS = [f.name for f in fields(MessageRecord)]
_QUOTE_COLUMNS = [
    "id", "tenant_id", "lead_id", "quote_number", "title", "items_json", "description",
    "notes", "tax_rate", "subtotal", "tax", "total", "status", "created_at",
]

_TENANT_TIME_COLUMNS = {"ai_last_reset_at"}
_TENANT_BOOL_COLUMNS = {"gmail_connected", "calendar_connected"}
_LEAD_TIME_COLUMNS = {"appointment_date", "created_at", "updated_at"}
_MESSAGE_TIME_COLUMNS = {"sent_at", "read_at", "approved_at", "created_at"}
_MESSAGE_BOOL_COLUMNS = {"is_ai_generated", "ai_approval_needed"}


def _to_db_value(column: str, value: Any, time_columns: set[str], bool_columns: set[str]) -> Any:
    if column in time_columns:
        return to_db_time(value)
    if column in bool_columns:
        return 1 if value else 0
    return value


class SqlEngineStore:
    """Dialect-neutral SQL store; subclasses provide connections and the sequence column."""

    _seq_column_ddl = ""
    _placeholder = "?"

    @contextmanager
    def _session(self) -> Iterator[Any]:  # pragma: no cover - overridden
        raise NotImplementedError
        yield

    def _sql(self, query: str) -> str:
        if self._placeholder == "?":
            return query
        return query.replace("?", self._placeholder)

    def _execute(self, conn: Any, query: str, params: tuple | list = ()) -> Any:
        return conn.execute(self._sql(query), params)

    def _ensure_schema(self) -> None:
        """Create tables/indexes when missing."""

        ddl = f"""
        CREATE TABLE IF NOT EXISTS engine_tenants (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            business_name TEXT,
            business_type TEXT,
            gmail_connected INTEGER NOT NULL DEFAULT 0,
            gmail_access_token TEXT,
            gmail_refresh_token TEXT,
            mail_failure_count INTEGER NOT NULL DEFAULT 0,
            calendar_connected INTEGER NOT NULL DEFAULT 0,
            ai_used INTEGER NOT NULL DEFAULT 0,
            ai_limit INTEGER,
            ai_last_reset_at TEXT,
            subscription_plan TEXT,
            automation_settings_json TEXT
        );
        CREATE TABLE IF NOT EXISTS engine_leads (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            email TEXT NOT NULL,
            name TEXT,
            phone TEXT,
            address TEXT,
            service_type TEXT,
            description TEXT,
            source TEXT NOT NULL DEFAULT 'email',
            stage TEXT NOT NULL,
            priority TEXT NOT NULL,
            classification TEXT,
            intent TEXT,
            appointment_date TEXT,
            appointment_notes TEXT,
            created_at TEXT,
            updated_at TEXT,
            UNIQUE (tenant_id, email)
        );
        CREATE TABLE IF NOT EXISTS engine_messages (
            {self._seq_column_ddl},
            id TEXT NOT NULL UNIQUE,
            lead_id TEXT NOT NULL,
            direction TEXT NOT NULL,
            channel TEXT NOT NULL DEFAULT 'email',
            subject TEXT,
            content TEXT NOT NULL,
            from_email TEXT,
            to_email TEXT,
            is_ai_generated INTEGER NOT NULL DEFAULT 0,
            ai_approval_needed INTEGER NOT NULL DEFAULT 0,
            ai_confidence DOUBLE PRECISION,
            classification TEXT,
            sent_at TEXT,
            read_at TEXT,
            in_reply_to_id TEXT,
            provider_message_id TEXT UNIQUE,
            provider_thread_id TEXT,
            rfc_message_id TEXT,
            rfc_references TEXT,
            approved_at TEXT,
            created_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_engine_messages_lead ON engine_messages(lead_id, seq);
        CREATE INDEX IF NOT EXISTS idx_engine_messages_reply ON engine_messages(in_reply_to_id);
        CREATE TABLE IF NOT EXISTS engine_quotes (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            lead_id TEXT NOT NULL,
            quote_number TEXT NOT NULL,
            title TEXT NOT NULL,
            items_json TEXT NOT NULL,
            description TEXT,
            notes TEXT,
            tax_rate DOUBLE PRECISION NOT NULL DEFAULT 0,
            subtotal DOUBLE PRECISION NOT NULL DEFAULT 0,
            tax DOUBLE PRECISION NOT NULL DEFAULT 0,
            total DOUBLE PRECISION NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            created_at TEXT
        )
        """
        with self._session() as conn:
            for statement in ddl.split(";"):
                if statement.strip():
                    conn.execute(statement)

    # -- tenants -------------------------------------------------------------------

    def upsert_tenant(self, tenant: TenantRecord) -> TenantRecord:
        values = [
            _to_db_value(c, getattr(tenant, c), _TENANT_TIME_COLUMNS, _TENANT_BOOL_COLUMNS)
            for c in _TENANT_COLUMNS
        ]
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in _TENANT_COLUMNS if c != "id")
        sql = (
            f"INSERT INTO engine_tenants ({', '.join(_TENANT_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _TENANT_COLUMNS)}) "
            f"ON CONFLICT (id) DO UPDATE SET {updates}"
        )
        with self._session() as conn:
            self._execute(conn, sql, values)
        return tenant

    def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        with self._session() as conn:
            row = self._execute(
                conn, "SELECT * FROM engine_tenants WHERE id = ?", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_mail_tenants(self) -> list[TenantRecord]:
        with self._session() as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM engine_tenants "
                "WHERE gmail_connected = 1 AND gmail_refresh_token IS NOT NULL ORDER BY id",
            ).fetchall()
        return [self._tenant_from_row(r) for r in rows]

    def update_tenant_tokens(self, tenant_id: str, *, access_token: str | None) -> None:
        with self._session() as conn:
            self._execute(
                conn,
                "UPDATE engine_tenants SET gmail_access_token = ? WHERE id = ?",
                (access_token, tenant_id),
            )

    def record_mail_failure(self, tenant_id: str) -> int:
        with self._session() as conn:
            self._execute(
                conn,
                "UPDATE engine_tenants SET mail_failure_count = mail_failure_count + 1 WHERE id = ?",
                (tenant_id,),
            )
            row = self._execute(
                conn, "SELECT mail_failure_count FROM engine_tenants WHERE id = ?", (tenant_id,)
            ).fetchone()
        return int(row["mail_failure_count"]) if row else 0

    def reset_mail_failures(self, tenant_id: str) -> None:
        with self._session() as conn:
            self._execute(
                conn,
                "UPDATE engine_tenants SET mail_failure_count = 0 "
                "WHERE id = ? AND mail_failure_count <> 0",
                (tenant_id,),
            )

    def disable_mailbox(self, tenant_id: str) -> None:
        with self._session() as conn:
            self._execute(
                conn, "UPDATE engine_tenants SET gmail_connected = 0 WHERE id = ?", (tenant_id,)
            )

    def reset_ai_usage(self, tenant_id: str, *, reset_at: datetime) -> None:
        with self._session() as conn:
            self._execute(
                conn,
                "UPDATE engine_tenants SET ai_used = 0, ai_last_reset_at = ? WHERE id = ?",
                (to_db_time(reset_at), tenant_id),
            )

    def start_ai_usage_period(self, tenant_id: str, *, started_at: datetime) -> None:
        with self._session() as conn:
            self._execute(
                conn,
                "UPDATE engine_tenants SET ai_last_reset_at = ? "
                "WHERE id = ? AND ai_last_reset_at IS NULL",
                (to_db_time(started_at), tenant_id),
            )

    def increment_ai_usage(self, tenant_id: str) -> None:
        with self._session() as conn:
            self._execute(
                conn, "UPDATE engine_tenants SET ai_used = ai_used + 1 WHERE id = ?", (tenant_id,)
            )

    # -- leads -----------------------------------------------------------------------

    def find_lead(self, tenant_id: str, email: str) -> LeadRecord | None:
        with self._session() as conn:
            row = self._execute(
                conn,
                "SELECT * FROM engine_leads WHERE tenant_id = ? AND email = ?",
                (tenant_id, email.strip().lower()),
            ).fetchone()
        return self._lead_from_row(row) if row else None

    def create_lead(self, lead: LeadRecord) -> LeadRecord:
        lead = replace(lead, email=lead.email.strip().lower())
        values = [
            _to_db_value(c, getattr(lead, c), _LEAD_TIME_COLUMNS, set()) for c in _LEAD_COLUMNS
        ]
        sql = (
            f"INSERT INTO engine_leads ({', '.join(_LEAD_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _LEAD_COLUMNS)}) "
            "ON CONFLICT (tenant_id, email) DO NOTHING"
        )
        with self._session() as conn:
            self._execute(conn, sql, values)
        stored = self.find_lead(lead.tenant_id, lead.email)
        return stored or lead

    def get_lead(self, lead_id: str) -> LeadRecord | None:
        with self._session() as conn:
            row = self._execute(
                conn, "SELECT * FROM engine_leads WHERE id = ?", (lead_id,)
            ).fetchone()
        return self._lead_from_row(row) if row else None

    def update_lead(self, lead_id: str, **changes: Any) -> LeadRecord:
        unknown = set(changes) - set(_LEAD_COLUMNS) - {"id"}
        if unknown or "id" in changes:
            raise ValueError(f"Unsupported lead columns: {sorted(unknown | ({'id'} & set(changes)))}")
        if changes:
            assignments = ", ".join(f"{c} = ?" for c in changes)
            values = [_to_db_value(c, v, _LEAD_TIME_COLUMNS, set()) for c, v in changes.items()]
            with self._session() as conn:
                self._execute(
                    conn, f"UPDATE engine_leads SET {assignments} WHERE id = ?", [*values, lead_id]
                )
        lead = self.get_lead(lead_id)
        if lead is None:
            raise KeyError(f"Lead not found: {lead_id}")
        return lead

    def discard_empty_lead(self, lead_id: str) -> bool:
        with self._session() as conn:
            cursor = self._execute(
                conn,
                "DELETE FROM engine_leads WHERE id = ? "
                "AND NOT EXISTS (SELECT 1 FROM engine_messages WHERE lead_id = ?)",
                (lead_id, lead_id),
            )
            deleted = cursor.rowcount
        return bool(deleted)

    def list_open_leads(self, tenant_id: str) -> list[LeadRecord]:
        terminal = sorted(TERMINAL_STAGES)
        with self._session() as conn:
            rows = self._execute(
                conn,
                f"SELECT * FROM engine_leads WHERE tenant_id = ? "
                f"AND stage NOT IN ({', '.join('?' for _ in terminal)}) ORDER BY created_at",
                (tenant_id, *terminal),
            ).fetchall()
        return [self._lead_from_row(r) for r in rows]

    def list_leads_in_stage(self, tenant_id: str, stage: str) -> list[LeadRecord]:
        with self._session() as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM engine_leads WHERE tenant_id = ? AND stage = ? ORDER BY created_at",
                (tenant_id, stage),
            ).fetchall()
        return [self._lead_from_row(r) for r in rows]

    # -- messages ------------------------------------------------------------------

    def message_exists(self, provider_message_id: str) -> bool:
        with self._session() as conn:
            row = self._execute(
                conn,
                "SELECT 1 FROM engine_messages WHERE provider_message_id = ? LIMIT 1",
                (provider_message_id,),
            ).fetchone()
        return row is not None

    def insert_message(self, message: MessageRecord) -> MessageRecord | None:
        values = [
            _to_db_value(c, getattr(message, c), _MESSAGE_TIME_COLUMNS, _MESSAGE_BOOL_COLUMNS)
            for c in _MESSAGE_COLUMNS
        ]
        sql = (
            f"INSERT INTO engine_messages ({', '.join(_MESSAGE_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _MESSAGE_COLUMNS)}) "
            "ON CONFLICT (provider_message_id) DO NOTHING"
        )
        with self._session() as conn:
            cursor = self._execute(conn, sql, values)
            inserted = cursor.rowcount
        return message if inserted else None

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._session() as conn:
            row = self._execute(
                conn, "SELECT * FROM engine_messages WHERE id = ?", (message_id,)
            ).fetchone()
        return self._message_from_row(row) if row else None

    def update_message(self, message_id: str, **changes: Any) -> MessageRecord:
        unknown = set(changes) - set(_MESSAGE_COLUMNS)
        if unknown or "id" in changes:
            raise ValueError(f"Unsupported message columns: {sorted(unknown | ({'id'} & set(changes)))}")
        if changes:
            assignments = ", ".join(f"{c} = ?" for c in changes)
            values = [
                _to_db_value(c, v, _MESSAGE_TIME_COLUMNS, _MESSAGE_BOOL_COLUMNS)
                for c, v in changes.items()
            ]
            with self._session() as conn:
                self._execute(
                    conn, f"UPDATE engine_messages SET {assignments} WHERE id = ?", [*values, message_id]
                )
        message = self.get_message(message_id)
        if message is None:
            raise KeyError(f"Message not found: {message_id}")
        return message

    def delete_message(self, message_id: str) -> bool:
        with self._session() as conn:
            cursor = self._execute(conn, "DELETE FROM engine_messages WHERE id = ?", (message_id,))
            deleted = cursor.rowcount
        return bool(deleted)

    def recent_messages(self, lead_id: str, *, limit: int) -> list[MessageRecord]:
        limit = max(1, int(limit))
        with self._session() as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM engine_messages WHERE lead_id = ? ORDER BY seq DESC LIMIT ?",
                (lead_id, limit),
            ).fetchall()
        return [self._message_from_row(r) for r in reversed(rows)]

    def messages_since(self, lead_id: str, since: datetime) -> list[MessageRecord]:
        with self._session() as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM engine_messages WHERE lead_id = ? AND created_at >= ? ORDER BY seq",
                (lead_id, to_db_time(since)),
            ).fetchall()
        return [self._message_from_row(r) for r in rows]

    def has_ai_reply_to(self, message_id: str) -> bool:
        with self._session() as conn:
            row = self._execute(
                conn,
                "SELECT 1 FROM engine_messages WHERE in_reply_to_id = ? "
                "AND direction = ? AND is_ai_generated = 1 LIMIT 1",
                (message_id, DIRECTION_OUTBOUND),
            ).fetchone()
        return row is not None

    def list_pending_drafts(self, tenant_id: str) -> list[MessageRecord]:
        with self._session() as conn:
            rows = self._execute(
                conn,
                "SELECT m.* FROM engine_messages m JOIN engine_leads l ON l.id = m.lead_id "
                "WHERE l.tenant_id = ? AND m.direction = ? AND m.sent_at IS NULL "
                "ORDER BY m.seq DESC",
                (tenant_id, DIRECTION_OUTBOUND),
            ).fetchall()
        return [self._message_from_row(r) for r in rows]

    # -- quotes ----------------------------------------------------------------------

    def insert_quote(self, quote: QuoteRecord) -> QuoteRecord:
        items_json = json.dumps(
            [
                {"description": i.description, "quantity": i.quantity, "unit_price": i.unit_price}
                for i in quote.items
            ],
            ensure_ascii=True,
        )
        values = [
            quote.id, quote.tenant_id, quote.lead_id, quote.quote_number, quote.title, items_json,
            quote.description, quote.notes, quote.tax_rate, quote.subtotal, quote.tax, quote.total,
            quote.status, to_db_time(quote.created_at),
        ]
        sql = (
            f"INSERT INTO engine_quotes ({', '.join(_QUOTE_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _QUOTE_COLUMNS)})"
        )
        with self._session() as conn:
            self._execute(conn, sql, values)
        return quote

    def list_quotes(self, lead_id: str) -> list[QuoteRecord]:
        with self._session() as conn:
            rows = self._execute(
                conn, "SELECT * FROM engine_quotes WHERE lead_id = ? ORDER BY created_at", (lead_id,)
            ).fetchall()
        return [self._quote_from_row(r) for r in rows]

    # -- row converters --------------------------------------------------------------

    @staticmethod
    def _tenant_from_row(row: Mapping[str, Any]) -> TenantRecord:
        return TenantRecord(
            id=row["id"],
            email=row["email"],
            business_name=row["business_name"],
            business_type=row["business_type"],
            gmail_connected=bool(row["gmail_connected"]),
            gmail_access_token=row["gmail_access_token"],
            gmail_refresh_token=row["gmail_refresh_token"],
            mail_failure_count=int(row["mail_failure_count"] or 0),
            calendar_connected=bool(row["calendar_connected"]),
            ai_used=int(row["ai_used"] or 0),
            ai_limit=row["ai_limit"],
            ai_last_reset_at=from_db_time(row["ai_last_reset_at"]),
            subscription_plan=row["subscription_plan"],
            automation_settings_json=row["automation_settings_json"],
        )

    @staticmethod
    def _lead_from_row(row: Mapping[str, Any]) -> LeadRecord:
        data = {c: row[c] for c in _LEAD_COLUMNS}
        for column in _LEAD_TIME_COLUMNS:
            data[column] = from_db_time(data[column])
        return LeadRecord(**data)

    @staticmethod
    def _message_from_row(row: Mapping[str, Any]) -> MessageRecord:
        data = {c: row[c] for c in _MESSAGE_COLUMNS}
        for column in _MESSAGE_TIME_COLUMNS:
            data[column] = from_db_time(data[column])
        for column in _MESSAGE_BOOL_COLUMNS:
            data[column] = bool(data[column])
        return MessageRecord(**data)

    @staticmethod
    def _quote_from_row(row: Mapping[str, Any]) -> QuoteRecord:
        items_raw = json.loads(row["items_json"] or "[]")
        return QuoteRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            lead_id=row["lead_id"],
            quote_number=row["quote_number"],
            title=row["title"],
            items=[
                QuoteItem(
                    description=i["description"],
                    quantity=float(i["quantity"]),
                    unit_price=float(i["unit_price"]),
                )
                for i in items_raw
            ],
            description=row["description"],
            notes=row["notes"],
            tax_rate=float(row["tax_rate"]),
            subtotal=float(row["subtotal"]),
            tax=float(row["tax"]),
            total=float(row["total"]),
            status=row["status"],
            created_at=from_db_time(row["created_at"]),
        )


def _sqlite_dict_row(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


class SqliteEngineStore(SqlEngineStore):
    """SQLite-backed implementation for local development and testing."""

    _seq_column_ddl = "seq INTEGER PRIMARY KEY AUTOINCREMENT"

    def __init__(self, *, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Open a short-lived connection, commit on success, always close."""

        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = _sqlite_dict_row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class PostgresEngineStore(SqlEngineStore):
    """Postgres-backed implementation used when DATABASE_URL is configured."""

    _seq_column_ddl = "seq BIGSERIAL PRIMARY KEY"
    _placeholder = "%s"

    def __init__(self, *, database_url: str) -> None:
        self.database_url = database_url
        self._ensure_schema()

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Connect with psycopg3 only when this backend is used."""

        try:
            import psycopg
            from psycopg.rows import dict_row
        except Exception as exc:  # pragma: no cover - environment dependent
            raise RuntimeError(
                "Postgres backend requires psycopg. Add `psycopg[binary]` dependency."
            ) from exc
        with psycopg.connect(self.database_url, prepare_threshold=0, row_factory=dict_row) as conn:
            yield conn


def create_engine_store(*, database_url: str | None, sqlite_path: str) -> EngineStore:
    """Factory selecting Postgres when DATABASE_URL is configured, otherwise SQLite."""

    if database_url:
        return PostgresEngineStore(database_url=database_url)
    return SqliteEngineStore(db_path=sqlite_path)
