"""Gmail transport used by the engine to read, mark and send tenant mail.

Every call is scoped to one tenant mailbox (`MailAccount`). Authorization failures
surface as `MailAuthError` so the caller can refresh once and retry; every other
provider failure surfaces as `MailTransportError`.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from email.utils import make_msgid, parseaddr
from typing import Any, Callable, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
]
TOKEN_URI = "https://oauth2.googleapis.com/token"


class MailAuthError(RuntimeError):
    """The mailbox credentials were rejected (revoked or expired grant)."""


class MailTransportError(RuntimeError):
    """Transient mail provider failure; the operation can be retried on the next run."""


@dataclass
class MailAccount:
    """Credentials of one tenant mailbox."""

    tenant_id: str
    email: str
    refresh_token: str
    access_token: str | None = None


@dataclass(frozen=True)
class InboundEmail:
    """Standardized inbound email representation."""

    id: str
    thread_id: str | None
    sender: str
    recipient: str
    subject: str
    body: str
    snippet: str = ""
    date: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    labels: tuple[str, ...] = ()

    @property
    def sender_email(self) -> str:
        return parseaddr(self.sender)[1].strip().lower()

    @property
    def sender_name(self) -> str | None:
        name = parseaddr(self.sender)[0].strip().strip('"')
        return name or None

    @property
    def message_id_header(self) -> str | None:
        return self.header("Message-ID")

    @property
    def references(self) -> str | None:
        return self.header("References")

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""

        value = self.headers.get(name.lower())
        if value is None:
            return None
        return value.strip() or None


@dataclass
class SentMessage:
    """Identifiers of a message accepted by the provider."""

    provider_message_id: str
    thread_id: str | None
    rfc_message_id: str


class MailTransport(Protocol):
    """Mail provider contract consumed by the engine."""

    def list_unread(self, account: MailAccount, *, max_results: int) -> list[str]:
        """Return provider ids of unread inbox messages."""

    def get_message(self, account: MailAccount, message_id: str) -> InboundEmail:
        """Fetch a full message."""

    def mark_read(self, account: MailAccount, message_id: str) -> None:
        """Remove the unread marker."""

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
        """Send a plain-text message, threaded when headers are given."""

    def refresh(self, account: MailAccount) -> str:
        """Exchange the refresh token for a new access token."""


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _b64decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _decode_gmail_body(payload: dict[str, Any]) -> str:
    """Extract body text from a Gmail API payload, preferring text/plain parts."""

    if not payload:
        return ""
    data = payload.get("body", {}).get("data")
    if data:
        return _b64decode(data)
    parts = payload.get("parts", [])
    for mime_type in ("text/plain", "text/html"):
        for part in parts:
            if part.get("mimeType") == mime_type:
                part_data = part.get("body", {}).get("data")
                if part_data:
                    return _b64decode(part_data)
    for part in parts:
        if part.get("mimeType", "").startswith("multipart/"):
            nested = _decode_gmail_body(part)
            if nested:
                return nested
    return ""


def _gmail_headers(payload: dict[str, Any]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for h in payload.get("headers", []):
        name = (h.get("name") or "").lower()
        if name and name not in headers:
            headers[name] = h.get("value", "")
    return headers


def message_from_gmail(msg: dict[str, Any]) -> InboundEmail:
    """Convert a `users.messages.get(format=full)` response."""

    payload = msg.get("payload", {})
    headers = _gmail_headers(payload)
    return InboundEmail(
        id=msg.get("id", ""),
        thread_id=msg.get("threadId") or None,
        sender=headers.get("from", ""),
        recipient=headers.get("to", ""),
        subject=headers.get("subject", ""),
        body=_decode_gmail_body(payload) or (msg.get("snippet") or ""),
        snippet=(msg.get("snippet") or "")[:200],
        date=str(msg.get("internalDate", "")),
        headers=headers,
        labels=tuple(msg.get("labelIds", [])),
    )


def build_mime(
    *,
    sender: str,
    to: str,
    subject: str,
    body: str,
    in_reply_to: str | None = None,
    references: str | None = None,
) -> tuple[str, str]:
    """Return (base64url raw message, generated RFC Message-ID)."""

    domain = sender.rsplit("@", 1)[-1] if "@" in sender else None
    rfc_message_id = make_msgid(domain=domain)
    mime = MIMEText(body, "plain", "utf-8")
    mime["From"] = sender
    mime["To"] = to
    mime["Subject"] = subject
    mime["Message-ID"] = rfc_message_id
    if in_reply_to:
        mime["In-Reply-To"] = in_reply_to
    if references:
        mime["References"] = references
    raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii").rstrip("=")
    return raw, rfc_message_id


# ---------------------------------------------------------------------------
# Gmail v1 implementation
# ---------------------------------------------------------------------------


class GmailTransport:
    """Gmail v1 API client using per-tenant OAuth2 tokens (headless, no browser)."""

    def __init__(self, *, client_id: str | None, client_secret: str | None) -> None:
        self._client_id = (client_id or "").strip()
        self._client_secret = (client_secret or "").strip()

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def _credentials(self, account: MailAccount):  # noqa: ANN202
        from google.oauth2.credentials import Credentials

        return Credentials(
            token=account.access_token,
            refresh_token=account.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=GMAIL_SCOPES,
        )

    def _service(self, account: MailAccount):  # noqa: ANN202
        from googleapiclient.discovery import build

        if not self.is_configured:
            raise MailTransportError("Gmail client id/secret are not configured")
        return build("gmail", "v1", credentials=self._credentials(account), cache_discovery=False)

    def _execute(self, request: Any, *, action: str) -> Any:
        """Execute a Google API request, translating provider errors."""

        from google.auth.exceptions import RefreshError
        from googleapiclient.errors import HttpError

        try:
            return request.execute()
        except RefreshError as exc:
            raise MailAuthError(f"Gmail {action} rejected credentials: {exc}") from exc
        except HttpError as exc:
            status = exc.resp.status if exc.resp is not None else None
            if status in (401, 403) and "insufficient" not in str(exc).lower():
                raise MailAuthError(f"Gmail {action} unauthorized ({status})") from exc
            raise MailTransportError(f"Gmail {action} failed ({status}): {exc}") from exc
        except OSError as exc:
            raise MailTransportError(f"Gmail {action} network error: {exc}") from exc

    def list_unread(self, account: MailAccount, *, max_results: int) -> list[str]:
        service = self._service(account)
        result = self._execute(
            service.users()
            .messages()
            .list(userId="me", q="is:unread in:inbox", maxResults=max_results),
            action="list",
        )
        return [m["id"] for m in result.get("messages", []) if m.get("id")]

    def get_message(self, account: MailAccount, message_id: str) -> InboundEmail:
        service = self._service(account)
        msg = self._execute(
            service.users().messages().get(userId="me", id=message_id, format="full"),
            action="get",
        )
        return message_from_gmail(msg)

    def mark_read(self, account: MailAccount, message_id: str) -> None:
        service = self._service(account)
        self._execute(
            service.users()
            .messages()
            .modify(userId="me", id=message_id, body={"removeLabelIds": ["UNREAD"]}),
            action="modify",
        )

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
        raw, rfc_message_id = build_mime(
            sender=account.email,
            to=to,
            subject=subject,
            body=body,
            in_reply_to=in_reply_to,
            references=references,
        )
        send_body: dict[str, Any] = {"raw": raw}
        if thread_id:
            send_body["threadId"] = thread_id
        service = self._service(account)
        result = self._execute(
            service.users().messages().send(userId="me", body=send_body),
            action="send",
        )
        return SentMessage(
            provider_message_id=str(result.get("id", "")),
            thread_id=result.get("threadId") or thread_id,
            rfc_message_id=rfc_message_id,
        )

    def refresh(self, account: MailAccount) -> str:
        from google.auth.exceptions import RefreshError, TransportError
        from google.auth.transport.requests import Request

        creds = self._credentials(account)
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            raise MailAuthError(f"Gmail token refresh rejected: {exc}") from exc
        except TransportError as exc:
            raise MailTransportError(f"Gmail token refresh failed: {exc}") from exc
        if not creds.token:
            raise MailAuthError("Gmail token refresh returned no access token")
        logger.info("Refreshed Gmail access token for tenant %s", account.tenant_id)
        return creds.token


# ---------------------------------------------------------------------------
# Account-bound mailbox with one refresh-and-retry on auth failure
# ---------------------------------------------------------------------------


class Mailbox:
    """Transport bound to one tenant account.

    On `MailAuthError` the access token is refreshed once and the call retried;
    a second auth failure propagates to the caller.
    """

    max_attempts = 2

    def __init__(
        self,
        transport: MailTransport,
        account: MailAccount,
        *,
        on_token_refresh: Callable[[str], None] | None = None,
    ) -> None:
        self.transport = transport
        self.account = account
        self._on_token_refresh = on_token_refresh
        self.successful_calls = 0

    def _call(self, fn: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = fn()
            except MailAuthError:
                if attempt >= self.max_attempts:
                    raise
                logger.info("Gmail auth failed for tenant %s, refreshing token", self.account.tenant_id)
                token = self.transport.refresh(self.account)
                self.account.access_token = token
                if self._on_token_refresh is not None:
                    self._on_token_refresh(token)
                continue
            self.successful_calls += 1
            return result
        raise MailAuthError("unreachable")  # pragma: no cover

    def list_unread(self, *, max_results: int) -> list[str]:
        return self._call(lambda: self.transport.list_unread(self.account, max_results=max_results))

    def get_message(self, message_id: str) -> InboundEmail:
        return self._call(lambda: self.transport.get_message(self.account, message_id))

    def mark_read(self, message_id: str) -> None:
        self._call(lambda: self.transport.mark_read(self.account, message_id))

    def send(
        self,
        *,
        to: str,
        subject: str,
        body: str,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
        references: str | None = None,
    ) -> SentMessage:
        return self._call(
            lambda: self.transport.send(
                self.account,
                to=to,
                subject=subject,
                body=body,
                thread_id=thread_id,
                in_reply_to=in_reply_to,
                references=references,
            )
        )
