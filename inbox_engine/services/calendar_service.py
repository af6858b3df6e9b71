"""Google Calendar adapter: free appointment slots and event creation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Protocol
from zoneinfo import ZoneInfo

from inbox_engine.services.engine_store import from_db_time
from inbox_engine.services.gmail_service import GMAIL_SCOPES, TOKEN_URI, MailAccount

logger = logging.getLogger(__name__)

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar.events"]
SLOT_DAY_START_HOUR = 9
SLOT_DAY_END_HOUR = 17
MAX_SLOTS = 10


class CalendarError(RuntimeError):
    """Calendar provider failure (auth or transport)."""


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime

    @property
    def formatted(self) -> str:
        return format_slot(self.start)


class CalendarProvider(Protocol):
    def list_available_slots(
        self,
        account: MailAccount,
        *,
        duration_minutes: int,
        days_ahead: int,
        timezone: str,
    ) -> list[TimeSlot]:
        """Return up to ten free hourly slots."""

    def create_event(
        self,
        account: MailAccount,
        *,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        timezone: str,
        attendee_email: str | None = None,
    ) -> str:
        """Create an event and return its provider id."""


def format_slot(start: datetime) -> str:
    """Render a slot like 'Monday, March 10 at 10:00 AM'."""

    hour12 = start.hour % 12 or 12
    meridiem = "AM" if start.hour < 12 else "PM"
    return f"{start:%A}, {start:%B} {start.day} at {hour12}:{start:%M} {meridiem}"


def _overlaps(start: datetime, end: datetime, busy_start: datetime, busy_end: datetime) -> bool:
    return start < busy_end and end > busy_start


def build_available_slots(
    *,
    busy: Iterable[tuple[datetime, datetime]],
    now: datetime,
    timezone: str,
    duration_minutes: int = 60,
    days_ahead: int = 14,
    limit: int = MAX_SLOTS,
) -> list[TimeSlot]:
    """Hourly weekday slots between 09:00 and 17:00 local time that avoid busy ranges."""

    tz = ZoneInfo(timezone)
    local_now = now.astimezone(tz)
    busy_ranges = list(busy)
    duration = timedelta(minutes=max(1, duration_minutes))
    slots: list[TimeSlot] = []
    for offset in range(max(0, days_ahead)):
        day: date = local_now.date() + timedelta(days=offset)
        if day.weekday() >= 5:
            continue
        for hour in range(SLOT_DAY_START_HOUR, SLOT_DAY_END_HOUR):
            start = datetime.combine(day, time(hour=hour), tzinfo=tz)
            if start < local_now:
                continue
            end = start + duration
            if any(_overlaps(start, end, b_start, b_end) for b_start, b_end in busy_ranges):
                continue
            slots.append(TimeSlot(start=start, end=end))
            if len(slots) >= limit:
                return slots
    return slots


def _event_bound(value: dict[str, Any], tz: ZoneInfo) -> datetime | None:
    if value.get("dateTime"):
        return from_db_time(value["dateTime"])
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min, tzinfo=tz)
    return None


class GoogleCalendarService:
    """Calendar v3 client reusing the tenant's Google OAuth tokens."""

    def __init__(self, *, client_id: str | None, client_secret: str | None) -> None:
        self._client_id = (client_id or "").strip()
        self._client_secret = (client_secret or "").strip()

    def _service(self, account: MailAccount):  # noqa: ANN202
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        creds = Credentials(
            token=account.access_token,
            refresh_token=account.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=GMAIL_SCOPES + CALENDAR_SCOPES,
        )
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    def _execute(self, request: Any, *, action: str) -> Any:
        from google.auth.exceptions import GoogleAuthError
        from googleapiclient.errors import HttpError

        try:
            return request.execute()
        except (HttpError, GoogleAuthError, OSError) as exc:
            raise CalendarError(f"Calendar {action} failed: {exc}") from exc

    def list_available_slots(
        self,
        account: MailAccount,
        *,
        duration_minutes: int,
        days_ahead: int,
        timezone: str,
    ) -> list[TimeSlot]:
        tz = ZoneInfo(timezone)
        now = datetime.now(tz=tz)
        service = self._service(account)
        response = self._execute(
            service.events().list(
                calendarId="primary",
                timeMin=now.isoformat(),
                timeMax=(now + timedelta(days=days_ahead)).isoformat(),
                singleEvents=True,
                orderBy="startTime",
            ),
            action="events.list",
        )
        busy: list[tuple[datetime, datetime]] = []
        for event in response.get("items", []):
            start = _event_bound(event.get("start", {}), tz)
            end = _event_bound(event.get("end", {}), tz)
            if start and end:
                busy.append((start, end))
        return build_available_slots(
            busy=busy,
            now=now,
            timezone=timezone,
            duration_minutes=duration_minutes,
            days_ahead=days_ahead,
        )

    def create_event(
        self,
        account: MailAccount,
        *,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        timezone: str,
        attendee_email: str | None = None,
    ) -> str:
        event = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": timezone},
            "attendees": [{"email": attendee_email}] if attendee_email else [],
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
        }
        service = self._service(account)
        created = self._execute(
            service.events().insert(calendarId="primary", body=event, sendUpdates="all"),
            action="events.insert",
        )
        logger.info("Created calendar event %s for tenant %s", created.get("id"), account.tenant_id)
        return str(created.get("id", ""))
