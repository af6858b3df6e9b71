"""Centralized runtime settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class Settings:
    """Engine settings used across the API, the schedulers, and the collaborator adapters."""

    llmod_api_key: str | None
    base_url: str | None
    chat_model: str
    chat_max_output_tokens: int
    database_url: str | None
    engine_sqlite_path: str
    gmail_client_id: str | None
    gmail_client_secret: str | None
    engine_enabled: bool
    poll_interval_seconds: int
    follow_up_interval_seconds: int
    reminder_interval_seconds: int
    max_unread_per_poll: int
    mail_max_auth_failures: int
    calendar_days_ahead: int
    engine_trigger_secret: str | None


def load_settings() -> Settings:
    """Load settings from environment with safe defaults for local development."""

    def parse_bool(value: str | None, default: bool) -> bool:
        if value is None:
            return default
        lowered = value.strip().lower()
        return lowered in {"1", "true", "yes", "on"}

    def parse_int(value: str | None, default: int, minimum: int = 1) -> int:
        if value is None or value.strip() == "":
            return default
        try:
            return max(minimum, int(value))
        except ValueError:
            return default

    return Settings(
        llmod_api_key=os.getenv("LLMOD_API_KEY"),
        base_url=os.getenv("BASE_URL"),
        chat_model=os.getenv("CHAT_MODEL", "RPRTHPB-gpt-5-mini"),
        chat_max_output_tokens=parse_int(os.getenv("CHAT_MAX_OUTPUT_TOKENS"), 700),
        database_url=os.getenv("DATABASE_URL"),
        engine_sqlite_path=os.getenv("ENGINE_SQLITE_PATH", "data/inbox_engine.db"),
        gmail_client_id=os.getenv("GMAIL_CLIENT_ID"),
        gmail_client_secret=os.getenv("GMAIL_CLIENT_SECRET"),
        engine_enabled=parse_bool(os.getenv("ENGINE_ENABLED"), True),
        poll_interval_seconds=parse_int(os.getenv("POLL_INTERVAL_SECONDS"), 60),
        follow_up_interval_seconds=parse_int(os.getenv("FOLLOW_UP_INTERVAL_SECONDS"), 3600),
        reminder_interval_seconds=parse_int(os.getenv("REMINDER_INTERVAL_SECONDS"), 3600),
        max_unread_per_poll=parse_int(os.getenv("MAX_UNREAD_PER_POLL"), 10),
        mail_max_auth_failures=parse_int(os.getenv("MAIL_MAX_AUTH_FAILURES"), 5),
        calendar_days_ahead=parse_int(os.getenv("CALENDAR_DAYS_AHEAD"), 14),
        engine_trigger_secret=os.getenv("ENGINE_TRIGGER_SECRET") or None,
    )
