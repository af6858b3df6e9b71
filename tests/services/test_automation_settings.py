from __future__ import annotations

import json

from inbox_engine.schemas import AutomationSettings, parse_automation_settings


def test_missing_settings_use_defaults() -> None:
    settings = parse_automation_settings(None)

    assert settings == AutomationSettings()
    assert settings.auto_respond_emails is True
    assert settings.ai_auto_approve is False
    assert settings.working_days == ("mon", "tue", "wed", "thu", "fri")
    assert settings.follow_up_delay_days == 3
    assert settings.reminder_hours_before == 24


def test_camel_case_and_snake_case_keys_are_accepted() -> None:
    camel = parse_automation_settings(json.dumps({"aiAutoApprove": True, "workingHoursStart": "8:30"}))
    snake = parse_automation_settings({"ai_auto_approve": True, "working_days": ["Monday", "sat", "mon"]})

    assert camel.ai_auto_approve is True
    assert camel.working_hours_start == "08:30"
    assert snake.ai_auto_approve is True
    assert snake.working_days == ("mon", "sat")


def test_invalid_fields_fall_back_individually() -> None:
    raw = json.dumps(
        {
            "workingHoursStart": "25:00",
            "timezone": "Mars/Olympus_Mons",
            "followUpDelayDays": -4,
            "autoFollowUp": True,
            "someFutureFlag": 1,
        }
    )

    settings = parse_automation_settings(raw)

    assert settings.working_hours_start == "09:00"
    assert settings.timezone == "America/New_York"
    assert settings.follow_up_delay_days == 3
    assert settings.auto_follow_up is True


def test_unreadable_settings_use_defaults() -> None:
    assert parse_automation_settings("{not json") == AutomationSettings()
    assert parse_automation_settings("[1, 2]") == AutomationSettings()
