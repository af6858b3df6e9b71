from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from inbox_engine.services.calendar_service import MAX_SLOTS, build_available_slots, format_slot

NY = ZoneInfo("America/New_York")


def test_slots_skip_past_hours_and_busy_ranges() -> None:
    now = datetime(2026, 3, 9, 10, 30, tzinfo=NY)
    busy = [(datetime(2026, 3, 9, 13, 0, tzinfo=NY), datetime(2026, 3, 9, 14, 0, tzinfo=NY))]

    slots = build_available_slots(busy=busy, now=now, timezone="America/New_York")

    assert len(slots) == MAX_SLOTS
    assert [(s.start.day, s.start.hour) for s in slots] == [
        (9, 11), (9, 12), (9, 14), (9, 15), (9, 16),
        (10, 9), (10, 10), (10, 11), (10, 12), (10, 13),
    ]
    assert slots[0].end.hour == 12


def test_slots_skip_weekends() -> None:
    saturday = datetime(2026, 3, 14, 10, 0, tzinfo=NY)

    slots = build_available_slots(busy=[], now=saturday, timezone="America/New_York", days_ahead=3)

    assert slots[0].start == datetime(2026, 3, 16, 9, 0, tzinfo=NY)
    assert all(s.start.weekday() < 5 for s in slots)


def test_slot_duration_blocks_overlapping_busy_time() -> None:
    now = datetime(2026, 3, 9, 8, 0, tzinfo=NY)
    busy = [(datetime(2026, 3, 9, 10, 30, tzinfo=NY), datetime(2026, 3, 9, 11, 0, tzinfo=NY))]

    slots = build_available_slots(
        busy=busy, now=now, timezone="America/New_York", duration_minutes=90, days_ahead=1
    )

    assert [s.start.hour for s in slots] == [9, 11, 12, 13, 14, 15, 16]


def test_format_slot() -> None:
    assert format_slot(datetime(2026, 3, 10, 14, 0, tzinfo=NY)) == "Tuesday, March 10 at 2:00 PM"
    assert format_slot(datetime(2026, 3, 10, 0, 30, tzinfo=NY)) == "Tuesday, March 10 at 12:30 AM"
