"""Per-lead runaway-conversation guard."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from inbox_engine.services.engine_store import DIRECTION_OUTBOUND, EngineStore, MessageRecord

BREAKER_WINDOW = timedelta(minutes=60)
MAX_OUTBOUND_IN_WINDOW = 3
ALTERNATION_LENGTH = 4


@dataclass(frozen=True)
class BreakerVerdict:
    tripped: bool
    reason: str | None
    outbound_count: int
    window_size: int


def is_strictly_alternating(directions: Sequence[str]) -> bool:
    if len(directions) < ALTERNATION_LENGTH:
        return False
    tail = directions[-ALTERNATION_LENGTH:]
    return all(a != b for a, b in zip(tail, tail[1:]))


def evaluate_breaker(window: Sequence[MessageRecord]) -> BreakerVerdict:
    """`window` holds the lead's messages of the trailing hour, oldest first."""

    outbound = sum(1 for m in window if m.direction == DIRECTION_OUTBOUND)
    if outbound >= MAX_OUTBOUND_IN_WINDOW:
        return BreakerVerdict(True, "outbound_limit", outbound, len(window))
    if is_strictly_alternating([m.direction for m in window]):
        return BreakerVerdict(True, "alternating_pattern", outbound, len(window))
    return BreakerVerdict(False, None, outbound, len(window))


class CircuitBreaker:
    def __init__(self, *, store: EngineStore) -> None:
        self._store = store

    def check(self, lead_id: str, now: datetime) -> BreakerVerdict:
        return evaluate_breaker(self._store.messages_since(lead_id, now - BREAKER_WINDOW))
