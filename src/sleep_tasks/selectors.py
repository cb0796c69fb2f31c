"""Read-only planner figures derived from the shared state (display only)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from .model import Task

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")

# Bedtime must fall strictly between these (minutes from midnight)
EARLIEST_BEDTIME_MIN = 14 * 60
LATEST_BEDTIME_MIN = 23 * 60 + 59


@dataclass
class Sums:
    planned_not_done_min: int
    actual_done_min: int
    total_work_min: int


def parse_time_to_minutes(value) -> int | None:
    """'HH:MM' -> minutes from midnight, None if malformed."""
    if not isinstance(value, str):
        return None
    m = _HHMM.match(value)
    if not m:
        return None
    hh, mm = int(m.group(1)), int(m.group(2))
    if hh > 23 or mm > 59:
        return None
    return hh * 60 + mm


def is_bedtime_valid(value) -> bool:
    mins = parse_time_to_minutes(value)
    if mins is None:
        return False
    return EARLIEST_BEDTIME_MIN < mins < LATEST_BEDTIME_MIN


def bedtime_minutes(value) -> int | None:
    return parse_time_to_minutes(value) if is_bedtime_valid(value) else None


def get_sums(tasks: Iterable[Task]) -> Sums:
    planned_not_done = 0
    actual_done = 0
    for t in tasks:
        if t.done:
            actual_done += t.actual_min or 0
        else:
            planned_not_done += t.planned_min
    return Sums(
        planned_not_done_min=planned_not_done,
        actual_done_min=actual_done,
        total_work_min=planned_not_done,
    )


def bedtime_at_ms(minutes: int | None, now: datetime) -> int | None:
    """Epoch ms of today's bedtime in ``now``'s timezone."""
    if minutes is None:
        return None
    bed = now.replace(hour=minutes // 60, minute=minutes % 60, second=0, microsecond=0)
    return int(bed.timestamp() * 1000)


def time_until_bed_ms(minutes: int | None, now: datetime) -> int | None:
    bed_ms = bedtime_at_ms(minutes, now)
    if bed_ms is None:
        return None
    return bed_ms - int(now.timestamp() * 1000)


def buffer_ms(until_bed_ms: int | None, total_work_min: int) -> int | None:
    """Slack left before bedtime once all planned work is done (negative = late)."""
    if until_bed_ms is None:
        return None
    return until_bed_ms - total_work_min * 60_000


def completion_at_ms(now_ms: int, total_work_min: int) -> int:
    return now_ms + total_work_min * 60_000


def progress_pct(until_bed_ms: int | None, total_work_min: int) -> int | None:
    """Share of the remaining evening taken by planned work, capped at 150%."""
    if until_bed_ms is None:
        return None
    denom = max(1, until_bed_ms)
    busy = (total_work_min * 60_000) / denom
    return round(max(0.0, min(1.5, busy)) * 100)


def has_done_without_actual(tasks: Iterable[Task]) -> bool:
    return any(t.done and t.actual_min is None for t in tasks)
