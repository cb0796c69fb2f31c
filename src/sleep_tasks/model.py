"""Task and shared-state value types.

All timestamps that take part in timer arithmetic or versioning are integer
epoch milliseconds. Task creation/update stamps are ISO-8601 strings, which is
what the wire format carries.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

DEFAULT_BEDTIME = "22:30"
PLANNED_MIN_RANGE = (1, 10_000)
ACTUAL_MIN_RANGE = (0, 10_000)

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def clamp_int(value, lo: int, hi: int) -> int:
    """Coerce anything to an int inside [lo, hi]; unparseable input becomes lo."""
    if isinstance(value, bool):
        return lo
    if isinstance(value, int):
        n = value
    elif isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return lo
        n = int(value)
    elif isinstance(value, str):
        # Leading integer only, "25min" -> 25
        m = _LEADING_INT.match(value)
        if not m:
            return lo
        n = int(m.group(1))
    else:
        return lo
    return max(lo, min(hi, n))


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    planned_min: int
    actual_min: int | None = None
    done: bool = False
    created_at: str = ""
    updated_at: str = ""
    timer_running: bool = False
    timer_started_at_ms: int | None = None
    timer_accumulated_ms: int = 0

    def to_dict(self) -> dict:
        """CamelCase dict for JSON, cache and API export."""
        return {
            "id": self.id,
            "title": self.title,
            "plannedMin": self.planned_min,
            "actualMin": self.actual_min,
            "done": self.done,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "timerRunning": self.timer_running,
            "timerStartedAtMs": self.timer_started_at_ms,
            "timerAccumulatedMs": self.timer_accumulated_ms,
        }


@dataclass(frozen=True)
class SharedState:
    bedtime: str = DEFAULT_BEDTIME
    tasks: tuple[Task, ...] = field(default_factory=tuple)
    updated_at: int = 0

    def to_dict(self) -> dict:
        return {
            "bedtime": self.bedtime,
            "tasks": [t.to_dict() for t in self.tasks],
            "updatedAt": self.updated_at,
        }

    def index(self) -> dict[str, int]:
        """Task id -> position in the ordered task list."""
        return {t.id: i for i, t in enumerate(self.tasks)}

    def get(self, task_id: str) -> Task | None:
        pos = self.index().get(task_id)
        return None if pos is None else self.tasks[pos]

    def running_task(self) -> Task | None:
        for t in self.tasks:
            if t.timer_running:
                return t
        return None

    def with_tasks(self, tasks, updated_at: int) -> SharedState:
        return replace(self, tasks=tuple(tasks), updated_at=updated_at)


DEFAULT_STATE = SharedState()


def new_task(title: str, planned_min: int = 25, at_ms: int | None = None) -> Task:
    """Build a fresh task with a new id and creation stamps."""
    stamp = iso_from_ms(now_ms() if at_ms is None else at_ms)
    return Task(
        id=new_id(),
        title=title.strip(),
        planned_min=clamp_int(planned_min, *PLANNED_MIN_RANGE),
        created_at=stamp,
        updated_at=stamp,
    )
