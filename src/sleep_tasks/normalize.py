"""Untrusted payload -> SharedState.

This is the only place that accepts loosely-typed documents (local cache,
HTTP responses, push messages). Every field is defaulted independently, so
any input yields a well-typed state and normalizing twice changes nothing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import Any

from . import timer
from .model import (
    ACTUAL_MIN_RANGE,
    DEFAULT_BEDTIME,
    PLANNED_MIN_RANGE,
    SharedState,
    Task,
    clamp_int,
    iso_from_ms,
    new_id,
    now_ms as wall_now_ms,
)

logger = logging.getLogger("sleep_tasks.normalize")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _is_iso(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def normalize_task(raw: dict, now: int) -> Task:
    """Default one task entry field by field."""
    stamp = iso_from_ms(now)
    task_id = raw.get("id")
    title = raw.get("title")
    actual = raw.get("actualMin")
    started = raw.get("timerStartedAtMs")
    acc = raw.get("timerAccumulatedMs")

    return Task(
        id=task_id if isinstance(task_id, str) and task_id else new_id(),
        title=title if isinstance(title, str) else "",
        planned_min=clamp_int(raw.get("plannedMin"), *PLANNED_MIN_RANGE),
        actual_min=None if actual is None else clamp_int(actual, *ACTUAL_MIN_RANGE),
        done=bool(raw.get("done")),
        created_at=raw["createdAt"] if _is_iso(raw.get("createdAt")) else stamp,
        updated_at=raw["updatedAt"] if _is_iso(raw.get("updatedAt")) else stamp,
        timer_running=bool(raw.get("timerRunning")),
        timer_started_at_ms=int(started) if _is_number(started) else None,
        timer_accumulated_ms=max(0, int(acc)) if _is_number(acc) else 0,
    )


def _enforce_task_invariants(tasks: list[Task], now: int) -> list[Task]:
    """Repair cross-field and cross-task rules a foreign document may break.

    - running needs a start time, a stopped task has none
    - a done task is never running
    - at most one running task; later ones are stopped at ``now``
    - a done task always has actual minutes
    """
    result = []
    seen_running = False
    for t in tasks:
        if t.timer_running and t.timer_started_at_ms is None:
            t = replace(t, timer_running=False)
        elif not t.timer_running and t.timer_started_at_ms is not None:
            t = replace(t, timer_started_at_ms=None)

        if t.timer_running and (t.done or seen_running):
            logger.debug(f"Stopping timer on task {t.id[:8]} while normalizing")
            t = timer.stop(t, now)
        seen_running = seen_running or t.timer_running

        if t.done and t.actual_min is None:
            t = replace(t, actual_min=timer.derive_actual_min(t))
        result.append(t)
    return result


def normalize_shared_state(payload: Any, now_ms: int | None = None) -> SharedState:
    """Convert an arbitrary value into a well-typed SharedState.

    Args:
        payload: dict from JSON, an existing SharedState, or anything else.
        now_ms: clock used for defaulted stamps; wall clock when omitted.
    """
    now = wall_now_ms() if now_ms is None else now_ms
    if isinstance(payload, SharedState):
        payload = payload.to_dict()
    base = payload if isinstance(payload, dict) else {}

    bedtime = base.get("bedtime")
    raw_tasks = base.get("tasks")
    updated_at = base.get("updatedAt")

    tasks = [
        normalize_task(entry, now)
        for entry in (raw_tasks if isinstance(raw_tasks, list) else [])
        if isinstance(entry, dict)
    ]
    tasks = [t for t in tasks if t.title.strip()]

    seen_ids = set()
    for i, t in enumerate(tasks):
        if t.id in seen_ids:
            tasks[i] = t = replace(t, id=new_id())
        seen_ids.add(t.id)

    return SharedState(
        bedtime=bedtime if isinstance(bedtime, str) else DEFAULT_BEDTIME,
        tasks=tuple(_enforce_task_invariants(tasks, now)),
        updated_at=int(updated_at) if _is_number(updated_at) else now,
    )
