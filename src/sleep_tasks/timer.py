"""Task stopwatch accounting: pure logic, no I/O.

All time values are integer milliseconds. The clock is always passed in as
``now_ms`` so every function here is deterministic under test.
"""

from __future__ import annotations

from dataclasses import replace

from .model import Task

MS_PER_MINUTE = 60_000


def minutes_ceil(ms: int) -> int:
    """Milliseconds -> whole minutes, rounded up so any worked second counts."""
    if ms <= 0:
        return 0
    return -(-ms // MS_PER_MINUTE)


def live_elapsed(task: Task, now_ms: int) -> int:
    """Accumulated time plus the running segment, if any.

    A start time in the future (clock skew between clients) contributes zero.
    """
    acc = task.timer_accumulated_ms
    if task.timer_running and task.timer_started_at_ms is not None:
        return acc + max(0, now_ms - task.timer_started_at_ms)
    return acc


def stop(task: Task, now_ms: int) -> Task:
    """Fold the running segment into the accumulator and stop the timer.

    Returns the task unchanged when it is not running. Stopping refreshes
    ``actual_min`` from the accumulator.
    """
    if not task.timer_running or task.timer_started_at_ms is None:
        return task

    acc = live_elapsed(task, now_ms)
    return replace(
        task,
        timer_running=False,
        timer_started_at_ms=None,
        timer_accumulated_ms=acc,
        actual_min=minutes_ceil(acc),
    )


def derive_actual_min(task: Task) -> int:
    """Actual minutes for a task being marked done.

    Existing value first, then the stopwatch, then the plan.
    """
    if task.actual_min is not None:
        return task.actual_min
    if task.timer_accumulated_ms > 0:
        return minutes_ceil(task.timer_accumulated_ms)
    return task.planned_min


def format_duration_ms(ms: int) -> str:
    """Format milliseconds as 'HH:MM:SS', negative values get a leading '-'."""
    sign = "-" if ms < 0 else ""
    total_seconds = abs(ms) // 1000
    hours, rem = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
