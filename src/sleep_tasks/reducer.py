"""Planner state machine: ``reduce(state, action) -> state``.

Every mutation of the shared document goes through here. The function is
total and side-effect free: unknown actions and actions naming a missing
task return the state unchanged. Local mutations stamp ``updated_at`` with a
value strictly greater than the previous stamp, which is what the sync
protocol compares against the last known server version.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable

from . import timer
from .model import (
    ACTUAL_MIN_RANGE,
    DEFAULT_BEDTIME,
    PLANNED_MIN_RANGE,
    SharedState,
    Task,
    clamp_int,
    iso_from_ms,
    now_ms,
)
from .normalize import normalize_shared_state

Clock = Callable[[], int]


# ---- Actions ----

@dataclass(frozen=True)
class Init:
    payload: Any


@dataclass(frozen=True)
class SetBedtime:
    bedtime: str


@dataclass(frozen=True)
class CreateTask:
    task: Task


@dataclass(frozen=True)
class UpdateTask:
    task: Task


@dataclass(frozen=True)
class DeleteTask:
    id: str


@dataclass(frozen=True)
class ToggleDone:
    id: str
    done: bool
    now_ms: int


@dataclass(frozen=True)
class StartTimer:
    id: str
    now_ms: int


@dataclass(frozen=True)
class StopTimer:
    id: str
    now_ms: int


@dataclass(frozen=True)
class ResetAll:
    pass


# ---- Helpers ----

def _stamp(state: SharedState, clock: Clock) -> int:
    return max(clock(), state.updated_at + 1)


def _commit(state: SharedState, tasks: list[Task], clock: Clock) -> SharedState:
    """Stamp and return the new task list, or the old state if nothing changed."""
    if tuple(tasks) == state.tasks:
        return state
    return state.with_tasks(tasks, _stamp(state, clock))


def _sanitize(task: Task) -> Task:
    task = replace(
        task,
        planned_min=clamp_int(task.planned_min, *PLANNED_MIN_RANGE),
        actual_min=None if task.actual_min is None else clamp_int(task.actual_min, *ACTUAL_MIN_RANGE),
        timer_accumulated_ms=max(0, task.timer_accumulated_ms),
    )
    if task.done and task.actual_min is None:
        task = replace(task, actual_min=timer.derive_actual_min(task))
    return task


# ---- Transitions ----

def _create(state: SharedState, task: Task, clock: Clock) -> SharedState:
    if not task.title.strip() or state.get(task.id) is not None:
        return state
    # Timers only start through StartTimer
    task = _sanitize(replace(task, timer_running=False, timer_started_at_ms=None))
    return state.with_tasks((task, *state.tasks), _stamp(state, clock))


def _update(state: SharedState, task: Task, clock: Clock) -> SharedState:
    current = state.get(task.id)
    if current is None or not task.title.strip():
        return state

    stamp = _stamp(state, clock)
    # Timer fields are owned by the timer transitions, edits never touch them
    merged = replace(
        task,
        timer_running=current.timer_running,
        timer_started_at_ms=current.timer_started_at_ms,
        timer_accumulated_ms=current.timer_accumulated_ms,
    )
    if merged.done:
        merged = timer.stop(merged, stamp)
        if task.actual_min is not None:
            merged = replace(merged, actual_min=task.actual_min)
    merged = _sanitize(merged)

    tasks = [merged if t.id == task.id else t for t in state.tasks]
    return state.with_tasks(tasks, stamp)


def _delete(state: SharedState, task_id: str, clock: Clock) -> SharedState:
    return _commit(state, [t for t in state.tasks if t.id != task_id], clock)


def _toggle_done(state: SharedState, action: ToggleDone, clock: Clock) -> SharedState:
    def apply(t: Task) -> Task:
        if t.id != action.id:
            return t
        if action.done:
            t = timer.stop(t, action.now_ms)
            t = replace(t, done=True, actual_min=timer.derive_actual_min(t))
        else:
            t = replace(t, done=False)
        return replace(t, updated_at=iso_from_ms(action.now_ms))

    return _commit(state, [apply(t) for t in state.tasks], clock)


def _start_timer(state: SharedState, action: StartTimer, clock: Clock) -> SharedState:
    stamp = iso_from_ms(action.now_ms)

    def apply(t: Task) -> Task:
        if t.id == action.id:
            if t.done or t.timer_running:
                return t
            return replace(t, timer_running=True, timer_started_at_ms=action.now_ms, updated_at=stamp)
        if t.timer_running:
            return replace(timer.stop(t, action.now_ms), updated_at=stamp)
        return t

    return _commit(state, [apply(t) for t in state.tasks], clock)


def _stop_timer(state: SharedState, action: StopTimer, clock: Clock) -> SharedState:
    def apply(t: Task) -> Task:
        if t.id != action.id or not t.timer_running:
            return t
        return replace(timer.stop(t, action.now_ms), updated_at=iso_from_ms(action.now_ms))

    return _commit(state, [apply(t) for t in state.tasks], clock)


def reduce(state: SharedState, action: Any, clock: Clock = now_ms) -> SharedState:
    """Apply one action to the shared document.

    Args:
        state: current document
        action: one of the action dataclasses above; anything else is ignored
        clock: epoch-ms source for the document version stamp
    """
    if isinstance(action, Init):
        return normalize_shared_state(action.payload, clock())
    if isinstance(action, SetBedtime):
        return replace(state, bedtime=action.bedtime, updated_at=_stamp(state, clock))
    if isinstance(action, CreateTask):
        return _create(state, action.task, clock)
    if isinstance(action, UpdateTask):
        return _update(state, action.task, clock)
    if isinstance(action, DeleteTask):
        return _delete(state, action.id, clock)
    if isinstance(action, ToggleDone):
        return _toggle_done(state, action, clock)
    if isinstance(action, StartTimer):
        return _start_timer(state, action, clock)
    if isinstance(action, StopTimer):
        return _stop_timer(state, action, clock)
    if isinstance(action, ResetAll):
        return SharedState(bedtime=DEFAULT_BEDTIME, tasks=(), updated_at=_stamp(state, clock))
    return state
