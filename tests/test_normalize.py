"""Tests for the untrusted-payload normalizer."""

import math

import pytest

from sleep_tasks.model import DEFAULT_BEDTIME, SharedState
from sleep_tasks.normalize import normalize_shared_state

NOW = 1_700_000_000_000


def norm(payload):
    return normalize_shared_state(payload, now_ms=NOW)


def raw_task(**overrides) -> dict:
    task = {
        "id": "a1",
        "title": "Dishes",
        "plannedMin": 20,
        "actualMin": None,
        "done": False,
        "createdAt": "2024-01-01T10:00:00.000Z",
        "updatedAt": "2024-01-01T10:00:00.000Z",
        "timerRunning": False,
        "timerStartedAtMs": None,
        "timerAccumulatedMs": 0,
    }
    task.update(overrides)
    return task


# ---- Top-level defaults ----

class TestDocumentDefaults:
    @pytest.mark.parametrize("payload", [None, 42, "state", [], True])
    def test_non_object_gives_default_document(self, payload):
        state = norm(payload)
        assert state.bedtime == DEFAULT_BEDTIME
        assert state.tasks == ()
        assert state.updated_at == NOW

    def test_bedtime_kept_when_string(self):
        assert norm({"bedtime": "23:10"}).bedtime == "23:10"

    def test_bedtime_defaulted_when_not_string(self):
        assert norm({"bedtime": 2310}).bedtime == DEFAULT_BEDTIME

    def test_tasks_defaulted_when_not_list(self):
        assert norm({"tasks": {"a": 1}}).tasks == ()

    @pytest.mark.parametrize("value", ["123", None, math.nan, math.inf, True])
    def test_updated_at_defaulted_when_not_finite_number(self, value):
        assert norm({"updatedAt": value}).updated_at == NOW

    def test_updated_at_kept(self):
        assert norm({"updatedAt": 1234}).updated_at == 1234


# ---- Per-task fields ----

class TestTaskFields:
    def test_well_formed_task_survives(self):
        task = norm({"tasks": [raw_task()]}).tasks[0]
        assert task.id == "a1"
        assert task.title == "Dishes"
        assert task.planned_min == 20
        assert task.actual_min is None
        assert task.created_at == "2024-01-01T10:00:00.000Z"

    def test_missing_id_is_generated(self):
        task = norm({"tasks": [raw_task(id=None)]}).tasks[0]
        assert isinstance(task.id, str) and task.id

    @pytest.mark.parametrize("value,expected", [(0, 1), (-5, 1), (99_999, 10_000), ("30", 30), ("abc", 1), (12.9, 12)])
    def test_planned_min_clamped(self, value, expected):
        assert norm({"tasks": [raw_task(plannedMin=value)]}).tasks[0].planned_min == expected

    def test_actual_min_clamped(self):
        assert norm({"tasks": [raw_task(actualMin=-3)]}).tasks[0].actual_min == 0
        assert norm({"tasks": [raw_task(actualMin=20_000)]}).tasks[0].actual_min == 10_000

    def test_booleans_coerced(self):
        task = norm({"tasks": [raw_task(done=1, actualMin=5)]}).tasks[0]
        assert task.done is True

    def test_bad_timestamps_defaulted(self):
        task = norm({"tasks": [raw_task(createdAt=5, updatedAt="yesterday")]}).tasks[0]
        assert task.created_at.startswith("2023-11-14")
        assert task.updated_at == task.created_at

    def test_negative_accumulator_clamped(self):
        assert norm({"tasks": [raw_task(timerAccumulatedMs=-10)]}).tasks[0].timer_accumulated_ms == 0

    def test_non_dict_entries_skipped(self):
        assert len(norm({"tasks": [None, 3, raw_task()]}).tasks) == 1

    @pytest.mark.parametrize("title", ["", "   ", None, 12])
    def test_blank_titles_dropped(self, title):
        assert norm({"tasks": [raw_task(title=title)]}).tasks == ()

    def test_order_preserved(self):
        state = norm({"tasks": [raw_task(id="x", title="first"), raw_task(id="y", title="second")]})
        assert [t.id for t in state.tasks] == ["x", "y"]

    def test_duplicate_ids_made_unique(self):
        state = norm({"tasks": [raw_task(id="same", title="a"), raw_task(id="same", title="b")]})
        assert state.tasks[0].id == "same"
        assert state.tasks[1].id != "same"


# ---- Invariant repair ----

class TestInvariantRepair:
    def test_running_without_start_is_stopped(self):
        task = norm({"tasks": [raw_task(timerRunning=True, timerStartedAtMs=None)]}).tasks[0]
        assert task.timer_running is False

    def test_stopped_task_drops_start_time(self):
        task = norm({"tasks": [raw_task(timerRunning=False, timerStartedAtMs=500)]}).tasks[0]
        assert task.timer_started_at_ms is None

    def test_only_first_running_task_keeps_running(self):
        state = norm({"tasks": [
            raw_task(id="x", title="x", timerRunning=True, timerStartedAtMs=NOW - 60_000),
            raw_task(id="y", title="y", timerRunning=True, timerStartedAtMs=NOW - 30_000),
        ]})
        x, y = state.tasks
        assert x.timer_running is True
        assert y.timer_running is False
        assert y.timer_accumulated_ms == 30_000
        assert y.actual_min == 1

    def test_done_task_gets_actual_minutes(self):
        task = norm({"tasks": [raw_task(done=True, plannedMin=35)]}).tasks[0]
        assert task.actual_min == 35

    def test_done_running_task_is_stopped(self):
        task = norm({"tasks": [raw_task(done=True, timerRunning=True, timerStartedAtMs=NOW - 120_000)]}).tasks[0]
        assert task.timer_running is False
        assert task.actual_min == 2


# ---- Idempotence ----

MESSY_PAYLOADS = [
    None,
    {},
    {"bedtime": 7, "tasks": "nope", "updatedAt": "x"},
    {"tasks": [{"title": "no id"}, {"id": 5, "title": " padded ", "plannedMin": "7"}]},
    {"tasks": [
        raw_task(id="r1", title="r1", timerRunning=True, timerStartedAtMs=NOW - 1000),
        raw_task(id="r2", title="r2", timerRunning=True, timerStartedAtMs=NOW - 2000, done=True),
        raw_task(id="r2", title="dup", actualMin="12"),
    ], "updatedAt": 5.7},
]


class TestIdempotence:
    @pytest.mark.parametrize("payload", MESSY_PAYLOADS)
    def test_normalize_twice_equals_once(self, payload):
        once = norm(payload)
        assert normalize_shared_state(once, now_ms=NOW + 99_000) == once

    @pytest.mark.parametrize("payload", MESSY_PAYLOADS)
    def test_wire_round_trip_is_stable(self, payload):
        once = norm(payload)
        assert normalize_shared_state(once.to_dict(), now_ms=NOW + 5) == once

    def test_accepts_shared_state_instance(self):
        state = SharedState(bedtime="21:00", tasks=(), updated_at=10)
        assert norm(state) == state
