"""Tests for the derived planner figures."""

from datetime import datetime, timezone

import pytest

from sleep_tasks.model import Task
from sleep_tasks.selectors import (
    bedtime_minutes,
    buffer_ms,
    completion_at_ms,
    get_sums,
    has_done_without_actual,
    is_bedtime_valid,
    parse_time_to_minutes,
    progress_pct,
    time_until_bed_ms,
)

EVENING = datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)


def task(planned=10, done=False, actual=None) -> Task:
    return Task(id=f"{planned}-{done}-{actual}", title="t", planned_min=planned, done=done, actual_min=actual)


class TestBedtimeParsing:
    @pytest.mark.parametrize("value,expected", [
        ("22:30", 1350),
        ("00:00", 0),
        ("23:59", 1439),
        ("9:30", None),
        ("24:00", None),
        ("12:60", None),
        (2230, None),
    ])
    def test_parse_time_to_minutes(self, value, expected):
        assert parse_time_to_minutes(value) == expected

    @pytest.mark.parametrize("value,valid", [
        ("22:30", True),
        ("14:01", True),
        ("23:58", True),
        ("14:00", False),
        ("23:59", False),
        ("08:00", False),
        ("nope", False),
    ])
    def test_validity_window(self, value, valid):
        assert is_bedtime_valid(value) is valid

    def test_invalid_bedtime_has_no_minutes(self):
        assert bedtime_minutes("03:00") is None
        assert bedtime_minutes("22:00") == 1320


class TestSums:
    def test_splits_done_and_pending(self):
        sums = get_sums([task(30), task(15), task(20, done=True, actual=25)])
        assert sums.planned_not_done_min == 45
        assert sums.actual_done_min == 25
        assert sums.total_work_min == 45

    def test_empty(self):
        sums = get_sums([])
        assert (sums.planned_not_done_min, sums.actual_done_min, sums.total_work_min) == (0, 0, 0)

    def test_done_without_actual_flag(self):
        assert has_done_without_actual([task(done=True)])
        assert not has_done_without_actual([task(done=True, actual=3), task()])


class TestTimeline:
    def test_time_until_bed(self):
        assert time_until_bed_ms(22 * 60 + 30, EVENING) == 150 * 60_000

    def test_time_until_bed_past(self):
        assert time_until_bed_ms(19 * 60, EVENING) == -60 * 60_000

    def test_no_bedtime_no_figures(self):
        assert time_until_bed_ms(None, EVENING) is None
        assert buffer_ms(None, 30) is None
        assert progress_pct(None, 30) is None

    def test_buffer(self):
        assert buffer_ms(150 * 60_000, 60) == 90 * 60_000
        assert buffer_ms(30 * 60_000, 60) == -30 * 60_000

    def test_completion(self):
        assert completion_at_ms(1000, 2) == 121_000

    def test_progress(self):
        assert progress_pct(150 * 60_000, 60) == 40

    def test_progress_capped(self):
        assert progress_pct(10 * 60_000, 600) == 150
        assert progress_pct(-5000, 1) == 150

    def test_progress_no_work(self):
        assert progress_pct(60_000, 0) == 0
