# tests/test_slot_service.py
from datetime import date, datetime, timezone

import pytest

from calsync.errors import InvalidDuration
from calsync.models.coaching_schedule import CoachingSchedule
from calsync.services.slot_service import (
    compute_slots,
    group_slots_by_date,
    iter_slots,
    merge_intervals,
)

MONDAY = date(2025, 1, 6)
BEFORE_MONDAY = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _schedule(**overrides) -> CoachingSchedule:
    fields = dict(
        coach_id="coach-1",
        name="Working hours",
        time_zone="UTC",
        availability=[{"days": ["Monday"], "startTime": "09:00", "endTime": "17:00"}],
        overrides=None,
        default_duration=60,
        minimum_duration=30,
        maximum_duration=120,
        allow_custom_duration=False,
        buffer_before=0,
        buffer_after=0,
        minimum_notice=0,
    )
    fields.update(overrides)
    return CoachingSchedule(**fields)


def _hours(slots):
    return [(s.start_time.hour, s.start_time.minute) for s in slots]


def test_monday_nine_to_five_gives_eight_hourly_slots():
    slots = compute_slots(_schedule(), [], MONDAY, MONDAY, now=BEFORE_MONDAY)

    assert len(slots) == 8
    assert [s.start_time.hour for s in slots] == [9, 10, 11, 12, 13, 14, 15, 16]
    assert all(s.duration_minutes == 60 for s in slots)


def test_busy_interval_removes_only_the_overlapping_slot():
    busy = [(utc(2025, 1, 6, 12, 0), utc(2025, 1, 6, 13, 0))]

    slots = compute_slots(_schedule(), busy, MONDAY, MONDAY, now=BEFORE_MONDAY)

    assert [s.start_time.hour for s in slots] == [9, 10, 11, 13, 14, 15, 16]


def test_unavailable_override_yields_no_slots_for_that_date():
    schedule = _schedule(overrides=[{"date": "2025-01-06", "startTime": "00:00", "endTime": "00:00"}])

    assert compute_slots(schedule, [], MONDAY, MONDAY, now=BEFORE_MONDAY) == []


def test_override_replaces_weekly_rule_for_its_date_only():
    schedule = _schedule(
        availability=[{"days": ["Monday", "Tuesday"], "startTime": "09:00", "endTime": "17:00"}],
        overrides=[{"date": "2025-01-06", "startTime": "10:00", "endTime": "12:00"}],
    )

    slots = compute_slots(schedule, [], MONDAY, date(2025, 1, 7), now=BEFORE_MONDAY)
    grouped = group_slots_by_date(slots)

    assert _hours(grouped["2025-01-06"]) == [(10, 0), (11, 0)]
    assert len(grouped["2025-01-07"]) == 8


def test_overlapping_busy_intervals_are_merged():
    busy = [
        (utc(2025, 1, 6, 11, 0), utc(2025, 1, 6, 12, 0)),
        (utc(2025, 1, 6, 10, 0), utc(2025, 1, 6, 11, 30)),
    ]

    assert merge_intervals(busy) == [(utc(2025, 1, 6, 10, 0), utc(2025, 1, 6, 12, 0))]

    slots = compute_slots(_schedule(), busy, MONDAY, MONDAY, now=BEFORE_MONDAY)
    assert [s.start_time.hour for s in slots] == [9, 12, 13, 14, 15, 16]


def test_busy_interval_covering_whole_window_removes_it():
    busy = [(utc(2025, 1, 6, 8, 0), utc(2025, 1, 6, 18, 0))]

    assert compute_slots(_schedule(), busy, MONDAY, MONDAY, now=BEFORE_MONDAY) == []


def test_buffers_shrink_free_windows():
    schedule = _schedule(buffer_before=15, buffer_after=15)

    slots = compute_slots(schedule, [], MONDAY, MONDAY, now=BEFORE_MONDAY)

    assert _hours(slots) == [(9, 15), (10, 15), (11, 15), (12, 15), (13, 15), (14, 15), (15, 15)]


def test_buffers_apply_around_busy_time():
    schedule = _schedule(buffer_before=30, buffer_after=30)
    busy = [(utc(2025, 1, 6, 12, 0), utc(2025, 1, 6, 13, 0))]

    slots = compute_slots(schedule, busy, MONDAY, MONDAY, now=BEFORE_MONDAY)

    # 09:30-11:30 and 13:30-16:30 remain
    assert _hours(slots) == [(9, 30), (10, 30), (13, 30), (14, 30), (15, 30)]


def test_minimum_notice_drops_early_slots():
    schedule = _schedule(minimum_notice=60)
    now = utc(2025, 1, 6, 10, 30)

    slots = compute_slots(schedule, [], MONDAY, MONDAY, now=now)

    assert [s.start_time.hour for s in slots] == [12, 13, 14, 15, 16]


def test_duration_defaults_and_bounds():
    schedule = _schedule()

    with pytest.raises(InvalidDuration):
        compute_slots(schedule, [], MONDAY, MONDAY, requested_duration=20, now=BEFORE_MONDAY)
    with pytest.raises(InvalidDuration):
        compute_slots(schedule, [], MONDAY, MONDAY, requested_duration=180, now=BEFORE_MONDAY)
    # Inside the bounds but custom lengths are off
    with pytest.raises(InvalidDuration):
        compute_slots(schedule, [], MONDAY, MONDAY, requested_duration=90, now=BEFORE_MONDAY)


def test_custom_duration_slices_window():
    schedule = _schedule(allow_custom_duration=True)

    slots = compute_slots(schedule, [], MONDAY, MONDAY, requested_duration=90, now=BEFORE_MONDAY)

    assert _hours(slots) == [(9, 0), (10, 30), (12, 0), (13, 30), (15, 0)]
    assert all(s.duration_minutes == 90 for s in slots)


def test_slot_interval_sets_the_step():
    schedule = _schedule(slot_interval=30, availability=[
        {"days": ["Monday"], "startTime": "09:00", "endTime": "11:00"},
    ])

    slots = compute_slots(schedule, [], MONDAY, MONDAY, now=BEFORE_MONDAY)

    assert _hours(slots) == [(9, 0), (9, 30), (10, 0)]


def test_slots_are_in_the_schedule_time_zone():
    schedule = _schedule(time_zone="Europe/Berlin")
    # 11:00-12:00 UTC is 12:00-13:00 in Berlin in January
    busy = [(utc(2025, 1, 6, 11, 0), utc(2025, 1, 6, 12, 0))]

    slots = compute_slots(schedule, busy, MONDAY, MONDAY, now=BEFORE_MONDAY)

    assert [s.start_time.hour for s in slots] == [9, 10, 11, 13, 14, 15, 16]
    assert slots[0].start_time.utcoffset().total_seconds() == 3600
    assert slots[0].start_time.astimezone(timezone.utc) == utc(2025, 1, 6, 8, 0)


def test_end_at_midnight_runs_to_end_of_day():
    schedule = _schedule(availability=[{"days": ["Monday"], "startTime": "22:00", "endTime": "00:00"}])

    slots = compute_slots(schedule, [], MONDAY, MONDAY, now=BEFORE_MONDAY)

    assert [s.start_time.hour for s in slots] == [22, 23]


def test_iter_slots_is_restartable():
    schedule = _schedule()
    busy = [(utc(2025, 1, 6, 12, 0), utc(2025, 1, 6, 13, 0))]

    first = list(iter_slots(schedule, busy, MONDAY, MONDAY, now=BEFORE_MONDAY))
    second = list(iter_slots(schedule, busy, MONDAY, MONDAY, now=BEFORE_MONDAY))

    assert first == second
    assert len(first) == 7


def test_days_without_rules_have_no_slots():
    sunday = date(2025, 1, 5)

    assert compute_slots(_schedule(), [], sunday, sunday, now=BEFORE_MONDAY) == []
