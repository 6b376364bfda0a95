# calsync/services/slot_service.py
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo

from calsync.errors import InvalidDuration
from calsync.models.coaching_schedule import CoachingSchedule
from calsync.schemas.schedule import WEEKDAYS
from calsync.timeutils import as_utc, utcnow

# (start, end), both aware UTC
Interval = Tuple[datetime, datetime]


@dataclass(frozen=True)
class TimeSlot:
    start_time: datetime
    end_time: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


def _parse_clock(value: str) -> Tuple[int, int]:
    parts = str(value).strip().split(":")
    return int(parts[0]), int(parts[1]) if len(parts) > 1 else 0


def _local_window(day: date, start: str, end: str, tz: ZoneInfo) -> Optional[Interval]:
    """
    One HH:MM window on `day` in the schedule's zone, as UTC.

    start == end means unavailable. An end at or before the start runs to
    midnight, so "09:00"-"00:00" covers the rest of the day.
    """
    sh, sm = _parse_clock(start)
    eh, em = _parse_clock(end)
    if (sh, sm) == (eh, em):
        return None

    start_dt = datetime.combine(day, time(sh, sm), tzinfo=tz)
    if eh >= 24 or (eh, em) < (sh, sm):
        end_dt = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz)
    else:
        end_dt = datetime.combine(day, time(eh, em), tzinfo=tz)
    return as_utc(start_dt), as_utc(end_dt)


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Sort and coalesce overlapping or touching intervals."""
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if end <= start:
            continue
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def subtract_intervals(windows: Iterable[Interval], busy: List[Interval]) -> List[Interval]:
    """`busy` must already be merged."""
    free: List[Interval] = []
    for w_start, w_end in windows:
        cursor = w_start
        for b_start, b_end in busy:
            if b_end <= cursor:
                continue
            if b_start >= w_end:
                break
            if b_start > cursor:
                free.append((cursor, b_start))
            cursor = max(cursor, b_end)
            if cursor >= w_end:
                break
        if cursor < w_end:
            free.append((cursor, w_end))
    return free


def windows_for_date(schedule: CoachingSchedule, day: date) -> List[Interval]:
    """
    Effective availability for one calendar date (in the schedule's zone).

    Overrides for the date replace the weekly rules entirely, including an
    override that marks the day unavailable.
    """
    tz = ZoneInfo(schedule.time_zone or "UTC")
    day_key = day.isoformat()

    overrides = [o for o in (schedule.overrides or []) if o.get("date") == day_key]
    if overrides:
        rules = [(o["startTime"], o["endTime"]) for o in overrides]
    else:
        weekday = WEEKDAYS[day.weekday()]
        rules = [
            (rule["startTime"], rule["endTime"])
            for rule in (schedule.availability or [])
            if weekday in rule.get("days", [])
        ]

    windows = []
    for start, end in rules:
        window = _local_window(day, start, end, tz)
        if window is not None:
            windows.append(window)
    return merge_intervals(windows)


def resolve_duration(schedule: CoachingSchedule, requested: Optional[int] = None) -> int:
    default = schedule.default_duration or 60
    minimum = schedule.minimum_duration or 30
    maximum = schedule.maximum_duration or 120

    if requested is None:
        return default
    if requested < minimum or requested > maximum:
        raise InvalidDuration(
            f"duration {requested} outside [{minimum}, {maximum}]",
            user_message=f"Sessions with this coach must be between {minimum} and {maximum} minutes.",
        )
    if not schedule.allow_custom_duration and requested != default:
        raise InvalidDuration(
            f"duration {requested} differs from default {default} and custom durations are off",
            user_message=f"This coach only offers {default}-minute sessions.",
        )
    return requested


def iter_slots(
    schedule: CoachingSchedule,
    busy_intervals: Iterable[Interval],
    date_from: date,
    date_to: date,
    requested_duration: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Iterator[TimeSlot]:
    """
    Yield bookable slots for [date_from, date_to] (inclusive, in the
    schedule's zone), earliest first. Calling it again starts over.

    busy_intervals are (start, end) pairs; naive datetimes are read as UTC.
    """
    duration = resolve_duration(schedule, requested_duration)
    step = timedelta(minutes=schedule.slot_interval or duration)
    length = timedelta(minutes=duration)
    before = timedelta(minutes=schedule.buffer_before or 0)
    after = timedelta(minutes=schedule.buffer_after or 0)

    now = as_utc(now) if now is not None else as_utc(utcnow())
    earliest_start = now + timedelta(minutes=schedule.minimum_notice or 0)

    tz = ZoneInfo(schedule.time_zone or "UTC")
    busy = merge_intervals((as_utc(start), as_utc(end)) for start, end in busy_intervals)

    day = date_from
    while day <= date_to:
        for free_start, free_end in subtract_intervals(windows_for_date(schedule, day), busy):
            start = free_start + before
            end = free_end - after
            cursor = start
            while cursor + length <= end:
                if cursor >= earliest_start:
                    yield TimeSlot(cursor.astimezone(tz), (cursor + length).astimezone(tz))
                cursor += step
        day += timedelta(days=1)


def compute_slots(
    schedule: CoachingSchedule,
    busy_intervals: Iterable[Interval],
    date_from: date,
    date_to: date,
    requested_duration: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[TimeSlot]:
    slots = list(iter_slots(schedule, busy_intervals, date_from, date_to, requested_duration, now))
    slots.sort(key=lambda s: s.start_time)
    return slots


def group_slots_by_date(slots: Iterable[TimeSlot]) -> Dict[str, List[TimeSlot]]:
    """{"2025-01-06": [slot, ...], ...} keyed by the slot's local date."""
    grouped: Dict[str, List[TimeSlot]] = {}
    for slot in slots:
        grouped.setdefault(slot.start_time.date().isoformat(), []).append(slot)
    return grouped
