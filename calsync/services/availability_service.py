# calsync/services/availability_service.py
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from calsync.config import get_settings
from calsync.models.coaching_schedule import CoachingSchedule
from calsync.models.coaching_session import CoachingSession, SessionStatus
from calsync.services.cal_client import CalClient
from calsync.services.schedule_sync_service import get_default_schedule
from calsync.services.slot_service import Interval, TimeSlot, compute_slots, resolve_duration
from calsync.services.token_service import authorized_request
from calsync.timeutils import as_utc, parse_datetime, to_utc_naive, utcnow

logger = logging.getLogger(__name__)


def provider_busy_intervals(raw: Iterable[Dict[str, Any]]) -> List[Interval]:
    """[{"start": iso, "end": iso, "source": ...}] -> [(start, end)]; bad rows are skipped."""
    intervals: List[Interval] = []
    for item in raw or []:
        start = parse_datetime(item.get("start"))
        end = parse_datetime(item.get("end"))
        if start is None or end is None or end <= start:
            logger.warning("Skipping malformed busy interval from provider: %r", item)
            continue
        intervals.append((start, end))
    return intervals


def internal_busy_intervals(
    db: Session,
    coach_id: str,
    range_start: datetime,
    range_end: datetime,
) -> List[Interval]:
    """Scheduled sessions of the coach overlapping [range_start, range_end)."""
    rows = (
        db.query(CoachingSession)
        .filter(
            CoachingSession.coach_id == coach_id,
            CoachingSession.status == SessionStatus.SCHEDULED.value,
            CoachingSession.start_time < to_utc_naive(range_end),
            CoachingSession.end_time > to_utc_naive(range_start),
        )
        .all()
    )
    return [(as_utc(s.start_time), as_utc(s.end_time)) for s in rows]


def clamp_date_range(
    date_from: date,
    date_to: date,
    today: date,
    window_days: Optional[int] = None,
) -> Tuple[date, date]:
    """Never before today, never past today + the booking window."""
    if window_days is None:
        window_days = get_settings().BOOKING_WINDOW_DAYS
    return max(date_from, today), min(date_to, today + timedelta(days=window_days))


def fetch_busy_intervals(
    db: Session,
    schedule: CoachingSchedule,
    date_from: date,
    date_to: date,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> List[Interval]:
    """Fresh provider busy times plus our own scheduled sessions."""
    coach_id = schedule.coach_id
    tz_name = schedule.time_zone or "UTC"

    # One day of padding either side covers any UTC offset
    query_from = date_from - timedelta(days=1)
    query_to = date_to + timedelta(days=1)
    raw = authorized_request(
        db,
        coach_id,
        client,
        lambda auth: client.get_busy_times(auth, query_from, query_to, tz_name),
        now=now,
    )

    tz = ZoneInfo(tz_name)
    range_start = datetime.combine(query_from, datetime.min.time(), tzinfo=tz)
    range_end = datetime.combine(query_to + timedelta(days=1), datetime.min.time(), tzinfo=tz)

    busy = provider_busy_intervals(raw)
    busy.extend(internal_busy_intervals(db, coach_id, range_start, range_end))
    return busy


def get_available_slots(
    db: Session,
    coach_id: str,
    date_from: date,
    date_to: date,
    duration: Optional[int],
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> List[TimeSlot]:
    """
    Bookable slots for a coach between two dates (inclusive, coach's zone).

    Busy times are always fetched fresh from the provider; nothing is cached.
    """
    now = as_utc(now) if now is not None else as_utc(utcnow())
    schedule = get_default_schedule(db, coach_id)
    resolve_duration(schedule, duration)

    today = now.astimezone(ZoneInfo(schedule.time_zone or "UTC")).date()
    date_from, date_to = clamp_date_range(date_from, date_to, today)
    if date_to < date_from:
        return []

    busy = fetch_busy_intervals(db, schedule, date_from, date_to, client, now=now)
    slots = compute_slots(schedule, busy, date_from, date_to, requested_duration=duration, now=now)

    logger.info(
        "Coach %s: %s slots between %s and %s (%s busy intervals)",
        coach_id,
        len(slots),
        date_from,
        date_to,
        len(busy),
    )
    return slots
