# calsync/services/event_type_service.py
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from calsync.errors import NotConnected, NotFound
from calsync.models.coaching_schedule import CoachingSchedule
from calsync.services.cal_client import CalClient
from calsync.services.schedule_sync_service import get_default_schedule
from calsync.services.token_service import authorized_request, get_integration

logger = logging.getLogger(__name__)

# Standard offering every coach gets on connect
DEFAULT_EVENT_TYPES: List[Dict[str, Any]] = [
    {
        "title": "Coaching Session",
        "slug": "coaching-session",
        "lengthInMinutes": 30,
        "description": "A focused 30-minute coaching session.",
    },
    {
        "title": "Deep Dive Coaching Call",
        "slug": "deep-dive-coaching-call",
        "lengthInMinutes": 60,
        "description": "An in-depth 60-minute coaching session.",
    },
]


def event_type_length(event_type: Dict[str, Any]) -> Optional[int]:
    length = event_type.get("lengthInMinutes") or event_type.get("length")
    return int(length) if length is not None else None


def find_event_type_for_duration(
    event_types: List[Dict[str, Any]],
    duration: int,
) -> Optional[Dict[str, Any]]:
    for event_type in event_types:
        if event_type_length(event_type) == duration:
            return event_type
    return None


def list_coach_event_types(
    db: Session,
    coach_id: str,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    integration = get_integration(db, coach_id)
    if not integration.cal_username:
        raise NotConnected(f"coach {coach_id} has no Cal.com username yet")
    username = integration.cal_username
    return authorized_request(db, coach_id, client, lambda auth: client.list_event_types(auth, username), now=now)


def _default_schedule_or_none(db: Session, coach_id: str) -> Optional[CoachingSchedule]:
    try:
        return get_default_schedule(db, coach_id)
    except NotFound:
        return None


def _templates_for(schedule: Optional[CoachingSchedule]) -> List[Dict[str, Any]]:
    if schedule is None:
        return [dict(t) for t in DEFAULT_EVENT_TYPES]

    templates = [
        dict(t)
        for t in DEFAULT_EVENT_TYPES
        if schedule.minimum_duration <= t["lengthInMinutes"] <= schedule.maximum_duration
    ]
    if all(t["lengthInMinutes"] != schedule.default_duration for t in templates):
        n = schedule.default_duration
        templates.append(
            {
                "title": f"{n}-minute Coaching Session",
                "slug": f"coaching-session-{n}",
                "lengthInMinutes": n,
                "description": f"A {n}-minute coaching session.",
            }
        )

    for t in templates:
        t["beforeEventBuffer"] = schedule.buffer_before
        t["afterEventBuffer"] = schedule.buffer_after
        t["minimumBookingNotice"] = schedule.minimum_notice
    return templates


def ensure_default_event_types(
    db: Session,
    coach_id: str,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Create the standard event types the coach is missing on Cal.com.

    A length is covered by any existing event type of that length, whatever
    its title. Returns only the event types created by this call.
    """
    existing = list_coach_event_types(db, coach_id, client, now=now)
    covered = {event_type_length(e) for e in existing}

    created: List[Dict[str, Any]] = []
    for template in _templates_for(_default_schedule_or_none(db, coach_id)):
        if template["lengthInMinutes"] in covered:
            continue
        event_type = authorized_request(
            db, coach_id, client, lambda auth: client.create_event_type(auth, template), now=now
        )
        covered.add(template["lengthInMinutes"])
        created.append(event_type)
        logger.info(
            "Created %s-minute event type %s for coach %s",
            template["lengthInMinutes"],
            (event_type or {}).get("id"),
            coach_id,
        )
    return created


def event_type_availability(
    db: Session,
    coach_id: str,
    event_type_id: int,
    date_from: date,
    date_to: date,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> Any:
    """The provider's own slot view for one event type."""
    return authorized_request(
        db,
        coach_id,
        client,
        lambda auth: client.get_event_type_availability(auth, event_type_id, date_from, date_to),
        now=now,
    )
