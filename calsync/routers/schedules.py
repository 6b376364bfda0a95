# calsync/routers/schedules.py
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from calsync.db.session import get_db
from calsync.models.coaching_schedule import CoachingSchedule
from calsync.schemas.schedule import ScheduleUpdate
from calsync.services.cal_client import CalClient, get_cal_client
from calsync.services.schedule_sync_service import (
    pull_schedules,
    push_schedule,
    update_local_schedule,
)
from calsync.timeutils import isoformat_utc

router = APIRouter(tags=["schedules"])


def _schedule_out(schedule: CoachingSchedule) -> Dict[str, Any]:
    return {
        "id": schedule.id,
        "coach_id": schedule.coach_id,
        "cal_schedule_id": schedule.cal_schedule_id,
        "name": schedule.name,
        "time_zone": schedule.time_zone,
        "availability": schedule.availability,
        "overrides": schedule.overrides,
        "is_default": schedule.is_default,
        "active": schedule.active,
        "default_duration": schedule.default_duration,
        "minimum_duration": schedule.minimum_duration,
        "maximum_duration": schedule.maximum_duration,
        "allow_custom_duration": schedule.allow_custom_duration,
        "buffer_before": schedule.buffer_before,
        "buffer_after": schedule.buffer_after,
        "minimum_notice": schedule.minimum_notice,
        "sync_source": schedule.sync_source,
        "last_synced_at": isoformat_utc(schedule.last_synced_at),
    }


@router.post("/coaches/{coach_id}/schedules/sync")
def sync_coach_schedules(
    coach_id: str,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """Pull the coach's schedules from Cal.com."""
    result = pull_schedules(db, coach_id, cal_client)
    schedules = (
        db.query(CoachingSchedule)
        .filter_by(coach_id=coach_id, active=True)
        .order_by(CoachingSchedule.id.asc())
        .all()
    )
    return {
        "created": result.created,
        "updated": result.updated,
        "unchanged": result.unchanged,
        "deactivated": result.deactivated,
        "pending_push": result.pending_push,
        "schedules": [_schedule_out(s) for s in schedules],
    }


@router.patch("/schedules/{schedule_id}")
def edit_schedule(
    schedule_id: int,
    payload: ScheduleUpdate,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Local edit; provider-owned fields stay pending until pushed."""
    return _schedule_out(update_local_schedule(db, schedule_id, payload))


@router.post("/schedules/{schedule_id}/push")
def push_schedule_to_cal(
    schedule_id: int,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    return _schedule_out(push_schedule(db, schedule_id, cal_client))
