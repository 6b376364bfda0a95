# calsync/routers/availability.py
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from calsync.db.session import get_db
from calsync.services.availability_service import get_available_slots
from calsync.services.cal_client import CalClient, get_cal_client
from calsync.services.slot_service import group_slots_by_date

router = APIRouter(tags=["availability"])


@router.get("/coaches/{coach_id}/slots")
def list_available_slots(
    coach_id: str,
    date_from: date,
    date_to: date,
    duration: Optional[int] = Query(None, gt=0),
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """
    Bookable slots for a coach, grouped by the coach's local date.

    Busy times are fetched from Cal.com on every call.
    """
    if date_to < date_from:
        raise HTTPException(status_code=400, detail="date_to must not be before date_from")

    slots = get_available_slots(db, coach_id, date_from, date_to, duration, cal_client)

    def _out(slot):
        return {
            "start_time": slot.start_time.isoformat(),
            "end_time": slot.end_time.isoformat(),
        }

    return {
        "coach_id": coach_id,
        "count": len(slots),
        "slots": [_out(s) for s in slots],
        "by_date": {day: [_out(s) for s in day_slots] for day, day_slots in group_slots_by_date(slots).items()},
    }
