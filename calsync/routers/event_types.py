# calsync/routers/event_types.py
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from calsync.db.session import get_db
from calsync.services.cal_client import CalClient, get_cal_client
from calsync.services.event_type_service import (
    ensure_default_event_types,
    event_type_availability,
    event_type_length,
    list_coach_event_types,
)

router = APIRouter()


def _event_type_out(event_type: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": event_type.get("id"),
        "title": event_type.get("title"),
        "slug": event_type.get("slug"),
        "length_minutes": event_type_length(event_type),
    }


@router.get("")
def list_event_types(
    coach_id: str,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    event_types = list_coach_event_types(db, coach_id, cal_client)
    return {"coach_id": coach_id, "event_types": [_event_type_out(e) for e in event_types]}


@router.post("/defaults")
def create_default_event_types(
    coach_id: str,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """Create the standard event types the coach is missing; existing lengths are left alone."""
    created = ensure_default_event_types(db, coach_id, cal_client)
    return {"coach_id": coach_id, "created": [_event_type_out(e or {}) for e in created]}


@router.get("/{event_type_id}/availability")
def get_event_type_availability(
    coach_id: str,
    event_type_id: int,
    date_from: date,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """Cal.com's own slot view for one event type, for comparison with /slots."""
    if date_to is not None and date_to < date_from:
        raise HTTPException(status_code=400, detail="date_to must not be before date_from")

    slots = event_type_availability(db, coach_id, event_type_id, date_from, date_to, cal_client)
    return {"coach_id": coach_id, "event_type_id": event_type_id, "slots": slots}
