# calsync/routers/bookings.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.orm import Session

from calsync.db.session import get_db
from calsync.models.coaching_session import CoachingSession
from calsync.services.booking_service import BookingRequest, cancel_booking, create_booking, reschedule_booking
from calsync.services.cal_client import CalClient, get_cal_client
from calsync.timeutils import isoformat_utc

router = APIRouter(prefix="/bookings", tags=["bookings"])


class BookingCreate(BaseModel):
    coach_id: str
    mentee_id: str
    start_time: datetime
    duration_minutes: Optional[int] = Field(None, gt=0)
    attendee_name: str
    attendee_email: EmailStr
    attendee_time_zone: str = "UTC"
    notes: Optional[str] = None
    rate: Optional[Decimal] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    event_type_id: Optional[int] = None

    @field_validator("attendee_name")
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("attendee_name must not be blank")
        return v.strip()


class BookingCancel(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class BookingReschedule(BaseModel):
    actor_id: str
    start_time: datetime
    reason: Optional[str] = None


def _session_out(session: CoachingSession) -> Dict[str, Any]:
    booking = session.cal_booking
    return {
        "id": session.id,
        "coach_id": session.coach_id,
        "mentee_id": session.mentee_id,
        "start_time": isoformat_utc(session.start_time),
        "end_time": isoformat_utc(session.end_time),
        "duration_minutes": session.duration_minutes,
        "status": session.status,
        "price": str(session.price) if session.price is not None else None,
        "currency": session.currency,
        "cancellation_reason": session.cancellation_reason,
        "cal_booking": (
            {
                "uid": booking.cal_booking_uid,
                "status": booking.status,
                "meeting_url": booking.meeting_url,
            }
            if booking is not None
            else None
        ),
    }


@router.post("", status_code=201)
def book_session(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """
    Book a slot: validate against fresh availability, confirm with Cal.com,
    then record the session.
    """
    result = create_booking(
        db,
        BookingRequest(
            coach_id=payload.coach_id,
            mentee_id=payload.mentee_id,
            start_time=payload.start_time,
            duration_minutes=payload.duration_minutes,
            attendee_name=payload.attendee_name,
            attendee_email=str(payload.attendee_email),
            attendee_time_zone=payload.attendee_time_zone,
            notes=payload.notes,
            rate=payload.rate,
            currency=payload.currency,
            event_type_id=payload.event_type_id,
        ),
        cal_client,
    )
    return _session_out(result.session)


@router.post("/{session_id}/cancel")
def cancel_session(
    session_id: int,
    payload: BookingCancel,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    session = cancel_booking(db, session_id, payload.actor_id, cal_client, reason=payload.reason)
    return _session_out(session)


@router.post("/{session_id}/reschedule")
def reschedule_session(
    session_id: int,
    payload: BookingReschedule,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """Move a session to a new free slot; Cal.com issues a new booking uid."""
    session = reschedule_booking(
        db,
        session_id,
        payload.actor_id,
        payload.start_time,
        cal_client,
        reason=payload.reason,
    )
    return _session_out(session)
