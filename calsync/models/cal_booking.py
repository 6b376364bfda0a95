# calsync/models/cal_booking.py
from enum import Enum
from typing import Dict, FrozenSet

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from calsync.errors import IllegalStatusTransition
from calsync.models.base import Base
from calsync.timeutils import utcnow


class CalBookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


CAL_BOOKING_TRANSITIONS: Dict[CalBookingStatus, FrozenSet[CalBookingStatus]] = {
    CalBookingStatus.PENDING: frozenset(
        {CalBookingStatus.CONFIRMED, CalBookingStatus.REJECTED, CalBookingStatus.CANCELLED}
    ),
    CalBookingStatus.CONFIRMED: frozenset({CalBookingStatus.CANCELLED}),
    CalBookingStatus.CANCELLED: frozenset(),
    CalBookingStatus.REJECTED: frozenset(),
}


def status_from_provider(value) -> CalBookingStatus:
    """Map the provider's booking status vocabulary onto ours."""
    normalized = (value or "").upper()
    if normalized in ("ACCEPTED", "CONFIRMED", ""):
        return CalBookingStatus.CONFIRMED
    if normalized in ("CANCELLED", "CANCELED"):
        return CalBookingStatus.CANCELLED
    if normalized == "REJECTED":
        return CalBookingStatus.REJECTED
    return CalBookingStatus.PENDING


class CalBooking(Base):
    """
    Mirror of the provider's booking object.

    `cal_booking_uid` is the provider's native id and the only booking id we
    ever send to the provider.
    """

    __tablename__ = "cal_bookings"

    id = Column(Integer, primary_key=True, index=True)

    session_id = Column(
        Integer,
        ForeignKey("coaching_sessions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    coach_id = Column(String, nullable=False, index=True)

    cal_booking_uid = Column(String(255), nullable=False, unique=True, index=True)
    status = Column(String(16), nullable=False, default=CalBookingStatus.CONFIRMED.value)

    title = Column(String(255), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    attendee_name = Column(String(255), nullable=True)
    attendee_email = Column(String(255), nullable=True)
    meeting_url = Column(String(512), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    session = relationship("CoachingSession", back_populates="cal_booking")

    def transition_to(self, target: CalBookingStatus) -> None:
        current = CalBookingStatus(self.status)
        if CalBookingStatus(target) not in CAL_BOOKING_TRANSITIONS[current]:
            raise IllegalStatusTransition(
                f"cal booking {self.cal_booking_uid}: {current.value} -> "
                f"{CalBookingStatus(target).value} is not allowed"
            )
        self.status = CalBookingStatus(target).value
