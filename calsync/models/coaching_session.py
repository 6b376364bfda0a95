# calsync/models/coaching_session.py
from enum import Enum
from typing import Dict, FrozenSet

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from calsync.errors import IllegalStatusTransition
from calsync.models.base import Base
from calsync.timeutils import utcnow


class SessionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


# Monotonic except RESCHEDULED -> SCHEDULED; COMPLETED and CANCELLED are terminal.
SESSION_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.SCHEDULED: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.RESCHEDULED}
    ),
    SessionStatus.RESCHEDULED: frozenset({SessionStatus.SCHEDULED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in SESSION_TRANSITIONS[SessionStatus(current)]


class CoachingSession(Base):
    """
    One scheduled coaching engagement between a coach and a mentee.

    Sessions created through the provider always have exactly one CalBooking.
    """

    __tablename__ = "coaching_sessions"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_coaching_sessions_start_before_end"),
    )

    id = Column(Integer, primary_key=True, index=True)

    coach_id = Column(String, nullable=False, index=True)
    mentee_id = Column(String, nullable=False, index=True)

    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    # Store status as a simple string; SessionStatus is still used in Python
    status = Column(
        String(16),
        nullable=False,
        default=SessionStatus.SCHEDULED.value,
    )

    price = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    notes = Column(Text, nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    cal_booking = relationship("CalBooking", back_populates="session", uselist=False)

    def transition_to(self, target: SessionStatus) -> None:
        current = SessionStatus(self.status)
        if not can_transition(current, target):
            raise IllegalStatusTransition(
                f"session {self.id}: {current.value} -> {SessionStatus(target).value} is not allowed"
            )
        self.status = SessionStatus(target).value
