# tests/test_db_basic.py
from datetime import datetime

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calsync.db.session import engine, SessionLocal
from calsync.errors import IllegalStatusTransition
from calsync.models import Base, CalendarIntegration, CoachingSchedule, CoachingSession
from calsync.models.coaching_session import SessionStatus


def _clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def test_db_can_create_schema():
    # Ensure metadata can create tables
    Base.metadata.create_all(bind=engine)

    # Simple connectivity test
    with engine.connect() as conn:
        result = conn.execute(text("SELECT 1"))
        assert result.scalar() == 1


def test_integration_repr_hides_tokens():
    _clean_db()

    db: Session = SessionLocal()
    try:
        integration = CalendarIntegration(
            coach_id="coach-1",
            provider="CAL",
            access_token="secret-access",
            refresh_token="secret-refresh",
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)

        assert integration.id is not None
        assert integration.token_version == 0
        assert "secret" not in repr(integration)
    finally:
        db.close()


def test_only_one_active_default_schedule_per_coach():
    _clean_db()

    db: Session = SessionLocal()
    try:
        for name in ("A", "B"):
            db.add(
                CoachingSchedule(
                    coach_id="coach-1",
                    name=name,
                    time_zone="UTC",
                    availability=[],
                    is_default=True,
                )
            )
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

        # An inactive default does not count
        db.add(CoachingSchedule(coach_id="coach-1", name="A", time_zone="UTC", availability=[], is_default=True))
        db.add(
            CoachingSchedule(
                coach_id="coach-1", name="Old", time_zone="UTC", availability=[], is_default=True, active=False
            )
        )
        db.commit()
    finally:
        db.close()


def test_duration_bounds_are_enforced_by_the_database():
    _clean_db()

    db: Session = SessionLocal()
    try:
        db.add(
            CoachingSchedule(
                coach_id="coach-1",
                name="Broken",
                time_zone="UTC",
                availability=[],
                default_duration=200,
                maximum_duration=120,
            )
        )
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()


def test_session_status_transitions():
    session = CoachingSession(
        coach_id="coach-1",
        mentee_id="mentee-1",
        start_time=datetime(2025, 1, 6, 10, 0),
        end_time=datetime(2025, 1, 6, 11, 0),
        duration_minutes=60,
        status=SessionStatus.SCHEDULED.value,
    )

    session.transition_to(SessionStatus.RESCHEDULED)
    session.transition_to(SessionStatus.SCHEDULED)
    session.transition_to(SessionStatus.CANCELLED)

    with pytest.raises(IllegalStatusTransition):
        session.transition_to(SessionStatus.SCHEDULED)
    with pytest.raises(IllegalStatusTransition):
        session.transition_to(SessionStatus.COMPLETED)
