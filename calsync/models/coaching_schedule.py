# calsync/models/coaching_schedule.py
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    text,
)

from calsync.models.base import Base
from calsync.timeutils import utcnow


class ScheduleSyncSource(str, Enum):
    EXTERNAL = "EXTERNAL"      # last written from the provider
    INTERNAL = "INTERNAL"      # edited locally, not yet pushed
    RECONCILED = "RECONCILED"  # pushed, both sides agree


class CoachingSchedule(Base):
    """
    One coach's availability definition.

    Field ownership:
      - provider owns name, time_zone, availability, overrides, is_default
      - we own duration/buffer/notice/rate policy and stats
    """

    __tablename__ = "coaching_schedules"
    __table_args__ = (
        CheckConstraint(
            "minimum_duration <= default_duration AND default_duration <= maximum_duration",
            name="ck_coaching_schedules_duration_bounds",
        ),
        # One active default schedule per coach
        Index(
            "uq_coaching_schedules_default_per_coach",
            "coach_id",
            unique=True,
            sqlite_where=text("is_default = 1 AND active = 1"),
            postgresql_where=text("is_default AND active"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    coach_id = Column(String, nullable=False, index=True)

    # Nullable until the first successful sync
    cal_schedule_id = Column(Integer, nullable=True, index=True)

    name = Column(String(255), nullable=False)
    time_zone = Column(String(64), nullable=False, default="UTC")

    # [{"days": ["Monday", ...], "startTime": "09:00", "endTime": "17:00"}]
    availability = Column(JSON, nullable=False, default=list)
    # [{"date": "2025-01-06", "startTime": "00:00", "endTime": "00:00"}]
    overrides = Column(JSON, nullable=True)

    is_default = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    # Duration policy (minutes)
    default_duration = Column(Integer, nullable=False, default=60)
    minimum_duration = Column(Integer, nullable=False, default=30)
    maximum_duration = Column(Integer, nullable=False, default=120)
    allow_custom_duration = Column(Boolean, nullable=False, default=False)

    # Buffer policy (minutes)
    buffer_before = Column(Integer, nullable=False, default=0)
    buffer_after = Column(Integer, nullable=False, default=0)

    # Booking policy
    minimum_notice = Column(Integer, nullable=False, default=0)
    slot_interval = Column(Integer, nullable=True)
    session_rate = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)

    # Stats
    average_rating = Column(Float, nullable=True)
    total_sessions = Column(Integer, nullable=False, default=0)

    sync_source = Column(
        String(16),
        nullable=False,
        default=ScheduleSyncSource.INTERNAL.value,
    )
    last_synced_at = Column(DateTime, nullable=True)
    external_fingerprint = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def validate_duration_policy(self) -> None:
        if not (self.minimum_duration <= self.default_duration <= self.maximum_duration):
            raise ValueError(
                "duration policy must satisfy minimum_duration <= default_duration <= maximum_duration"
            )
        if self.buffer_before < 0 or self.buffer_after < 0:
            raise ValueError("buffers must not be negative")
