# calsync/models/calendar_integration.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from calsync.models.base import Base
from calsync.timeutils import utcnow

PROVIDER_CAL = "CAL"


class CalendarIntegration(Base):
    __tablename__ = "calendar_integrations"
    __table_args__ = (
        UniqueConstraint("coach_id", "provider", name="uq_calendar_integrations_coach_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    coach_id = Column(String, nullable=False, index=True)
    provider = Column(String(16), nullable=False, default=PROVIDER_CAL)

    # Provider-side identity of the managed user
    cal_managed_user_id = Column(Integer, nullable=True, index=True)
    cal_username = Column(String(255), nullable=True)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    access_token_expires_at = Column(DateTime, nullable=True)

    # Bumped on every token write; refreshes compare-and-swap on it
    token_version = Column(Integer, nullable=False, default=0)

    # Mirrored from the provider profile (/me)
    default_schedule_id = Column(Integer, nullable=True)
    time_zone = Column(String(64), nullable=True)
    locale = Column(String(16), nullable=True)
    week_start = Column(String(16), nullable=True)

    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        # Never include token values
        return (
            f"<CalendarIntegration id={self.id} coach_id={self.coach_id!r} "
            f"provider={self.provider!r} token_version={self.token_version}>"
        )
