# calsync/models/reconciliation_issue.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from calsync.models.base import Base
from calsync.timeutils import utcnow


class ReconciliationIssue(Base):
    """
    Provider-side state we could neither mirror nor undo.

    Example: a booking the provider confirmed whose internal rows failed to
    persist, and whose compensating cancel also failed.
    """

    __tablename__ = "reconciliation_issues"

    id = Column(Integer, primary_key=True, index=True)

    kind = Column(String(64), nullable=False)
    coach_id = Column(String, nullable=True, index=True)
    cal_booking_uid = Column(String(255), nullable=True, index=True)
    session_id = Column(Integer, nullable=True)
    detail = Column(Text, nullable=True)

    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
