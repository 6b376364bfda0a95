# calsync/models/__init__.py
from calsync.models.base import Base  # noqa: F401

from calsync.models.calendar_integration import CalendarIntegration  # noqa: F401
from calsync.models.coaching_schedule import CoachingSchedule  # noqa: F401
from calsync.models.coaching_session import CoachingSession  # noqa: F401
from calsync.models.cal_booking import CalBooking  # noqa: F401
from calsync.models.webhook_event import WebhookEvent  # noqa: F401
from calsync.models.reconciliation_issue import ReconciliationIssue  # noqa: F401
