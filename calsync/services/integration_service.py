# calsync/services/integration_service.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from calsync.config import get_settings
from calsync.errors import CalSyncError, NotConnected
from calsync.models.calendar_integration import PROVIDER_CAL, CalendarIntegration
from calsync.services.cal_client import BearerAuth, CalClient
from calsync.services.event_type_service import ensure_default_event_types
from calsync.services.schedule_sync_service import pull_schedules
from calsync.services.token_service import (
    IssuedTokens,
    authorized_request,
    issued_from_oauth,
    store_tokens,
    token_status,
)
from calsync.services.webhook_service import ensure_webhook
from calsync.timeutils import as_utc, isoformat_utc, utcnow

logger = logging.getLogger(__name__)


def _apply_profile(integration: CalendarIntegration, profile: Dict[str, Any]) -> None:
    integration.cal_managed_user_id = profile.get("id", integration.cal_managed_user_id)
    integration.cal_username = profile.get("username", integration.cal_username)
    integration.time_zone = profile.get("timeZone", integration.time_zone)
    integration.locale = profile.get("locale", integration.locale)
    integration.week_start = profile.get("weekStart", integration.week_start)
    integration.default_schedule_id = profile.get("defaultScheduleId", integration.default_schedule_id)


def connect_coach(
    db: Session,
    coach_id: str,
    code: str,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> CalendarIntegration:
    """
    Finish the OAuth handshake for a coach.

    Exchanges the code for a stored token pair and mirrors the provider
    profile. The follow-up sync pulls schedules and registers the booking
    webhook, then creates any standard event types the coach lacks. A
    failure in the follow-up sync is logged; the connection itself stays.
    """
    now = as_utc(now) if now is not None else as_utc(utcnow())

    body = client.exchange_code(code, get_settings().CAL_REDIRECT_URI)
    tokens: IssuedTokens = issued_from_oauth(body, previous_refresh_token="", now=now)
    profile = client.get_me(BearerAuth(tokens.access_token)) or {}

    integration = (
        db.query(CalendarIntegration)
        .filter_by(coach_id=coach_id, provider=PROVIDER_CAL)
        .first()
    )
    if integration is None:
        integration = CalendarIntegration(
            coach_id=coach_id,
            provider=PROVIDER_CAL,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_version=0,
        )
        db.add(integration)

    _apply_profile(integration, profile)
    integration.sync_enabled = True
    db.commit()
    db.refresh(integration)

    store_tokens(db, integration, tokens)
    logger.info("Coach %s connected Cal.com user %s", coach_id, integration.cal_username)

    try:
        pull_schedules(db, coach_id, client, now=now)
        ensure_webhook(db, coach_id, client, now=now)
        ensure_default_event_types(db, coach_id, client, now=now)
    except CalSyncError as e:
        db.rollback()
        logger.warning("Initial sync for coach %s failed: %s", coach_id, e)

    db.refresh(integration)
    return integration


def _calendar_summary(connected: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    calendars: List[Dict[str, Any]] = []
    for entry in connected:
        integration = entry.get("integration") or {}
        for cal in entry.get("calendars") or []:
            calendars.append(
                {
                    "name": cal.get("name"),
                    "external_id": cal.get("externalId"),
                    "primary": bool(cal.get("primary")),
                    "selected": bool(cal.get("isSelected")),
                    "integration": integration.get("type") or integration.get("slug"),
                    "email": integration.get("email"),
                }
            )
    return calendars


def calendar_connection(
    db: Session,
    coach_id: str,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Whether the coach has linked at least one calendar to Cal.com.

    Without one, provider busy times are empty and every slot looks free.
    A provider failure reports the calendar as not connected.
    """
    try:
        data = authorized_request(db, coach_id, client, lambda auth: client.list_calendars(auth), now=now)
    except CalSyncError as e:
        logger.warning("Could not list calendars for coach %s: %s", coach_id, e)
        return {"calendar_connected": False, "calendars": []}

    connected = data.get("connectedCalendars") or [] if isinstance(data, dict) else []
    return {"calendar_connected": len(connected) > 0, "calendars": _calendar_summary(connected)}


def integration_status(
    db: Session,
    coach_id: str,
    client: Optional[CalClient] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    integration = (
        db.query(CalendarIntegration)
        .filter_by(coach_id=coach_id, provider=PROVIDER_CAL)
        .first()
    )
    if integration is None:
        raise NotConnected(f"coach {coach_id} has no Cal.com integration")

    status = token_status(integration.access_token_expires_at, now)
    result = {
        "coach_id": integration.coach_id,
        "provider": integration.provider,
        "cal_username": integration.cal_username,
        "time_zone": integration.time_zone,
        "sync_enabled": integration.sync_enabled,
        "last_synced_at": isoformat_utc(integration.last_synced_at),
        "token_expires_at": isoformat_utc(status.expires_at),
        "token_expired": status.is_expired,
        "token_expiring_soon": status.is_expiring_imminent,
    }
    if client is not None:
        result.update(calendar_connection(db, coach_id, client, now=now))
    return result


def list_sync_enabled(db: Session):
    return (
        db.query(CalendarIntegration)
        .filter_by(provider=PROVIDER_CAL, sync_enabled=True)
        .order_by(CalendarIntegration.id.asc())
        .all()
    )
