# calsync/services/token_service.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from calsync.config import get_settings
from calsync.errors import (
    NotConnected,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    TokenInvalid,
    TokenRefreshFailed,
)
from calsync.models.calendar_integration import PROVIDER_CAL, CalendarIntegration
from calsync.services.cal_client import BearerAuth, CalClient
from calsync.timeutils import as_utc, parse_datetime, to_utc_naive, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TokenStatus:
    is_expired: bool
    is_expiring_imminent: bool
    expires_at: Optional[datetime]

    @property
    def needs_refresh(self) -> bool:
        return self.is_expired or self.is_expiring_imminent


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime  # aware UTC


def token_status(
    expires_at: Any,
    now: Optional[datetime] = None,
    buffer_minutes: Optional[int] = None,
) -> TokenStatus:
    """
    Expiry state of a stored access token.

    A missing or unparsable expiry counts as already expired.
    """
    if buffer_minutes is None:
        buffer_minutes = get_settings().TOKEN_EXPIRY_BUFFER_MINUTES
    now = as_utc(now) if now is not None else as_utc(utcnow())

    parsed = parse_datetime(expires_at)
    if parsed is None:
        return TokenStatus(is_expired=True, is_expiring_imminent=True, expires_at=None)

    is_expired = now >= parsed
    imminent = is_expired or now + timedelta(minutes=buffer_minutes) >= parsed
    return TokenStatus(is_expired=is_expired, is_expiring_imminent=imminent, expires_at=parsed)


def get_integration(db: Session, coach_id: str) -> CalendarIntegration:
    integration = (
        db.query(CalendarIntegration)
        .filter_by(coach_id=coach_id, provider=PROVIDER_CAL)
        .first()
    )
    if integration is None:
        raise NotConnected(f"coach {coach_id} has no Cal.com integration")
    return integration


def issued_from_oauth(body: Dict[str, Any], previous_refresh_token: str, now: datetime) -> IssuedTokens:
    access_token = body.get("access_token") or body.get("accessToken")
    if not access_token:
        raise ProviderRejected("token response did not include an access token")

    refresh_token = body.get("refresh_token") or body.get("refreshToken") or previous_refresh_token

    if body.get("expires_in") is not None:
        expires_at = as_utc(now) + timedelta(seconds=int(body["expires_in"]))
    else:
        expires_at = parse_datetime(body.get("accessTokenExpiresAt"))
        if expires_at is None:
            raise ProviderRejected("token response did not include an expiry")

    return IssuedTokens(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)


def _request_new_tokens(
    client: CalClient,
    integration: CalendarIntegration,
    refresh_token: str,
    now: datetime,
) -> IssuedTokens:
    """
    Standard OAuth refresh, falling back to the managed-user force-refresh
    endpoint when the provider rejects the refresh token.
    """
    try:
        body = client.refresh_tokens(refresh_token)
    except ProviderRejected:
        if not integration.cal_managed_user_id:
            raise
        logger.warning(
            "Standard refresh rejected for coach %s, trying managed-user force refresh",
            integration.coach_id,
        )
        body = client.force_refresh_managed_user(integration.cal_managed_user_id)
    return issued_from_oauth(body, refresh_token, now)


def store_tokens(
    db: Session,
    integration: CalendarIntegration,
    tokens: IssuedTokens,
    expected_version: Optional[int] = None,
) -> bool:
    """
    Persist a token pair, compare-and-swap on token_version.

    Returns False when another writer bumped the version first; the caller
    should re-read the integration.
    """
    if expected_version is None:
        expected_version = integration.token_version

    updated = (
        db.query(CalendarIntegration)
        .filter(
            CalendarIntegration.id == integration.id,
            CalendarIntegration.token_version == expected_version,
        )
        .update(
            {
                CalendarIntegration.access_token: tokens.access_token,
                CalendarIntegration.refresh_token: tokens.refresh_token,
                CalendarIntegration.access_token_expires_at: to_utc_naive(tokens.expires_at),
                CalendarIntegration.token_version: expected_version + 1,
                CalendarIntegration.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(integration)
    return updated == 1


def _refresh(db: Session, integration: CalendarIntegration, client: CalClient, now: datetime) -> str:
    version = integration.token_version
    refresh_token = integration.refresh_token

    try:
        tokens = _request_new_tokens(client, integration, refresh_token, now)
    except ProviderUnavailable as e:
        raise TokenRefreshFailed(f"refresh for coach {integration.coach_id} failed: {e}") from e
    except ProviderRejected as e:
        # Possibly a refresh race: another request may have rotated the
        # refresh token already. Re-read once before failing outward.
        db.refresh(integration)
        if integration.token_version != version:
            status = token_status(integration.access_token_expires_at, now)
            if not status.needs_refresh:
                logger.info(
                    "Coach %s token was refreshed concurrently, using stored token",
                    integration.coach_id,
                )
                return integration.access_token
            if integration.refresh_token != refresh_token:
                try:
                    tokens = _request_new_tokens(client, integration, integration.refresh_token, now)
                except ProviderError as retry_error:
                    raise TokenRefreshFailed(
                        f"refresh for coach {integration.coach_id} failed after re-read: {retry_error}"
                    ) from retry_error
                version = integration.token_version
            else:
                raise TokenRefreshFailed(f"refresh for coach {integration.coach_id} rejected: {e}") from e
        else:
            raise TokenRefreshFailed(f"refresh for coach {integration.coach_id} rejected: {e}") from e

    if store_tokens(db, integration, tokens, expected_version=version):
        logger.info("Refreshed Cal.com token for coach %s (version %s)", integration.coach_id, version + 1)
        return tokens.access_token

    # Lost the compare-and-swap; whatever the winner stored is current.
    logger.info("Coach %s token written concurrently, using the stored pair", integration.coach_id)
    return integration.access_token


def ensure_valid_token(
    db: Session,
    coach_id: str,
    client: CalClient,
    *,
    force_refresh: bool = False,
    now: Optional[datetime] = None,
) -> str:
    """
    Return an access token that is valid for at least the expiry buffer.

    Raises NotConnected when the coach has no integration and
    TokenRefreshFailed when a needed refresh fails. Never returns a stale
    token.
    """
    now = as_utc(now) if now is not None else as_utc(utcnow())
    integration = get_integration(db, coach_id)

    status = token_status(integration.access_token_expires_at, now)
    if not force_refresh and not status.needs_refresh:
        return integration.access_token

    logger.info(
        "Coach %s token needs refresh (expired=%s, imminent=%s, forced=%s)",
        coach_id,
        status.is_expired,
        status.is_expiring_imminent,
        force_refresh,
    )
    return _refresh(db, integration, client, now)


def authorized_request(
    db: Session,
    coach_id: str,
    client: CalClient,
    call: Callable[[BearerAuth], Any],
    *,
    now: Optional[datetime] = None,
) -> Any:
    """
    Run `call(auth)` with the coach's bearer token.

    A 401/498 forces exactly one refresh and one retry; a second rejection
    is a hard failure.
    """
    token = ensure_valid_token(db, coach_id, client, now=now)
    try:
        return call(BearerAuth(token))
    except TokenInvalid:
        logger.info("Provider rejected token for coach %s, refreshing once", coach_id)

    token = ensure_valid_token(db, coach_id, client, force_refresh=True, now=now)
    try:
        return call(BearerAuth(token))
    except TokenInvalid as e:
        raise ProviderRejected(
            f"provider rejected a freshly refreshed token for coach {coach_id}",
            status_code=e.provider_status,
            provider_message=e.provider_message,
            user_message=TokenRefreshFailed.user_message,
        ) from e
