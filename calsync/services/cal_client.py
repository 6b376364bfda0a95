# calsync/services/cal_client.py
import logging
from datetime import date
from typing import Any, Dict, List, Optional

import requests
from requests.auth import AuthBase

from calsync.config import get_settings
from calsync.errors import ProviderRejected, ProviderUnavailable, TokenInvalid

logger = logging.getLogger(__name__)

# Cal.com answers 498 for an expired token on some endpoints
TOKEN_INVALID_STATUSES = (401, 498)

DEFAULT_WEBHOOK_TRIGGERS = ["BOOKING_CREATED", "BOOKING_RESCHEDULED", "BOOKING_CANCELLED"]


class BearerAuth(AuthBase):
    """Per-coach calls, authenticated with the coach's access token."""

    def __init__(self, access_token: str):
        self._access_token = access_token

    def __call__(self, r):
        r.headers["Authorization"] = f"Bearer {self._access_token}"
        return r

    def __repr__(self) -> str:
        return "BearerAuth(<redacted>)"


class ClientCredentialsAuth(AuthBase):
    """Platform-level calls, authenticated with the OAuth client's credentials."""

    def __init__(self, client_id: str, client_secret: str):
        self._client_id = client_id
        self._client_secret = client_secret

    def __call__(self, r):
        r.headers["x-cal-client-id"] = self._client_id
        r.headers["x-cal-secret-key"] = self._client_secret
        return r

    def __repr__(self) -> str:
        return f"ClientCredentialsAuth(client_id={self._client_id!r})"


def _provider_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:500] or response.reason or ""

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if body.get("message"):
            return str(body["message"])
    return str(body)[:500]


def _unwrap(body: Any) -> Any:
    """Cal.com wraps payloads as {"status": "success", "data": ...}."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class CalClient:
    """
    Thin wrapper around the Cal.com v2 REST API.

    - centralizes the base URL, version header, timeout and error mapping
    - tests replace it with a fake exposing the same methods
    """

    def __init__(
        self,
        base_url: str,
        api_version: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def client_credentials(self) -> ClientCredentialsAuth:
        if not self._client_id or not self._client_secret:
            raise RuntimeError("Cal.com client credentials are not configured")
        return ClientCredentialsAuth(self._client_id, self._client_secret)

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        auth: Optional[AuthBase] = None,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one call and return the parsed JSON body.

        Raises:
          TokenInvalid         401/498, the caller may refresh once and retry
          ProviderRejected     any other 4xx
          ProviderUnavailable  5xx, timeout or connection failure
        """
        url = f"{self._base_url}/{endpoint.lstrip('/')}"
        headers = {"cal-api-version": self._api_version}

        try:
            response = self._session.request(
                method,
                url,
                auth=auth,
                headers=headers,
                json=body,
                params=params,
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            logger.warning("Cal.com %s %s timed out after %ss", method, endpoint, self._timeout)
            raise ProviderUnavailable(f"{method} {endpoint} timed out") from e
        except requests.RequestException as e:
            logger.warning("Cal.com %s %s failed: %s", method, endpoint, e.__class__.__name__)
            raise ProviderUnavailable(f"{method} {endpoint} failed: {e.__class__.__name__}") from e

        status = response.status_code
        if 200 <= status < 300:
            if status == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise ProviderUnavailable(
                    f"{method} {endpoint} returned a non-JSON body", status_code=status
                ) from e

        message = _provider_message(response)
        logger.info("Cal.com %s %s -> %s: %s", method, endpoint, status, message)

        if status in TOKEN_INVALID_STATUSES:
            raise TokenInvalid(
                f"{method} {endpoint} rejected the access token ({status})",
                status_code=status,
                provider_message=message,
            )
        if status >= 500:
            raise ProviderUnavailable(
                f"{method} {endpoint} failed with {status}",
                status_code=status,
                provider_message=message,
            )
        raise ProviderRejected(
            f"{method} {endpoint} rejected with {status}: {message}",
            status_code=status,
            provider_message=message,
        )

    # --- OAuth -----------------------------------------------------------

    def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> Dict[str, Any]:
        body = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "authorization_code",
            "code": code,
        }
        if redirect_uri:
            body["redirect_uri"] = redirect_uri
        return _unwrap(self.request("oauth/token", "POST", body=body))

    def refresh_tokens(self, refresh_token: str) -> Dict[str, Any]:
        """Standard OAuth refresh. Returns access_token / refresh_token / expires_in."""
        body = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return _unwrap(self.request("oauth/token", "POST", body=body))

    def force_refresh_managed_user(self, managed_user_id: int) -> Dict[str, Any]:
        """Returns accessToken / refreshToken / accessTokenExpiresAt."""
        return _unwrap(
            self.request(
                f"oauth-clients/{self._client_id}/users/{managed_user_id}/force-refresh",
                "POST",
                auth=self.client_credentials,
            )
        )

    # --- Profile & calendars ----------------------------------------------

    def get_me(self, auth: AuthBase) -> Dict[str, Any]:
        return _unwrap(self.request("me", auth=auth))

    def list_calendars(self, auth: AuthBase) -> Any:
        return _unwrap(self.request("calendars", auth=auth))

    def get_busy_times(
        self,
        auth: AuthBase,
        date_from: date,
        date_to: date,
        time_zone: str = "UTC",
    ) -> List[Dict[str, Any]]:
        """[{"start": iso, "end": iso, "source": ...}]"""
        params = {
            "dateFrom": date_from.isoformat(),
            "dateTo": date_to.isoformat(),
            "loggedInUsersTz": time_zone,
        }
        return _unwrap(self.request("calendars/busy-times", auth=auth, params=params)) or []

    # --- Event types --------------------------------------------------------

    def list_event_types(self, auth: AuthBase, username: str) -> List[Dict[str, Any]]:
        return _unwrap(self.request("event-types", auth=auth, params={"username": username})) or []

    def create_event_type(self, auth: AuthBase, payload: Dict[str, Any]) -> Dict[str, Any]:
        return _unwrap(self.request("event-types", "POST", auth=auth, body=payload))

    def get_event_type_availability(
        self,
        auth: AuthBase,
        event_type_id: int,
        date_from: date,
        date_to: Optional[date] = None,
    ) -> Any:
        params = {"dateFrom": date_from.isoformat()}
        if date_to is not None:
            params["dateTo"] = date_to.isoformat()
        return _unwrap(
            self.request(f"event-types/{event_type_id}/availability", auth=auth, params=params)
        )

    # --- Schedules ------------------------------------------------------------

    def list_schedules(self, auth: AuthBase) -> List[Dict[str, Any]]:
        return _unwrap(self.request("schedules", auth=auth)) or []

    def get_schedule(self, auth: AuthBase, schedule_id: int) -> Dict[str, Any]:
        return _unwrap(self.request(f"schedules/{schedule_id}", auth=auth))

    def create_schedule(self, auth: AuthBase, payload: Dict[str, Any]) -> Dict[str, Any]:
        return _unwrap(self.request("schedules", "POST", auth=auth, body=payload))

    def update_schedule(self, auth: AuthBase, schedule_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return _unwrap(self.request(f"schedules/{schedule_id}", "PATCH", auth=auth, body=payload))

    # --- Bookings -------------------------------------------------------------

    def list_bookings(self, auth: AuthBase, **params: Any) -> List[Dict[str, Any]]:
        return _unwrap(self.request("bookings", auth=auth, params=params or None)) or []

    def create_booking(self, auth: AuthBase, payload: Dict[str, Any]) -> Dict[str, Any]:
        return _unwrap(self.request("bookings", "POST", auth=auth, body=payload))

    def cancel_booking(self, auth: AuthBase, booking_uid: str, reason: Optional[str] = None) -> Any:
        """`booking_uid` must be the provider's native uid, never an internal id."""
        body = {"cancellationReason": reason or "User requested cancellation"}
        return _unwrap(self.request(f"bookings/{booking_uid}/cancel", "POST", auth=auth, body=body))

    def reschedule_booking(
        self,
        auth: AuthBase,
        booking_uid: str,
        start: str,
        reason: Optional[str] = None,
        rescheduled_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Moves the booking; the provider answers with the new booking and its new uid."""
        body: Dict[str, Any] = {
            "start": start,
            "reschedulingReason": reason or "User requested reschedule",
        }
        if rescheduled_by:
            body["rescheduledBy"] = rescheduled_by
        return _unwrap(self.request(f"bookings/{booking_uid}/reschedule", "POST", auth=auth, body=body))

    # --- Webhooks -------------------------------------------------------------

    def list_webhooks(self, auth: AuthBase) -> List[Dict[str, Any]]:
        return _unwrap(self.request("webhooks", auth=auth)) or []

    def register_webhook(
        self,
        auth: AuthBase,
        subscriber_url: str,
        triggers: Optional[List[str]] = None,
        secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "subscriberUrl": subscriber_url,
            "triggers": triggers or list(DEFAULT_WEBHOOK_TRIGGERS),
            "active": True,
        }
        if secret:
            body["secret"] = secret
        return _unwrap(self.request("webhooks", "POST", auth=auth, body=body))

    def delete_webhook(self, auth: AuthBase, webhook_id: Any) -> None:
        self.request(f"webhooks/{webhook_id}", "DELETE", auth=auth)


def get_cal_client() -> CalClient:
    """
    FastAPI dependency to get a configured CalClient.
    Raises RuntimeError if configuration is incomplete.
    """
    settings = get_settings()

    missing: list[str] = []
    if not settings.CAL_CLIENT_ID:
        missing.append("CAL_CLIENT_ID")
    if not settings.CAL_CLIENT_SECRET:
        missing.append("CAL_CLIENT_SECRET")

    if missing:
        raise RuntimeError(f"Cal.com not configured, missing: {', '.join(missing)}")

    return CalClient(
        base_url=settings.CAL_API_BASE_URL,
        api_version=settings.CAL_API_VERSION,
        client_id=settings.CAL_CLIENT_ID,
        client_secret=settings.CAL_CLIENT_SECRET,
        timeout=settings.CAL_TIMEOUT_SECONDS,
    )
