# calsync/services/webhook_service.py
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calsync.config import get_settings
from calsync.errors import InvalidWebhookSignature
from calsync.models.cal_booking import CalBooking, CalBookingStatus
from calsync.models.coaching_session import CoachingSession, SessionStatus
from calsync.models.webhook_event import WebhookEvent
from calsync.services.cal_client import DEFAULT_WEBHOOK_TRIGGERS, CalClient
from calsync.services.token_service import authorized_request
from calsync.timeutils import parse_datetime, to_utc_naive, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Cal-Signature-256"
RECEIVER_PATH = "/cal/webhooks/receiver"

# Outcomes
APPLIED = "applied"
IGNORED = "ignored"
REJECTED = "rejected"
DUPLICATE = "duplicate"

TRIGGER_ALIASES = {
    "BOOKING_CANCELED": "BOOKING_CANCELLED",
}

Notifier = Callable[[str, CoachingSession], None]


@dataclass
class WebhookAck:
    status: str
    changed: bool = False
    trigger: Optional[str] = None
    booking_uid: Optional[str] = None
    session_id: Optional[int] = None


@dataclass
class ProviderEvent:
    trigger: str
    booking_uid: Optional[str]
    previous_uid: Optional[str]
    start: Optional[datetime]
    end: Optional[datetime]
    created_at: Optional[str]
    cancellation_reason: Optional[str]
    payload: Dict[str, Any]


# --- Signature ------------------------------------------------------------------


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Check the provider's HMAC-SHA256 body signature.
    No configured secret means verification is off.
    """
    if not secret:
        return
    if not signature:
        raise InvalidWebhookSignature("missing webhook signature")

    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    if not hmac.compare_digest(compute_signature(raw_body, secret), provided):
        logger.warning("Rejected webhook with invalid signature")
        raise InvalidWebhookSignature("webhook signature mismatch")


# --- Parsing ----------------------------------------------------------------------


def parse_event(raw_event: Dict[str, Any]) -> ProviderEvent:
    """
    Accepts both shapes the provider has used:

      {"triggerEvent": ..., "createdAt": ..., "payload": {"uid": ..., ...}}
      {"type": ..., "bookingUid": ..., "payload": {...}}

    Raises ValueError when no trigger can be found.
    """
    if not isinstance(raw_event, dict):
        raise ValueError("webhook body must be a JSON object")

    trigger = raw_event.get("triggerEvent") or raw_event.get("type")
    if not trigger:
        raise ValueError("webhook body has no triggerEvent/type")
    trigger = str(trigger).upper()
    trigger = TRIGGER_ALIASES.get(trigger, trigger)

    payload = raw_event.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValueError("webhook payload must be a JSON object")

    booking_uid = payload.get("uid") or raw_event.get("bookingUid")
    previous_uid = payload.get("rescheduleUid") or payload.get("fromReschedule")

    start = parse_datetime(payload.get("startTime") or payload.get("start"))
    end = parse_datetime(payload.get("endTime") or payload.get("end"))
    if start is not None and end is not None and end <= start:
        raise ValueError("webhook payload ends before it starts")

    return ProviderEvent(
        trigger=trigger,
        booking_uid=booking_uid,
        previous_uid=previous_uid,
        start=start,
        end=end,
        created_at=raw_event.get("createdAt"),
        cancellation_reason=payload.get("cancellationReason"),
        payload=payload,
    )


def event_key(event: ProviderEvent) -> str:
    start = event.payload.get("startTime") or event.payload.get("start") or ""
    parts = [event.trigger, event.booking_uid or "", str(event.created_at or ""), str(start)]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


# --- State application --------------------------------------------------------------


def _find_booking(db: Session, event: ProviderEvent) -> Optional[CalBooking]:
    # A reschedule names the booking it moves in previous_uid
    for uid in (event.previous_uid, event.booking_uid):
        if not uid:
            continue
        booking = db.query(CalBooking).filter_by(cal_booking_uid=uid).first()
        if booking is not None:
            return booking
    return None


def _anomaly(event: ProviderEvent, booking: CalBooking, session: CoachingSession) -> str:
    logger.warning(
        "Webhook anomaly: %s for booking %s but session %s is %s; not applied",
        event.trigger,
        booking.cal_booking_uid,
        session.id,
        session.status,
    )
    return REJECTED


def _apply_created(event: ProviderEvent, booking: CalBooking, session: CoachingSession) -> tuple:
    if booking.status in (CalBookingStatus.CANCELLED.value, CalBookingStatus.REJECTED.value):
        return _anomaly(event, booking, session), False
    if booking.status == CalBookingStatus.PENDING.value:
        booking.transition_to(CalBookingStatus.CONFIRMED)
        return APPLIED, True
    return APPLIED, False


def _apply_rescheduled(event: ProviderEvent, booking: CalBooking, session: CoachingSession) -> tuple:
    if session.status not in (SessionStatus.SCHEDULED.value, SessionStatus.RESCHEDULED.value):
        return _anomaly(event, booking, session), False

    new_uid = event.booking_uid or booking.cal_booking_uid
    length = timedelta(minutes=session.duration_minutes)
    if event.start and event.end:
        new_start, new_end = to_utc_naive(event.start), to_utc_naive(event.end)
    elif event.start:
        new_start = to_utc_naive(event.start)
        new_end = new_start + length
    elif event.end:
        new_end = to_utc_naive(event.end)
        new_start = new_end - length
    else:
        new_start, new_end = session.start_time, session.end_time

    if (
        session.status == SessionStatus.SCHEDULED.value
        and booking.cal_booking_uid == new_uid
        and session.start_time == new_start
        and session.end_time == new_end
    ):
        return APPLIED, False

    if session.status == SessionStatus.SCHEDULED.value:
        session.transition_to(SessionStatus.RESCHEDULED)
    session.start_time = new_start
    session.end_time = new_end
    session.duration_minutes = int((new_end - new_start).total_seconds() // 60)
    session.transition_to(SessionStatus.SCHEDULED)

    booking.cal_booking_uid = new_uid
    booking.start_time = new_start
    booking.end_time = new_end
    return APPLIED, True


def _apply_cancelled(event: ProviderEvent, booking: CalBooking, session: CoachingSession) -> tuple:
    if session.status == SessionStatus.CANCELLED.value:
        changed = booking.status != CalBookingStatus.CANCELLED.value
        if changed:
            booking.transition_to(CalBookingStatus.CANCELLED)
        return APPLIED, changed
    if session.status == SessionStatus.COMPLETED.value:
        return _anomaly(event, booking, session), False

    session.transition_to(SessionStatus.CANCELLED)
    session.cancellation_reason = event.cancellation_reason
    session.cancelled_by = "provider"
    session.cancelled_at = utcnow()
    if booking.status != CalBookingStatus.CANCELLED.value:
        booking.transition_to(CalBookingStatus.CANCELLED)
    booking.cancellation_reason = event.cancellation_reason
    return APPLIED, True


def _apply_rejected(event: ProviderEvent, booking: CalBooking, session: CoachingSession) -> tuple:
    if booking.status != CalBookingStatus.PENDING.value:
        if booking.status == CalBookingStatus.REJECTED.value:
            return APPLIED, False
        return _anomaly(event, booking, session), False

    booking.transition_to(CalBookingStatus.REJECTED)
    if session.status in (SessionStatus.SCHEDULED.value, SessionStatus.RESCHEDULED.value):
        session.transition_to(SessionStatus.CANCELLED)
        session.cancelled_by = "provider"
        session.cancelled_at = utcnow()
    return APPLIED, True


HANDLERS = {
    "BOOKING_CREATED": _apply_created,
    "BOOKING_RESCHEDULED": _apply_rescheduled,
    "BOOKING_CANCELLED": _apply_cancelled,
    "BOOKING_REJECTED": _apply_rejected,
}


def handle_provider_webhook(
    db: Session,
    raw_event: Dict[str, Any],
    notifier: Optional[Notifier] = None,
) -> WebhookAck:
    """
    Apply one provider booking event to the datastore.

    Replays of an already-seen event are acknowledged as "duplicate" with no
    side effects. The notifier runs only when stored state actually changed.
    """
    event = parse_event(raw_event)
    key = event_key(event)

    if db.query(WebhookEvent).filter_by(event_key=key).first() is not None:
        logger.info("Duplicate webhook %s for booking %s", event.trigger, event.booking_uid)
        return WebhookAck(status=DUPLICATE, trigger=event.trigger, booking_uid=event.booking_uid)

    handler = HANDLERS.get(event.trigger)
    booking = _find_booking(db, event) if handler else None
    session = booking.session if booking is not None else None

    if handler is None or booking is None or session is None:
        outcome, changed = IGNORED, False
        logger.info("Ignoring webhook %s for unknown booking %s", event.trigger, event.booking_uid)
    else:
        outcome, changed = handler(event, booking, session)

    db.add(
        WebhookEvent(
            event_key=key,
            trigger_event=event.trigger,
            booking_uid=event.booking_uid,
            outcome=outcome,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if db.query(WebhookEvent).filter_by(event_key=key).first() is not None:
            # Another delivery of the same event won the ledger insert
            logger.info("Duplicate webhook %s for booking %s", event.trigger, event.booking_uid)
            return WebhookAck(status=DUPLICATE, trigger=event.trigger, booking_uid=event.booking_uid)
        logger.error(
            "Webhook %s for booking %s could not be stored; provider will redeliver",
            event.trigger,
            event.booking_uid,
        )
        raise

    ack = WebhookAck(
        status=outcome,
        changed=changed,
        trigger=event.trigger,
        booking_uid=event.booking_uid,
        session_id=session.id if session is not None else None,
    )

    if changed:
        logger.info("Webhook %s applied to session %s", event.trigger, ack.session_id)
        if notifier is not None:
            try:
                notifier(event.trigger, session)
            except Exception:
                logger.exception("Notifier failed for session %s", ack.session_id)

    return ack


# --- Subscription management ------------------------------------------------------


def receiver_url() -> str:
    return get_settings().WEBHOOK_BASE_URL.rstrip("/") + RECEIVER_PATH


def ensure_webhook(
    db: Session,
    coach_id: str,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Make sure the coach has exactly one active subscription to our receiver
    covering the booking triggers. Stale or partial ones are replaced.
    """
    url = receiver_url()
    wanted = set(DEFAULT_WEBHOOK_TRIGGERS)

    hooks = authorized_request(db, coach_id, client, lambda auth: client.list_webhooks(auth), now=now)

    keep = None
    for hook in hooks:
        if hook.get("subscriberUrl") != url:
            continue
        if keep is None and hook.get("active", True) and wanted <= set(hook.get("triggers") or []):
            keep = hook
            continue
        hook_id = hook.get("id")
        logger.info("Deleting stale webhook %s for coach %s", hook_id, coach_id)
        authorized_request(db, coach_id, client, lambda auth: client.delete_webhook(auth, hook_id), now=now)

    if keep is not None:
        return keep

    secret = get_settings().CAL_WEBHOOK_SECRET
    created = authorized_request(
        db,
        coach_id,
        client,
        lambda auth: client.register_webhook(auth, url, list(DEFAULT_WEBHOOK_TRIGGERS), secret),
        now=now,
    )
    logger.info("Registered webhook %s for coach %s", (created or {}).get("id"), coach_id)
    return created
