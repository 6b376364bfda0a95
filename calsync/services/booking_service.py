# calsync/services/booking_service.py
"""
Booking orchestration across the provider and our datastore.

The provider is the source of truth for calendar conflicts, so a booking is
confirmed there first and mirrored here second. There is no shared
transaction: a failed local write is undone by cancelling the provider
booking (compensation), and a failed compensation is recorded as a
ReconciliationIssue for an operator.

Two concurrent attempts for overlapping slots are not serialized here; the
provider's own availability check at booking time decides.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calsync.config import get_settings
from calsync.errors import (
    BookingConflict,
    BookingPolicyViolation,
    CalSyncError,
    CancellationWindowViolation,
    InvalidDuration,
    InvalidSessionState,
    NotFound,
    NotSessionOwner,
    ProviderRejected,
    ProviderUnavailable,
    ReconciliationRequired,
    SlotNoLongerAvailable,
)
from calsync.models.cal_booking import CalBooking, CalBookingStatus, status_from_provider
from calsync.models.coaching_schedule import CoachingSchedule
from calsync.models.coaching_session import CoachingSession, SessionStatus
from calsync.models.reconciliation_issue import ReconciliationIssue
from calsync.services.availability_service import clamp_date_range, fetch_busy_intervals
from calsync.services.cal_client import CalClient
from calsync.services.event_type_service import find_event_type_for_duration, list_coach_event_types
from calsync.services.schedule_sync_service import get_default_schedule
from calsync.services.slot_service import Interval, compute_slots, resolve_duration
from calsync.services.token_service import authorized_request
from calsync.timeutils import as_utc, isoformat_utc, parse_datetime, to_utc_naive, utcnow

logger = logging.getLogger(__name__)

COMPENSATION_REASON = "Booking could not be recorded"


class BookingState(str, Enum):
    REQUESTED = "REQUESTED"
    VALIDATED = "VALIDATED"
    PROVIDER_CONFIRMED = "PROVIDER_CONFIRMED"
    PERSISTED = "PERSISTED"
    COMMITTED = "COMMITTED"
    COMPENSATED = "COMPENSATED"
    FAILED = "FAILED"


@dataclass
class BookingRequest:
    coach_id: str
    mentee_id: str
    start_time: datetime
    attendee_name: str
    attendee_email: str
    duration_minutes: Optional[int] = None
    attendee_time_zone: str = "UTC"
    attendee_language: str = "en"
    notes: Optional[str] = None
    rate: Optional[Decimal] = None
    currency: Optional[str] = None
    event_type_id: Optional[int] = None


@dataclass
class BookingResult:
    session: CoachingSession
    cal_booking: CalBooking


@dataclass
class _Validated:
    schedule: CoachingSchedule
    duration: int
    start: datetime  # aware UTC
    end: datetime


def ensure_slot_free(
    db: Session,
    schedule: CoachingSchedule,
    start: datetime,
    duration: int,
    client: CalClient,
    *,
    now: datetime,
    ignore: Optional[Interval] = None,
) -> None:
    """
    Raise SlotNoLongerAvailable unless `start` is a bookable slot right now.

    `ignore` drops one busy interval, the session being moved when rescheduling.
    """
    tz = ZoneInfo(schedule.time_zone or "UTC")
    local_day = start.astimezone(tz).date()
    today = now.astimezone(tz).date()
    window_from, window_to = clamp_date_range(local_day, local_day, today)
    if window_to < window_from:
        raise SlotNoLongerAvailable(f"{isoformat_utc(start)} is outside the booking window")

    busy = fetch_busy_intervals(db, schedule, local_day, local_day, client, now=now)
    if ignore is not None:
        busy = [interval for interval in busy if interval != ignore]
    slots = compute_slots(schedule, busy, local_day, local_day, requested_duration=duration, now=now)
    if not any(as_utc(slot.start_time) == start for slot in slots):
        raise SlotNoLongerAvailable(f"{isoformat_utc(start)} is not a free slot for coach {schedule.coach_id}")


def _mentee_overlap(
    db: Session,
    mentee_id: str,
    start: datetime,
    end: datetime,
    exclude_session_id: Optional[int] = None,
) -> Optional[CoachingSession]:
    query = db.query(CoachingSession).filter(
        CoachingSession.mentee_id == mentee_id,
        CoachingSession.status == SessionStatus.SCHEDULED.value,
        CoachingSession.start_time < to_utc_naive(end),
        CoachingSession.end_time > to_utc_naive(start),
    )
    if exclude_session_id is not None:
        query = query.filter(CoachingSession.id != exclude_session_id)
    return query.first()


class BookingSaga:
    """
    One booking attempt:

        REQUESTED -> VALIDATED -> PROVIDER_CONFIRMED -> PERSISTED -> COMMITTED

    with COMPENSATED (provider booking cancelled after a failed local write)
    and FAILED as the terminal failure states. An attempt runs once.
    """

    def __init__(
        self,
        db: Session,
        client: CalClient,
        request: BookingRequest,
        *,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.client = client
        self.request = request
        self.now = as_utc(now) if now is not None else as_utc(utcnow())

        self.state = BookingState.REQUESTED
        self.history: List[BookingState] = [BookingState.REQUESTED]
        self.validated: Optional[_Validated] = None
        self.provider_booking: Optional[Dict[str, Any]] = None

    def _advance(self, state: BookingState) -> None:
        logger.info(
            "Booking coach=%s mentee=%s: %s -> %s",
            self.request.coach_id,
            self.request.mentee_id,
            self.state.value,
            state.value,
        )
        self.state = state
        self.history.append(state)

    def _authorized(self, call):
        return authorized_request(self.db, self.request.coach_id, self.client, call, now=self.now)

    def run(self) -> BookingResult:
        if self.state != BookingState.REQUESTED:
            raise RuntimeError(f"booking saga already ran (state {self.state.value})")

        try:
            self.validate()
            self.confirm_with_provider()
            result = self.persist()
        except CalSyncError:
            if self.state not in (BookingState.COMPENSATED, BookingState.FAILED):
                self._advance(BookingState.FAILED)
            raise

        self._advance(BookingState.COMMITTED)
        return result

    # --- VALIDATED ------------------------------------------------------------

    def validate(self) -> _Validated:
        req = self.request
        schedule = get_default_schedule(self.db, req.coach_id)
        duration = resolve_duration(schedule, req.duration_minutes)

        if req.rate is not None and schedule.session_rate is not None:
            if Decimal(str(req.rate)) != Decimal(str(schedule.session_rate)):
                raise BookingPolicyViolation(
                    f"rate {req.rate} does not match published rate {schedule.session_rate}"
                )
        if req.currency and schedule.currency and req.currency.upper() != schedule.currency.upper():
            raise BookingPolicyViolation(
                f"currency {req.currency} does not match published currency {schedule.currency}"
            )

        start = as_utc(req.start_time)
        end = start + timedelta(minutes=duration)

        overlapping = _mentee_overlap(self.db, req.mentee_id, start, end)
        if overlapping is not None:
            raise BookingConflict(
                f"mentee {req.mentee_id} already has session {overlapping.id} overlapping {isoformat_utc(start)}"
            )

        # Re-check against fresh busy times; the client's view may be stale
        ensure_slot_free(self.db, schedule, start, duration, self.client, now=self.now)

        self.validated = _Validated(schedule=schedule, duration=duration, start=start, end=end)
        self._advance(BookingState.VALIDATED)
        return self.validated

    # --- PROVIDER_CONFIRMED -----------------------------------------------------

    def _resolve_event_type_id(self, duration: int) -> int:
        if self.request.event_type_id is not None:
            return self.request.event_type_id

        event_types = list_coach_event_types(self.db, self.request.coach_id, self.client, now=self.now)
        if not event_types:
            raise BookingPolicyViolation(
                f"coach {self.request.coach_id} has no event types",
                user_message="This coach is not accepting bookings yet.",
            )
        event_type = find_event_type_for_duration(event_types, duration)
        if event_type is None:
            raise InvalidDuration(
                f"coach {self.request.coach_id} has no {duration}-minute event type",
                user_message=f"This coach does not offer {duration}-minute sessions.",
            )
        return event_type["id"]

    def _booking_payload(self, event_type_id: int) -> Dict[str, Any]:
        req = self.request
        v = self.validated
        payload: Dict[str, Any] = {
            "start": isoformat_utc(v.start),
            "eventTypeId": event_type_id,
            "attendee": {
                "name": req.attendee_name,
                "email": req.attendee_email,
                "timeZone": req.attendee_time_zone,
                "language": req.attendee_language,
            },
            "metadata": {
                "coachId": str(req.coach_id),
                "menteeId": str(req.mentee_id),
            },
        }
        if req.duration_minutes is not None:
            payload["lengthInMinutes"] = v.duration
        if req.notes:
            payload["bookingFieldsResponses"] = {"notes": req.notes}
        return payload

    def confirm_with_provider(self) -> Dict[str, Any]:
        event_type_id = self._resolve_event_type_id(self.validated.duration)
        payload = self._booking_payload(event_type_id)

        try:
            booking = self._authorized(lambda auth: self.client.create_booking(auth, payload))
        except ProviderRejected as e:
            if e.provider_status == 409:
                raise SlotNoLongerAvailable(f"provider refused the slot: {e.provider_message}") from e
            raise
        except ProviderUnavailable as e:
            booking = self._recover_unconfirmed(e)

        if not booking or not booking.get("uid"):
            raise ProviderRejected(
                "provider confirmed a booking without a uid",
                user_message="We could not confirm your booking. Please try again.",
            )

        self.provider_booking = booking
        self._advance(BookingState.PROVIDER_CONFIRMED)
        return booking

    def _find_provider_booking(self) -> Optional[Dict[str, Any]]:
        req = self.request
        v = self.validated
        candidates = self._authorized(
            lambda auth: self.client.list_bookings(
                auth,
                attendeeEmail=req.attendee_email,
                afterStart=isoformat_utc(v.start - timedelta(minutes=1)),
                beforeEnd=isoformat_utc(v.end + timedelta(minutes=1)),
            )
        )
        for candidate in candidates or []:
            start = parse_datetime(candidate.get("start") or candidate.get("startTime"))
            if start is None or as_utc(start) != v.start:
                continue
            if status_from_provider(candidate.get("status")) in (
                CalBookingStatus.CANCELLED,
                CalBookingStatus.REJECTED,
            ):
                continue
            mentee = (candidate.get("metadata") or {}).get("menteeId")
            if mentee is not None and str(mentee) != str(req.mentee_id):
                continue
            return candidate
        return None

    def _recover_unconfirmed(self, cause: ProviderUnavailable) -> Dict[str, Any]:
        """
        The create call failed in transit, so the provider may still have
        booked the slot. Adopt the booking if it exists; if we cannot tell,
        record it for an operator.
        """
        logger.warning(
            "Create booking for coach %s at %s did not answer, looking it up",
            self.request.coach_id,
            isoformat_utc(self.validated.start),
        )
        try:
            booking = self._find_provider_booking()
        except CalSyncError as lookup_error:
            self.db.add(
                ReconciliationIssue(
                    kind="unconfirmed_provider_booking",
                    coach_id=self.request.coach_id,
                    detail=(
                        f"create for mentee {self.request.mentee_id} at {isoformat_utc(self.validated.start)} "
                        f"failed: {cause}; lookup failed: {lookup_error}"
                    ),
                )
            )
            self.db.commit()
            self._advance(BookingState.FAILED)
            logger.error(
                "Booking for coach %s at %s is unconfirmed; reconciliation issue recorded",
                self.request.coach_id,
                isoformat_utc(self.validated.start),
            )
            raise ReconciliationRequired(
                f"provider booking for coach {self.request.coach_id} could not be confirmed"
            ) from cause

        if booking is None:
            raise cause
        logger.info("Adopted provider booking %s after a failed create call", booking.get("uid"))
        return booking

    # --- PERSISTED / COMPENSATED ------------------------------------------------

    def persist(self) -> BookingResult:
        req = self.request
        v = self.validated
        booking = self.provider_booking

        start = parse_datetime(booking.get("start")) or v.start
        end = parse_datetime(booking.get("end")) or v.end

        session = CoachingSession(
            coach_id=req.coach_id,
            mentee_id=req.mentee_id,
            start_time=to_utc_naive(start),
            end_time=to_utc_naive(end),
            duration_minutes=v.duration,
            status=SessionStatus.SCHEDULED.value,
            price=v.schedule.session_rate if v.schedule.session_rate is not None else req.rate,
            currency=v.schedule.currency or req.currency,
            notes=req.notes,
        )
        cal_booking = CalBooking(
            session=session,
            coach_id=req.coach_id,
            cal_booking_uid=booking["uid"],
            status=status_from_provider(booking.get("status")).value,
            title=booking.get("title"),
            start_time=to_utc_naive(start),
            end_time=to_utc_naive(end),
            attendee_name=req.attendee_name,
            attendee_email=req.attendee_email,
            meeting_url=booking.get("meetingUrl") or booking.get("location"),
        )

        try:
            self.db.add(session)
            self.db.add(cal_booking)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Persisting provider booking %s failed, compensating: %s",
                booking["uid"],
                e.__class__.__name__,
            )
            self.compensate(e)

        self.db.refresh(session)
        self.db.refresh(cal_booking)
        self._advance(BookingState.PERSISTED)
        return BookingResult(session=session, cal_booking=cal_booking)

    def compensate(self, cause: Exception) -> None:
        """Undo the provider booking. Always raises."""
        uid = self.provider_booking["uid"]
        try:
            self._authorized(lambda auth: self.client.cancel_booking(auth, uid, COMPENSATION_REASON))
        except CalSyncError as cancel_error:
            self.db.add(
                ReconciliationIssue(
                    kind="orphaned_provider_booking",
                    coach_id=self.request.coach_id,
                    cal_booking_uid=uid,
                    detail=(
                        f"persist failed: {cause.__class__.__name__}; "
                        f"compensating cancel failed: {cancel_error}"
                    ),
                )
            )
            self.db.commit()
            self._advance(BookingState.FAILED)
            logger.error("Provider booking %s is orphaned; reconciliation issue recorded", uid)
            raise ReconciliationRequired(f"provider booking {uid} could not be persisted or cancelled") from cause

        self._advance(BookingState.COMPENSATED)
        raise CalSyncError(
            f"provider booking {uid} was cancelled after a failed local write",
            user_message="We could not finish your booking. Please try again.",
        ) from cause


def create_booking(
    db: Session,
    request: BookingRequest,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> BookingResult:
    return BookingSaga(db, client, request, now=now).run()


def cancel_booking(
    db: Session,
    session_id: int,
    actor_id: str,
    client: CalClient,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CoachingSession:
    """
    Cancel a scheduled session with the provider first, then locally.

    Policy checks (ownership, status, cutoff) run before any provider call.
    A provider failure or timeout leaves the session untouched.
    """
    now = as_utc(now) if now is not None else as_utc(utcnow())

    session = db.get(CoachingSession, session_id)
    if session is None:
        raise NotFound(f"session {session_id} not found", user_message="Session not found.")

    if actor_id not in (session.mentee_id, session.coach_id):
        raise NotSessionOwner(f"{actor_id} does not own session {session_id}")

    if session.status != SessionStatus.SCHEDULED.value:
        raise InvalidSessionState(f"session {session_id} is {session.status}")

    cutoff_hours = get_settings().CANCELLATION_CUTOFF_HOURS
    if as_utc(session.start_time) - now < timedelta(hours=cutoff_hours):
        raise CancellationWindowViolation(
            f"session {session_id} starts within {cutoff_hours}h",
            user_message=f"Sessions cannot be cancelled within {cutoff_hours} hours of the start time.",
        )

    cal_booking = session.cal_booking
    if cal_booking is not None:
        uid = cal_booking.cal_booking_uid
        authorized_request(
            db,
            session.coach_id,
            client,
            lambda auth: client.cancel_booking(auth, uid, reason),
            now=now,
        )
        if cal_booking.status != CalBookingStatus.CANCELLED.value:
            cal_booking.transition_to(CalBookingStatus.CANCELLED)
        cal_booking.cancellation_reason = reason

    session.transition_to(SessionStatus.CANCELLED)
    session.cancellation_reason = reason
    session.cancelled_by = actor_id
    session.cancelled_at = to_utc_naive(now)
    db.commit()
    db.refresh(session)

    logger.info("Session %s cancelled by %s", session_id, actor_id)
    return session


def reschedule_booking(
    db: Session,
    session_id: int,
    actor_id: str,
    new_start: datetime,
    client: CalClient,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CoachingSession:
    """
    Move a scheduled session to a new start time, provider first.

    The new time is checked against fresh availability, ignoring the slot the
    session currently holds. The provider issues a new booking uid, which
    replaces the old one on the CalBooking row.
    """
    now = as_utc(now) if now is not None else as_utc(utcnow())

    session = db.get(CoachingSession, session_id)
    if session is None:
        raise NotFound(f"session {session_id} not found", user_message="Session not found.")

    if actor_id not in (session.mentee_id, session.coach_id):
        raise NotSessionOwner(
            f"{actor_id} does not own session {session_id}",
            user_message="You can only reschedule your own sessions.",
        )

    if session.status not in (SessionStatus.SCHEDULED.value, SessionStatus.RESCHEDULED.value):
        raise InvalidSessionState(
            f"session {session_id} is {session.status}",
            user_message="Only scheduled sessions can be rescheduled.",
        )

    cal_booking = session.cal_booking
    if cal_booking is None:
        raise InvalidSessionState(
            f"session {session_id} has no provider booking",
            user_message="This session cannot be rescheduled online.",
        )

    current = (as_utc(session.start_time), as_utc(session.end_time))
    start = as_utc(new_start)
    end = start + timedelta(minutes=session.duration_minutes)
    if start == current[0]:
        return session

    overlapping = _mentee_overlap(db, session.mentee_id, start, end, exclude_session_id=session.id)
    if overlapping is not None:
        raise BookingConflict(
            f"mentee {session.mentee_id} already has session {overlapping.id} overlapping {isoformat_utc(start)}"
        )

    schedule = get_default_schedule(db, session.coach_id)
    ensure_slot_free(db, schedule, start, session.duration_minutes, client, now=now, ignore=current)

    old_uid = cal_booking.cal_booking_uid
    try:
        moved = authorized_request(
            db,
            session.coach_id,
            client,
            lambda auth: client.reschedule_booking(auth, old_uid, isoformat_utc(start), reason),
            now=now,
        )
    except ProviderRejected as e:
        if e.provider_status == 409:
            raise SlotNoLongerAvailable(f"provider refused the new slot: {e.provider_message}") from e
        raise
    # On ProviderUnavailable nothing changes here; a move the provider did
    # make arrives later as a BOOKING_RESCHEDULED webhook.

    moved = moved or {}
    new_uid = moved.get("uid") or old_uid
    confirmed_start = parse_datetime(moved.get("start")) or start
    confirmed_end = parse_datetime(moved.get("end")) or end

    if session.status == SessionStatus.SCHEDULED.value:
        session.transition_to(SessionStatus.RESCHEDULED)
    session.start_time = to_utc_naive(confirmed_start)
    session.end_time = to_utc_naive(confirmed_end)
    session.transition_to(SessionStatus.SCHEDULED)

    cal_booking.cal_booking_uid = new_uid
    cal_booking.start_time = session.start_time
    cal_booking.end_time = session.end_time
    if moved.get("meetingUrl"):
        cal_booking.meeting_url = moved["meetingUrl"]

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        db.add(
            ReconciliationIssue(
                kind="unmirrored_provider_reschedule",
                coach_id=session.coach_id,
                cal_booking_uid=new_uid,
                session_id=session_id,
                detail=(
                    f"provider moved {old_uid} to {new_uid} at {isoformat_utc(confirmed_start)}; "
                    f"local update failed: {e.__class__.__name__}"
                ),
            )
        )
        db.commit()
        logger.error("Reschedule of session %s was not mirrored; reconciliation issue recorded", session_id)
        raise ReconciliationRequired(
            f"session {session_id} moved at the provider but not locally",
            user_message="Your session was moved, but we could not update it here. Our team has been notified.",
        ) from e

    db.refresh(session)
    logger.info("Session %s rescheduled by %s to %s", session_id, actor_id, isoformat_utc(confirmed_start))
    return session
