# tests/test_webhook_service.py
from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calsync.db.session import SessionLocal, engine
from calsync.errors import InvalidWebhookSignature
from calsync.models import Base, CalBooking, CalendarIntegration, CoachingSession, WebhookEvent
from calsync.models.cal_booking import CalBookingStatus
from calsync.models.coaching_session import SessionStatus
from calsync.services.cal_client import DEFAULT_WEBHOOK_TRIGGERS
from calsync.services.webhook_service import (
    compute_signature,
    ensure_webhook,
    handle_provider_webhook,
    receiver_url,
    verify_signature,
)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def __call__(self, trigger, session):
        self.calls.append((trigger, session.id, session.status))


class FakeWebhookClient:
    def __init__(self, hooks):
        self.hooks = hooks
        self.deleted = []
        self.registered = []

    def list_webhooks(self, auth):
        return list(self.hooks)

    def delete_webhook(self, auth, webhook_id):
        self.deleted.append(webhook_id)

    def register_webhook(self, auth, subscriber_url, triggers=None, secret=None):
        hook = {"id": "wh-new", "subscriberUrl": subscriber_url, "triggers": triggers, "active": True}
        self.registered.append(hook)
        return hook


def _clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _seed_booking(uid="uid-1") -> int:
    db: Session = SessionLocal()
    try:
        session = CoachingSession(
            coach_id="coach-1",
            mentee_id="mentee-1",
            start_time=datetime(2025, 1, 6, 10, 0),
            end_time=datetime(2025, 1, 6, 11, 0),
            duration_minutes=60,
            status=SessionStatus.SCHEDULED.value,
        )
        db.add(session)
        db.add(
            CalBooking(
                session=session,
                coach_id="coach-1",
                cal_booking_uid=uid,
                status=CalBookingStatus.CONFIRMED.value,
                start_time=session.start_time,
                end_time=session.end_time,
            )
        )
        db.commit()
        return session.id
    finally:
        db.close()


def _event(trigger, uid="uid-1", created_at="2025-01-02T08:00:00Z", **payload):
    body = {"uid": uid, "startTime": "2025-01-06T10:00:00Z", "endTime": "2025-01-06T11:00:00Z"}
    body.update(payload)
    return {"triggerEvent": trigger, "createdAt": created_at, "payload": body}


def _session(session_id):
    db: Session = SessionLocal()
    try:
        session = db.get(CoachingSession, session_id)
        # load the relationship before closing
        session.cal_booking
        return session
    finally:
        db.close()


def test_cancellation_webhook_is_applied_once():
    _clean_db()
    session_id = _seed_booking()
    notifier = RecordingNotifier()
    event = _event("BOOKING_CANCELLED", cancellationReason="Coach is ill")

    db = SessionLocal()
    try:
        first = handle_provider_webhook(db, event, notifier=notifier)
        replay = handle_provider_webhook(db, event, notifier=notifier)
    finally:
        db.close()

    assert first.status == "applied"
    assert first.changed is True
    assert replay.status == "duplicate"
    assert notifier.calls == [("BOOKING_CANCELLED", session_id, SessionStatus.CANCELLED.value)]

    session = _session(session_id)
    assert session.status == SessionStatus.CANCELLED.value
    assert session.cancellation_reason == "Coach is ill"
    assert session.cal_booking.status == CalBookingStatus.CANCELLED.value


def test_redelivered_transition_has_no_side_effects():
    _clean_db()
    _seed_booking()
    notifier = RecordingNotifier()

    db = SessionLocal()
    try:
        handle_provider_webhook(db, _event("BOOKING_CANCELLED"), notifier=notifier)
        again = handle_provider_webhook(
            db, _event("BOOKING_CANCELLED", created_at="2025-01-02T08:05:00Z"), notifier=notifier
        )
        ledger = db.query(WebhookEvent).count()
    finally:
        db.close()

    assert again.status == "applied"
    assert again.changed is False
    assert len(notifier.calls) == 1
    assert ledger == 2


def test_reschedule_moves_session_and_adopts_new_uid():
    _clean_db()
    session_id = _seed_booking()
    notifier = RecordingNotifier()
    event = _event(
        "BOOKING_RESCHEDULED",
        uid="uid-2",
        rescheduleUid="uid-1",
        startTime="2025-01-08T15:00:00Z",
        endTime="2025-01-08T16:00:00Z",
    )

    db = SessionLocal()
    try:
        ack = handle_provider_webhook(db, event, notifier=notifier)
    finally:
        db.close()

    assert ack.status == "applied"
    assert ack.session_id == session_id
    session = _session(session_id)
    assert session.status == SessionStatus.SCHEDULED.value
    assert session.start_time == datetime(2025, 1, 8, 15, 0)
    assert session.end_time == datetime(2025, 1, 8, 16, 0)
    assert session.cal_booking.cal_booking_uid == "uid-2"
    assert len(notifier.calls) == 1


def test_backward_transition_after_cancel_is_rejected():
    _clean_db()
    session_id = _seed_booking()

    db = SessionLocal()
    try:
        handle_provider_webhook(db, _event("BOOKING_CANCELLED"))
        created = handle_provider_webhook(db, _event("BOOKING_CREATED", created_at="2025-01-03T00:00:00Z"))
        moved = handle_provider_webhook(
            db,
            _event("BOOKING_RESCHEDULED", created_at="2025-01-03T00:01:00Z", startTime="2025-01-09T10:00:00Z"),
        )
    finally:
        db.close()

    assert created.status == "rejected"
    assert moved.status == "rejected"
    session = _session(session_id)
    assert session.status == SessionStatus.CANCELLED.value
    assert session.start_time == datetime(2025, 1, 6, 10, 0)


def test_unknown_booking_is_ignored():
    _clean_db()
    notifier = RecordingNotifier()

    db = SessionLocal()
    try:
        ack = handle_provider_webhook(db, _event("BOOKING_CANCELLED", uid="not-ours"), notifier=notifier)
    finally:
        db.close()

    assert ack.status == "ignored"
    assert notifier.calls == []


def test_alternate_event_shape_is_accepted():
    _clean_db()
    session_id = _seed_booking()

    event = {
        "type": "BOOKING_CANCELED",
        "bookingUid": "uid-1",
        "payload": {"cancellationReason": "Schedule clash"},
    }

    db = SessionLocal()
    try:
        ack = handle_provider_webhook(db, event)
    finally:
        db.close()

    assert ack.status == "applied"
    assert _session(session_id).status == SessionStatus.CANCELLED.value


def test_event_without_trigger_is_invalid():
    _clean_db()

    db = SessionLocal()
    try:
        with pytest.raises(ValueError):
            handle_provider_webhook(db, {"payload": {"uid": "uid-1"}})
    finally:
        db.close()


def test_signature_verification():
    body = b'{"triggerEvent": "BOOKING_CREATED"}'
    good = compute_signature(body, "s3cret")

    verify_signature(body, good, "s3cret")
    verify_signature(body, f"sha256={good}", "s3cret")
    verify_signature(body, None, None)

    with pytest.raises(InvalidWebhookSignature):
        verify_signature(body, "deadbeef", "s3cret")
    with pytest.raises(InvalidWebhookSignature):
        verify_signature(body, None, "s3cret")
    with pytest.raises(InvalidWebhookSignature):
        verify_signature(body + b" ", good, "s3cret")


def _seed_integration():
    db: Session = SessionLocal()
    try:
        db.add(
            CalendarIntegration(
                coach_id="coach-1",
                provider="CAL",
                access_token="at-1",
                refresh_token="rt-1",
                access_token_expires_at=datetime(2099, 1, 1),
            )
        )
        db.commit()
    finally:
        db.close()


def test_ensure_webhook_replaces_partial_subscription():
    _clean_db()
    _seed_integration()
    client = FakeWebhookClient(
        [
            {"id": "wh-1", "subscriberUrl": receiver_url(), "triggers": ["BOOKING_CREATED"], "active": True},
            {"id": "wh-other", "subscriberUrl": "https://elsewhere.example.com/hook", "triggers": [], "active": True},
        ]
    )

    db = SessionLocal()
    try:
        hook = ensure_webhook(db, "coach-1", client)
    finally:
        db.close()

    assert client.deleted == ["wh-1"]
    assert hook["id"] == "wh-new"
    assert set(client.registered[0]["triggers"]) == set(DEFAULT_WEBHOOK_TRIGGERS)


def test_ensure_webhook_keeps_matching_subscription():
    _clean_db()
    _seed_integration()
    existing = {
        "id": "wh-1",
        "subscriberUrl": receiver_url(),
        "triggers": list(DEFAULT_WEBHOOK_TRIGGERS),
        "active": True,
    }
    client = FakeWebhookClient([existing])

    db = SessionLocal()
    try:
        hook = ensure_webhook(db, "coach-1", client)
    finally:
        db.close()

    assert hook == existing
    assert client.deleted == []
    assert client.registered == []


def test_reschedule_without_end_keeps_session_length():
    _clean_db()
    session_id = _seed_booking()
    event = {
        "triggerEvent": "BOOKING_RESCHEDULED",
        "createdAt": "2025-01-02T09:00:00Z",
        "payload": {"uid": "uid-1", "startTime": "2025-01-07T10:00:00Z"},
    }

    db = SessionLocal()
    try:
        ack = handle_provider_webhook(db, event)
        ledger = db.query(WebhookEvent).count()
    finally:
        db.close()

    assert ack.status == "applied"
    assert ack.changed is True
    assert ledger == 1
    session = _session(session_id)
    assert session.start_time == datetime(2025, 1, 7, 10, 0)
    assert session.end_time == datetime(2025, 1, 7, 11, 0)
    assert session.duration_minutes == 60


def test_storage_failure_is_not_acknowledged_as_duplicate():
    _clean_db()
    _seed_booking("uid-1")
    # A second session already holds the uid the reschedule moves to
    db: Session = SessionLocal()
    try:
        other = CoachingSession(
            coach_id="coach-1",
            mentee_id="mentee-2",
            start_time=datetime(2025, 1, 9, 10, 0),
            end_time=datetime(2025, 1, 9, 11, 0),
            duration_minutes=60,
            status=SessionStatus.SCHEDULED.value,
        )
        db.add(other)
        db.add(
            CalBooking(
                session=other,
                coach_id="coach-1",
                cal_booking_uid="uid-2",
                start_time=other.start_time,
                end_time=other.end_time,
            )
        )
        db.commit()
    finally:
        db.close()

    event = _event(
        "BOOKING_RESCHEDULED",
        uid="uid-2",
        rescheduleUid="uid-1",
        startTime="2025-01-08T15:00:00Z",
        endTime="2025-01-08T16:00:00Z",
    )

    db = SessionLocal()
    try:
        with pytest.raises(IntegrityError):
            handle_provider_webhook(db, event)
        assert db.query(WebhookEvent).count() == 0
    finally:
        db.close()


def test_payload_ending_before_start_is_invalid():
    _clean_db()
    _seed_booking()

    db = SessionLocal()
    try:
        with pytest.raises(ValueError):
            handle_provider_webhook(
                db,
                _event("BOOKING_RESCHEDULED", startTime="2025-01-07T11:00:00Z", endTime="2025-01-07T10:00:00Z"),
            )
    finally:
        db.close()


def test_non_object_payload_is_invalid():
    _clean_db()

    db = SessionLocal()
    try:
        with pytest.raises(ValueError):
            handle_provider_webhook(db, {"triggerEvent": "BOOKING_CANCELLED", "payload": []})
    finally:
        db.close()
