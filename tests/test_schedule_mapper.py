# tests/test_schedule_mapper.py
from datetime import datetime
from decimal import Decimal

from calsync.models.coaching_schedule import CoachingSchedule, ScheduleSyncSource
from calsync.services.schedule_mapper import (
    external_fingerprint,
    has_changes,
    internal_fingerprint,
    normalize_time,
    to_external_payload,
    to_internal,
)

SYNCED_AT = datetime(2025, 1, 1, 12, 0)


def _external(**overrides):
    data = {
        "id": 501,
        "name": "Working hours",
        "timeZone": "Europe/Berlin",
        "isDefault": True,
        "availability": [
            {"days": ["Monday", "Tuesday"], "startTime": "09:00", "endTime": "17:00"},
            {"days": ["Friday"], "startTime": "10:00", "endTime": "14:00"},
        ],
        "overrides": [{"date": "2025-01-06", "startTime": "00:00", "endTime": "00:00"}],
    }
    data.update(overrides)
    return data


def test_to_internal_new_schedule_gets_policy_defaults():
    schedule = to_internal(_external(), "coach-1", synced_at=SYNCED_AT)

    assert schedule.coach_id == "coach-1"
    assert schedule.cal_schedule_id == 501
    assert schedule.name == "Working hours"
    assert schedule.time_zone == "Europe/Berlin"
    assert schedule.is_default is True
    assert schedule.default_duration == 60
    assert schedule.minimum_duration == 30
    assert schedule.maximum_duration == 120
    assert schedule.buffer_before == 0
    assert schedule.buffer_after == 0
    assert schedule.sync_source == ScheduleSyncSource.EXTERNAL.value
    assert schedule.last_synced_at == SYNCED_AT


def test_to_internal_keeps_internally_owned_fields_of_existing():
    existing = CoachingSchedule(
        id=7,
        coach_id="coach-1",
        cal_schedule_id=501,
        name="Old name",
        time_zone="UTC",
        availability=[],
        is_default=False,
        default_duration=45,
        minimum_duration=30,
        maximum_duration=90,
        allow_custom_duration=True,
        buffer_before=10,
        buffer_after=5,
        minimum_notice=120,
        session_rate=Decimal("80.00"),
        currency="EUR",
        total_sessions=12,
    )

    mapped = to_internal(_external(name="New name"), "coach-1", existing=existing, synced_at=SYNCED_AT)

    assert mapped.id == 7
    assert mapped.name == "New name"
    assert mapped.time_zone == "Europe/Berlin"
    assert mapped.default_duration == 45
    assert mapped.maximum_duration == 90
    assert mapped.allow_custom_duration is True
    assert mapped.buffer_before == 10
    assert mapped.buffer_after == 5
    assert mapped.minimum_notice == 120
    assert mapped.session_rate == Decimal("80.00")
    assert mapped.currency == "EUR"
    assert mapped.total_sessions == 12
    # existing is read, not mutated
    assert existing.name == "Old name"
    assert existing.time_zone == "UTC"


def test_to_internal_is_deterministic():
    a = to_internal(_external(), "coach-1", synced_at=SYNCED_AT)
    b = to_internal(_external(), "coach-1", synced_at=SYNCED_AT)

    assert a.availability == b.availability
    assert a.overrides == b.overrides
    assert a.external_fingerprint == b.external_fingerprint
    assert a.last_synced_at == b.last_synced_at


def test_has_changes_ignores_ordering():
    internal = to_internal(_external(), "coach-1", synced_at=SYNCED_AT)
    reordered = _external(
        availability=[
            {"days": ["Friday"], "startTime": "10:00", "endTime": "14:00"},
            {"days": ["Tuesday", "Monday"], "startTime": "9:00", "endTime": "17:00:00"},
        ]
    )

    assert has_changes(internal, reordered) is False
    assert external_fingerprint(reordered) == internal_fingerprint(internal)


def test_has_changes_detects_semantic_differences():
    internal = to_internal(_external(), "coach-1", synced_at=SYNCED_AT)

    assert has_changes(internal, _external(name="Evenings")) is True
    assert has_changes(internal, _external(timeZone="UTC")) is True
    assert has_changes(internal, _external(isDefault=False)) is True
    assert has_changes(
        internal,
        _external(availability=[{"days": ["Monday", "Tuesday"], "startTime": "09:00", "endTime": "18:00"}]),
    ) is True
    assert has_changes(
        internal,
        _external(overrides=[{"date": "2025-01-07", "startTime": "00:00", "endTime": "00:00"}]),
    ) is True


def test_missing_and_empty_overrides_are_equal():
    internal = to_internal(_external(overrides=None), "coach-1", synced_at=SYNCED_AT)

    assert has_changes(internal, _external(overrides=[])) is False


def test_round_trip_preserves_externally_owned_fields():
    original = to_internal(_external(), "coach-1", synced_at=SYNCED_AT)

    payload = to_external_payload(original)
    again = to_internal(payload, "coach-1", existing=original, synced_at=SYNCED_AT)

    assert payload["timeZone"] == "Europe/Berlin"
    assert payload["isDefault"] is True
    assert has_changes(original, payload) is False
    assert has_changes(again, to_external_payload(original)) is False


def test_normalize_time():
    assert normalize_time("9:00") == "09:00"
    assert normalize_time("09:00:00") == "09:00"
    assert normalize_time("17:30") == "17:30"
