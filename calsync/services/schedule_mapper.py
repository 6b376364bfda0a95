# calsync/services/schedule_mapper.py
"""
Mapping between the provider's schedule shape and CoachingSchedule rows.

Ownership is split per field: the provider is authoritative for the
scheduling fields (name, time zone, weekly availability, overrides, default
flag) and we are authoritative for commercial policy (durations, buffers,
notice, rate) and stats. Mapping in either direction only ever touches the
side's own fields.
"""
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from calsync.models.coaching_schedule import CoachingSchedule, ScheduleSyncSource
from calsync.schemas.schedule import ExternalSchedule
from calsync.timeutils import to_utc_naive, utcnow

EXTERNALLY_OWNED_FIELDS = ("name", "time_zone", "availability", "overrides", "is_default")

INTERNALLY_OWNED_DEFAULTS = {
    "default_duration": 60,
    "minimum_duration": 30,
    "maximum_duration": 120,
    "allow_custom_duration": False,
    "buffer_before": 0,
    "buffer_after": 0,
    "minimum_notice": 0,
    "slot_interval": None,
    "session_rate": None,
    "currency": None,
    "average_rating": None,
    "total_sessions": 0,
}

ExternalLike = Union[ExternalSchedule, Dict[str, Any]]


def _as_external(external: ExternalLike) -> ExternalSchedule:
    if isinstance(external, ExternalSchedule):
        return external
    return ExternalSchedule.model_validate(external)


def normalize_time(value: str) -> str:
    """'9:00', '09:00:00' and '09:00' all become '09:00'."""
    parts = str(value).strip().split(":")
    hours = int(parts[0])
    minutes = int(parts[1]) if len(parts) > 1 else 0
    return f"{hours:02d}:{minutes:02d}"


def _availability_dicts(external: ExternalSchedule) -> List[Dict[str, Any]]:
    return [
        {
            "days": list(rule.days),
            "startTime": normalize_time(rule.start_time),
            "endTime": normalize_time(rule.end_time),
        }
        for rule in external.availability
    ]


def _override_dicts(external: ExternalSchedule) -> Optional[List[Dict[str, Any]]]:
    if external.overrides is None:
        return None
    return [
        {
            "date": o.date,
            "startTime": normalize_time(o.start_time),
            "endTime": normalize_time(o.end_time),
        }
        for o in external.overrides
    ]


def to_internal(
    external: ExternalLike,
    coach_id: str,
    existing: Optional[CoachingSchedule] = None,
    synced_at: Optional[datetime] = None,
) -> CoachingSchedule:
    """
    Build a transient CoachingSchedule from a provider schedule.

    Deterministic for a given `synced_at`; `existing` is read, never
    mutated. Merge the result with `db.merge()` to update the stored row.
    """
    ext = _as_external(external)
    synced_at = to_utc_naive(synced_at) if synced_at is not None else utcnow()

    internal = {
        field: getattr(existing, field) if existing is not None else default
        for field, default in INTERNALLY_OWNED_DEFAULTS.items()
    }
    for field, default in INTERNALLY_OWNED_DEFAULTS.items():
        if internal[field] is None:
            internal[field] = default

    schedule = CoachingSchedule(
        coach_id=coach_id,
        cal_schedule_id=ext.id if ext.id is not None else (existing.cal_schedule_id if existing else None),
        name=ext.name,
        time_zone=ext.time_zone,
        availability=_availability_dicts(ext),
        overrides=_override_dicts(ext),
        is_default=bool(ext.is_default),
        active=True,
        sync_source=ScheduleSyncSource.EXTERNAL.value,
        last_synced_at=synced_at,
        external_fingerprint=external_fingerprint(ext),
        **internal,
    )
    if existing is not None:
        schedule.id = existing.id
        schedule.created_at = existing.created_at
    return schedule


def to_external_payload(schedule: CoachingSchedule) -> Dict[str, Any]:
    """The provider's camelCase body for POST/PATCH /schedules."""
    payload: Dict[str, Any] = {
        "name": schedule.name,
        "timeZone": schedule.time_zone,
        "availability": [
            {
                "days": list(rule["days"]),
                "startTime": normalize_time(rule["startTime"]),
                "endTime": normalize_time(rule["endTime"]),
            }
            for rule in (schedule.availability or [])
        ],
        "isDefault": bool(schedule.is_default),
    }
    if schedule.overrides is not None:
        payload["overrides"] = [
            {
                "date": o["date"],
                "startTime": normalize_time(o["startTime"]),
                "endTime": normalize_time(o["endTime"]),
            }
            for o in schedule.overrides
        ]
    return payload


def _rule_keys(rules: Iterable[Dict[str, Any]]) -> List[Tuple[FrozenSet[str], str, str]]:
    return sorted(
        (
            (frozenset(rule["days"]), normalize_time(rule["startTime"]), normalize_time(rule["endTime"]))
            for rule in rules
        ),
        key=lambda k: (sorted(k[0]), k[1], k[2]),
    )


def _override_keys(overrides: Optional[Iterable[Dict[str, Any]]]) -> List[Tuple[str, str, str]]:
    return sorted(
        (o["date"], normalize_time(o["startTime"]), normalize_time(o["endTime"]))
        for o in (overrides or [])
    )


def _fields_of_internal(schedule: CoachingSchedule) -> Dict[str, Any]:
    return {
        "name": schedule.name,
        "time_zone": schedule.time_zone,
        "is_default": bool(schedule.is_default),
        "availability": _rule_keys(schedule.availability or []),
        "overrides": _override_keys(schedule.overrides),
    }


def _fields_of_external(external: ExternalLike) -> Dict[str, Any]:
    ext = _as_external(external)
    return {
        "name": ext.name,
        "time_zone": ext.time_zone,
        "is_default": bool(ext.is_default),
        "availability": _rule_keys(_availability_dicts(ext)),
        "overrides": _override_keys(_override_dicts(ext)),
    }


def has_changes(internal: CoachingSchedule, external: ExternalLike) -> bool:
    """
    True when the externally-owned fields differ semantically.

    Rule order, weekday order and override order are ignored; a missing
    override list equals an empty one.
    """
    return _fields_of_internal(internal) != _fields_of_external(external)


def _digest(fields: Dict[str, Any]) -> str:
    canonical = {
        "name": fields["name"],
        "time_zone": fields["time_zone"],
        "is_default": fields["is_default"],
        "availability": [[sorted(days), start, end] for days, start, end in fields["availability"]],
        "overrides": [list(o) for o in fields["overrides"]],
    }
    return hashlib.sha256(json.dumps(canonical, sort_keys=True).encode("utf-8")).hexdigest()


def external_fingerprint(external: ExternalLike) -> str:
    return _digest(_fields_of_external(external))


def internal_fingerprint(schedule: CoachingSchedule) -> str:
    return _digest(_fields_of_internal(schedule))
