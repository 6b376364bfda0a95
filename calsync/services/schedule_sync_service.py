# calsync/services/schedule_sync_service.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from calsync.errors import InvalidDuration, NotFound, SyncConflict
from calsync.models.coaching_schedule import CoachingSchedule, ScheduleSyncSource
from calsync.schemas.schedule import ExternalSchedule, ScheduleUpdate
from calsync.services.cal_client import CalClient
from calsync.services.schedule_mapper import (
    EXTERNALLY_OWNED_FIELDS,
    external_fingerprint,
    has_changes,
    internal_fingerprint,
    to_external_payload,
    to_internal,
)
from calsync.services.token_service import authorized_request, get_integration
from calsync.timeutils import to_utc_naive, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PullResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deactivated: int = 0
    pending_push: int = 0


def _has_unpushed_edits(row: CoachingSchedule) -> bool:
    return row.sync_source == ScheduleSyncSource.INTERNAL.value


def _changed_upstream(row: CoachingSchedule, ext: ExternalSchedule) -> bool:
    """Did the provider copy move since we last synced this row?"""
    if not row.external_fingerprint:
        return has_changes(row, ext)
    return row.external_fingerprint != external_fingerprint(ext)


def _clear_other_defaults(db: Session, coach_id: str, keep_id: Optional[int]) -> None:
    others = (
        db.query(CoachingSchedule)
        .filter(CoachingSchedule.coach_id == coach_id, CoachingSchedule.is_default.is_(True))
        .all()
    )
    for row in others:
        if keep_id is None or row.id != keep_id:
            row.is_default = False
    # The partial unique index needs the old default cleared before a new one lands
    db.flush()


def get_default_schedule(db: Session, coach_id: str) -> CoachingSchedule:
    schedule = (
        db.query(CoachingSchedule)
        .filter_by(coach_id=coach_id, active=True)
        .order_by(CoachingSchedule.is_default.desc(), CoachingSchedule.id.asc())
        .first()
    )
    if schedule is None:
        raise NotFound(
            f"coach {coach_id} has no active schedule",
            user_message="This coach has not published any availability yet.",
        )
    return schedule


def pull_schedules(
    db: Session,
    coach_id: str,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> PullResult:
    """
    Bring the coach's provider schedules into the datastore.

    - rows whose provider copy is unchanged are left alone (no last_synced_at churn)
    - rows with unpushed local edits are kept as-is unless the provider copy
      also moved, which is a SyncConflict
    - schedules gone upstream are deactivated, never deleted
    """
    synced_at = to_utc_naive(now) if now is not None else utcnow()
    raw = authorized_request(db, coach_id, client, lambda auth: client.list_schedules(auth), now=now)
    externals: List[ExternalSchedule] = [ExternalSchedule.model_validate(s) for s in raw]

    rows = db.query(CoachingSchedule).filter_by(coach_id=coach_id).all()
    by_cal_id = {row.cal_schedule_id: row for row in rows if row.cal_schedule_id is not None}

    for ext in externals:
        row = by_cal_id.get(ext.id)
        if row is not None and _has_unpushed_edits(row) and _changed_upstream(row, ext) and has_changes(row, ext):
            raise SyncConflict(
                f"schedule {row.id} (cal {ext.id}) has local edits and changed upstream"
            )

    # At most one default; the first one the provider flags wins
    default_ext = next((ext for ext in externals if ext.is_default), None)
    for ext in externals:
        ext.is_default = ext is default_ext
    if default_ext is not None:
        keep = by_cal_id.get(default_ext.id)
        _clear_other_defaults(db, coach_id, keep.id if keep is not None else None)

    result = PullResult()
    seen_ids = set()
    for ext in externals:
        seen_ids.add(ext.id)
        row = by_cal_id.get(ext.id)

        if row is not None and _has_unpushed_edits(row):
            result.pending_push += 1
            continue
        if row is not None and row.active and not has_changes(row, ext):
            # A default flag cleared above can leave the stored fingerprint behind
            row.external_fingerprint = external_fingerprint(ext)
            result.unchanged += 1
            continue

        mapped = to_internal(ext, coach_id, existing=row, synced_at=synced_at)
        db.merge(mapped)
        if row is None:
            result.created += 1
        else:
            result.updated += 1

    for row in rows:
        if row.cal_schedule_id is not None and row.cal_schedule_id not in seen_ids and row.active:
            row.active = False
            row.is_default = False
            result.deactivated += 1

    integration = get_integration(db, coach_id)
    integration.last_synced_at = synced_at
    db.commit()

    logger.info(
        "Pulled schedules for coach %s: created=%s updated=%s unchanged=%s deactivated=%s pending_push=%s",
        coach_id,
        result.created,
        result.updated,
        result.unchanged,
        result.deactivated,
        result.pending_push,
    )
    return result


def push_schedule(
    db: Session,
    schedule_id: int,
    client: CalClient,
    *,
    now: Optional[datetime] = None,
) -> CoachingSchedule:
    """
    Send a locally edited schedule to the provider.

    Creates the upstream schedule on first push. Raises SyncConflict when the
    provider copy changed since the last sync.
    """
    schedule = db.get(CoachingSchedule, schedule_id)
    if schedule is None:
        raise NotFound(f"schedule {schedule_id} not found", user_message="Schedule not found.")

    coach_id = schedule.coach_id
    payload = to_external_payload(schedule)

    if schedule.cal_schedule_id is None:
        created = authorized_request(
            db, coach_id, client, lambda auth: client.create_schedule(auth, payload), now=now
        )
        schedule.cal_schedule_id = created["id"]
        logger.info("Created Cal.com schedule %s for schedule %s", schedule.cal_schedule_id, schedule.id)
    else:
        cal_id = schedule.cal_schedule_id
        current = ExternalSchedule.model_validate(
            authorized_request(db, coach_id, client, lambda auth: client.get_schedule(auth, cal_id), now=now)
        )
        if not has_changes(schedule, current):
            schedule.sync_source = ScheduleSyncSource.RECONCILED.value
            schedule.external_fingerprint = external_fingerprint(current)
            db.commit()
            return schedule
        if schedule.external_fingerprint and external_fingerprint(current) != schedule.external_fingerprint:
            raise SyncConflict(f"schedule {schedule.id} (cal {cal_id}) changed upstream since last sync")

        authorized_request(
            db, coach_id, client, lambda auth: client.update_schedule(auth, cal_id, payload), now=now
        )
        logger.info("Pushed schedule %s to Cal.com schedule %s", schedule.id, cal_id)

    schedule.sync_source = ScheduleSyncSource.RECONCILED.value
    schedule.last_synced_at = to_utc_naive(now) if now is not None else utcnow()
    schedule.external_fingerprint = internal_fingerprint(schedule)
    db.commit()
    db.refresh(schedule)
    return schedule


def update_local_schedule(db: Session, schedule_id: int, changes: ScheduleUpdate) -> CoachingSchedule:
    """Apply a local edit; edits to provider-owned fields mark the row INTERNAL until pushed."""
    schedule = db.get(CoachingSchedule, schedule_id)
    if schedule is None:
        raise NotFound(f"schedule {schedule_id} not found", user_message="Schedule not found.")

    data = changes.model_dump(exclude_unset=True)
    if "availability" in data and data["availability"] is not None:
        data["availability"] = [rule.model_dump(by_alias=True) for rule in changes.availability]
    if "overrides" in data and data["overrides"] is not None:
        data["overrides"] = [o.model_dump(by_alias=True) for o in changes.overrides]

    if data.get("is_default"):
        _clear_other_defaults(db, schedule.coach_id, schedule.id)

    touched_external = False
    for field, value in data.items():
        if value is None and field not in ("overrides", "slot_interval"):
            continue
        if getattr(schedule, field) != value:
            setattr(schedule, field, value)
            if field in EXTERNALLY_OWNED_FIELDS:
                touched_external = True

    try:
        schedule.validate_duration_policy()
    except ValueError as e:
        db.rollback()
        raise InvalidDuration(str(e), user_message=str(e).capitalize() + ".") from e

    if touched_external:
        schedule.sync_source = ScheduleSyncSource.INTERNAL.value

    db.commit()
    db.refresh(schedule)
    return schedule
