# scripts/sync_tick.py
"""
Periodic calendar sync "tick".

Meant to run from cron or a Kubernetes CronJob. For every coach with sync
enabled (or one coach with --coach-id):
1. Make sure the Cal.com access token is valid, refreshing it if it is close
   to expiry.
2. Pull the coach's schedules.
3. Optionally re-check the booking webhook subscription.
4. Optionally create any standard event types the coach is missing.

One coach failing does not stop the others.
"""

from __future__ import annotations

import argparse
import logging

from calsync.db.session import SessionLocal
from calsync.errors import CalSyncError
from calsync.logging_config import configure_logging
from calsync.services.cal_client import get_cal_client
from calsync.services.event_type_service import ensure_default_event_types
from calsync.services.integration_service import list_sync_enabled
from calsync.services.schedule_sync_service import pull_schedules
from calsync.services.token_service import ensure_valid_token
from calsync.services.webhook_service import ensure_webhook

logger = logging.getLogger("calsync.sync_tick")


def run_once(
    coach_id: str | None = None,
    ensure_webhooks: bool = False,
    ensure_event_types: bool = False,
) -> int:
    """Returns the number of coaches that failed."""
    db = SessionLocal()
    failures = 0
    try:
        cal_client = get_cal_client()
        coach_ids = [coach_id] if coach_id else [i.coach_id for i in list_sync_enabled(db)]

        for cid in coach_ids:
            try:
                ensure_valid_token(db, cid, cal_client)
                result = pull_schedules(db, cid, cal_client)
                if ensure_webhooks:
                    ensure_webhook(db, cid, cal_client)
                if ensure_event_types:
                    ensure_default_event_types(db, cid, cal_client)
            except CalSyncError as e:
                db.rollback()
                failures += 1
                logger.warning("Sync for coach %s failed: %s: %s", cid, e.__class__.__name__, e)
                continue

            logger.info(
                "Synced coach %s (created=%s updated=%s deactivated=%s)",
                cid,
                result.created,
                result.updated,
                result.deactivated,
            )

        logger.info("Sync tick done: %s coaches, %s failed", len(coach_ids), failures)
    finally:
        db.close()
    return failures


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--coach-id",
        default=None,
        help="Only sync this coach",
    )
    parser.add_argument(
        "--ensure-webhooks",
        action="store_true",
        help="Also verify each coach's booking webhook subscription",
    )
    parser.add_argument(
        "--ensure-event-types",
        action="store_true",
        help="Also create missing standard event types for each coach",
    )
    args = parser.parse_args()

    configure_logging()
    failures = run_once(
        coach_id=args.coach_id,
        ensure_webhooks=args.ensure_webhooks,
        ensure_event_types=args.ensure_event_types,
    )
    raise SystemExit(1 if failures else 0)


if __name__ == "__main__":
    main()
