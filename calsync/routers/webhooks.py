# calsync/routers/webhooks.py
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from calsync.config import get_settings
from calsync.db.session import get_db
from calsync.services.cal_client import CalClient, get_cal_client
from calsync.services.webhook_service import (
    ensure_webhook,
    handle_provider_webhook,
    verify_signature,
)

router = APIRouter(tags=["webhooks"])


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/cal/webhooks/receiver")
def cal_webhook_receiver(
    body: bytes = Depends(raw_body),
    x_cal_signature_256: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """
    Cal.com booking webhook.

    The signature is checked against the raw body before parsing. Replays
    are acknowledged with status "duplicate" so the provider stops retrying.
    """
    verify_signature(body, x_cal_signature_256, get_settings().CAL_WEBHOOK_SECRET)

    try:
        event = json.loads(body or b"{}")
        ack = handle_provider_webhook(db, event)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "status": ack.status,
        "changed": ack.changed,
        "trigger": ack.trigger,
        "booking_uid": ack.booking_uid,
        "session_id": ack.session_id,
    }


@router.post("/coaches/{coach_id}/webhooks/ensure")
def ensure_coach_webhook(
    coach_id: str,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    hook = ensure_webhook(db, coach_id, cal_client) or {}
    return {
        "id": hook.get("id"),
        "subscriber_url": hook.get("subscriberUrl"),
        "triggers": hook.get("triggers"),
        "active": hook.get("active", True),
    }
