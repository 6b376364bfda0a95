# calsync/routers/integrations.py
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from calsync.db.session import get_db
from calsync.services.cal_client import CalClient, get_cal_client
from calsync.services.integration_service import connect_coach, integration_status

router = APIRouter(prefix="/coaches/{coach_id}/integration", tags=["integrations"])


class OAuthCallback(BaseModel):
    code: str = Field(..., min_length=1)


@router.post("/callback")
def oauth_callback(
    coach_id: str,
    payload: OAuthCallback,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """
    Complete the Cal.com OAuth flow for a coach, then run the initial
    schedule pull, webhook registration and event type setup.
    """
    connect_coach(db, coach_id, payload.code, cal_client)
    return integration_status(db, coach_id, cal_client)


@router.get("")
def get_integration_status(
    coach_id: str,
    db: Session = Depends(get_db),
    cal_client: CalClient = Depends(get_cal_client),
) -> Dict[str, Any]:
    """Token state plus whether a calendar is linked on Cal.com."""
    return integration_status(db, coach_id, cal_client)
