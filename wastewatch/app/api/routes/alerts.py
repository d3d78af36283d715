from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from wastewatch.app.db import get_db
from wastewatch.app.services import alert_service


router = APIRouter(prefix="/api/alerts", tags=["alerts"])


class AlertOut(BaseModel):
    id: str
    alert_type: str
    dedup_key: str
    subscription_id: Optional[str]
    transaction_id: Optional[str]
    severity: str
    message: str
    metadata: Optional[dict] = Field(default=None, validation_alias="metadata_json")
    condition_fingerprint: Optional[str]
    status: str
    created_at: datetime
    updated_at: datetime
    dismissed_at: Optional[datetime]

    class Config:
        from_attributes = True


@router.get("", response_model=List[AlertOut])
def list_alerts(
    include_dismissed: bool = Query(default=False),
    alert_type: Optional[str] = Query(default=None),
    subscription_id: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return alert_service.list_alerts(
        db,
        include_dismissed=include_dismissed,
        alert_type=alert_type,
        subscription_id=subscription_id,
        limit=limit,
        offset=offset,
    )


@router.post("/{alert_id}/dismiss", response_model=AlertOut)
def dismiss_alert(alert_id: str, db: Session = Depends(get_db)):
    alert = alert_service.dismiss_alert(db, alert_id)
    db.commit()
    db.refresh(alert)
    return alert


@router.post("/{alert_id}/restore", response_model=AlertOut)
def restore_alert(alert_id: str, db: Session = Depends(get_db)):
    alert = alert_service.restore_alert(db, alert_id)
    db.commit()
    db.refresh(alert)
    return alert
