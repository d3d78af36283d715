from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from wastewatch.app.api.routes.alerts import AlertOut
from wastewatch.app.db import get_db
from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.errors import ConfigInvalid
from wastewatch.app.models import DetectionRun
from wastewatch.app.services import detection_service, settings_service


router = APIRouter(prefix="/api/detection", tags=["detection"])


class DetectionRunIn(BaseModel):
    account_id: Optional[str] = None
    kinds: List[str] = Field(default_factory=lambda: ["all"])
    since: Optional[date] = None


class DetectionFailureOut(BaseModel):
    kind: str
    subject: str
    error: str


class DetectionResultsOut(BaseModel):
    run_id: Optional[str]
    status: str
    kinds: List[str]
    counts: Dict[str, int]
    subscriptions_found: int
    subscriptions_created: List[str]
    created_alert_ids: List[str]
    updated_alert_ids: List[str]
    reopened_alert_ids: List[str]
    suppressed: int
    suppression_reasons: Dict[str, int]
    succeeded_kinds: List[str]
    failed_kinds: List[str]
    failures: List[DetectionFailureOut]
    warnings: List[str]


class ReanalyzeIn(BaseModel):
    subscription_id: Optional[str] = None
    alert_id: Optional[str] = None


class ReanalyzeOut(BaseModel):
    alert: Optional[AlertOut]
    results: DetectionResultsOut


class DetectionConfigOut(BaseModel):
    effective: Dict[str, Any]
    overrides: Dict[str, Any]


class DetectionConfigIn(BaseModel):
    overrides: Dict[str, Any]
    replace: bool = False


class DetectionRunOut(BaseModel):
    id: str
    account_id: Optional[str]
    kinds: List[str]
    status: str
    counts_json: Optional[dict]
    failures_json: Optional[list]
    started_at: datetime
    finished_at: Optional[datetime]

    class Config:
        from_attributes = True


def _config_invalid(exc: ConfigInvalid) -> HTTPException:
    return HTTPException(400, {"message": str(exc), "errors": exc.errors})


@router.post("/run", response_model=DetectionResultsOut)
def run_detection(req: DetectionRunIn, db: Session = Depends(get_db)):
    try:
        results = detection_service.run_detection(
            db,
            account_id=req.account_id,
            kinds=req.kinds,
            since=req.since,
        )
    except ConfigInvalid as exc:
        raise _config_invalid(exc) from exc
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    db.commit()
    return results.as_dict()


@router.post("/reanalyze", response_model=ReanalyzeOut)
def reanalyze(req: ReanalyzeIn, db: Session = Depends(get_db)):
    try:
        outcome = detection_service.reanalyze(
            db,
            subscription_id=req.subscription_id,
            alert_id=req.alert_id,
        )
    except ConfigInvalid as exc:
        raise _config_invalid(exc) from exc
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    db.commit()
    alert = AlertOut.model_validate(outcome.alert) if outcome.alert is not None else None
    return {"alert": alert, "results": outcome.results.as_dict()}


@router.get("/config", response_model=DetectionConfigOut)
def get_config(db: Session = Depends(get_db)):
    try:
        config = settings_service.load_detection_config(db)
    except ConfigInvalid as exc:
        raise _config_invalid(exc) from exc
    return {"effective": config.model_dump(), "overrides": settings_service.stored_overrides(db)}


@router.put("/config", response_model=DetectionConfigOut)
def put_config(req: DetectionConfigIn, db: Session = Depends(get_db)):
    try:
        config = settings_service.update_overrides(db, req.overrides, replace=req.replace)
    except ConfigInvalid as exc:
        db.rollback()
        raise _config_invalid(exc) from exc
    db.commit()
    return {"effective": config.model_dump(), "overrides": settings_service.stored_overrides(db)}


@router.get("/defaults", response_model=Dict[str, Any])
def get_defaults():
    return DetectionConfig().model_dump()


@router.get("/runs", response_model=List[DetectionRunOut])
def list_runs(
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    rows = (
        db.execute(select(DetectionRun).order_by(DetectionRun.started_at.desc()).limit(limit))
        .scalars()
        .all()
    )
    return rows
