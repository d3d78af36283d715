from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from wastewatch.app.db import get_db
from wastewatch.app.services import audit_service, subscription_service


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class SubscriptionOut(BaseModel):
    id: str
    account_id: str
    merchant: str
    amount: Optional[float]
    frequency: Optional[str]
    status: str
    user_acknowledged: bool
    acknowledged_at: Optional[datetime]
    first_seen_date: Optional[date]
    last_transaction_date: Optional[date]
    detected_at: datetime
    cancelled_at: Optional[datetime]
    cancelled_monthly_amount: Optional[float]
    updated_at: datetime

    class Config:
        from_attributes = True


class MerchantClassificationIn(BaseModel):
    merchant: str
    is_subscription: bool


class MerchantClassificationOut(BaseModel):
    merchant: str
    classification: str
    source: str


class CancelledSubscriptionOut(BaseModel):
    id: str
    merchant: str
    monthly_amount: float
    cancelled_at: str
    months_counted: int
    months_remaining: int
    savings: float


class SavingsReportOut(BaseModel):
    total_savings: float
    total_monthly_saved: float
    cancelled_count: int
    cancelled: List[CancelledSubscriptionOut]


@router.get("", response_model=List[SubscriptionOut])
def list_subscriptions(
    account_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    return subscription_service.list_subscriptions(db, account_id=account_id, status=status)


@router.get("/savings", response_model=SavingsReportOut)
def savings(db: Session = Depends(get_db)):
    return subscription_service.savings_report(db)


@router.post("/merchants/classification", response_model=MerchantClassificationOut)
def set_merchant_classification(req: MerchantClassificationIn, db: Session = Depends(get_db)):
    if not req.merchant.strip():
        raise HTTPException(400, "merchant is required")
    try:
        out = subscription_service.set_merchant_classification(
            db, req.merchant, is_subscription=req.is_subscription
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    db.commit()
    return out


@router.get("/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(subscription_id: str, db: Session = Depends(get_db)):
    return subscription_service.require_subscription(db, subscription_id)


@router.get("/{subscription_id}/audit")
def subscription_audit(
    subscription_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    cursor: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    subscription_service.require_subscription(db, subscription_id)
    return audit_service.subscription_history(db, subscription_id, limit=limit, cursor=cursor)


@router.post("/{subscription_id}/acknowledge", response_model=SubscriptionOut)
def acknowledge(subscription_id: str, db: Session = Depends(get_db)):
    sub = subscription_service.acknowledge_subscription(db, subscription_id)
    db.commit()
    db.refresh(sub)
    return sub


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
def cancel(subscription_id: str, db: Session = Depends(get_db)):
    sub = subscription_service.cancel_subscription(db, subscription_id)
    db.commit()
    db.refresh(sub)
    return sub


@router.post("/{subscription_id}/exclude", response_model=SubscriptionOut)
def exclude(subscription_id: str, db: Session = Depends(get_db)):
    sub = subscription_service.exclude_subscription(db, subscription_id)
    db.commit()
    db.refresh(sub)
    return sub


@router.post("/{subscription_id}/unexclude", response_model=SubscriptionOut)
def unexclude(subscription_id: str, db: Session = Depends(get_db)):
    sub = subscription_service.unexclude_subscription(db, subscription_id)
    db.commit()
    db.refresh(sub)
    return sub


@router.delete("/{subscription_id}")
def delete(subscription_id: str, db: Session = Depends(get_db)):
    subscription_service.delete_subscription(db, subscription_id)
    db.commit()
    return {"deleted": subscription_id}
