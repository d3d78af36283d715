from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wastewatch.app.detection.lifecycle import (
    InvalidTransition,
    Transition,
    cancel_transition,
    check_transition,
    monthly_equivalent,
)
from wastewatch.app.detection.pattern import PatternMatch
from wastewatch.app.detection.records import SubscriptionSnapshot, as_utc
from wastewatch.app.detection.series import Series
from wastewatch.app.models import Alert, Subscription, naive_utc, utcnow
from wastewatch.app.services import audit_service, merchant_cache_service

logger = logging.getLogger(__name__)

SAVINGS_MAX_MONTHS = 12


@dataclass
class UpsertResult:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    untouched: List[str] = field(default_factory=list)


def require_subscription(db: Session, subscription_id: str) -> Subscription:
    sub = db.get(Subscription, subscription_id)
    if not sub:
        raise HTTPException(404, "subscription not found")
    return sub


def list_subscriptions(
    db: Session,
    *,
    account_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Subscription]:
    stmt = select(Subscription)
    if account_id:
        stmt = stmt.where(Subscription.account_id == account_id)
    if status:
        stmt = stmt.where(Subscription.status == status)
    return db.execute(stmt.order_by(Subscription.merchant.asc(), Subscription.id.asc())).scalars().all()


def snapshots(db: Session, *, account_id: Optional[str] = None) -> Dict[str, SubscriptionSnapshot]:
    return {sub.id: SubscriptionSnapshot.from_row(sub) for sub in list_subscriptions(db, account_id=account_id)}


# -------------------------
# Pattern matcher writes
# -------------------------

def _refresh_active(sub: Subscription, match: PatternMatch, now: datetime) -> bool:
    changed = False
    series = match.series
    if sub.amount is None or abs(sub.amount - match.amount) > 0.005:
        sub.amount = match.amount
        changed = True
    if sub.frequency != match.frequency:
        sub.frequency = match.frequency
        changed = True
    if sub.last_transaction_date != series.last_date:
        sub.last_transaction_date = series.last_date
        changed = True
    if sub.first_seen_date is None or (series.first_date and series.first_date < sub.first_seen_date):
        sub.first_seen_date = series.first_date
        changed = True
    if changed:
        sub.updated_at = naive_utc(now)
    return changed


def upsert_from_matches(db: Session, matches: Dict[Any, PatternMatch], now: datetime) -> UpsertResult:
    """
    One Subscription per matched (account, merchant). New rows start active;
    active rows are refreshed; cancelled and excluded rows are left alone.
    """
    result = UpsertResult()
    for key in sorted(matches):
        match = matches[key]
        account_id, merchant = key
        sub = db.execute(
            select(Subscription).where(
                Subscription.account_id == account_id,
                Subscription.merchant == merchant,
            )
        ).scalar_one_or_none()

        if sub is None:
            sub = Subscription(
                account_id=account_id,
                merchant=merchant,
                amount=match.amount,
                frequency=match.frequency,
                status="active",
                user_acknowledged=False,
                first_seen_date=match.series.first_date,
                last_transaction_date=match.series.last_date,
                detected_at=naive_utc(now),
                updated_at=naive_utc(now),
            )
            try:
                with db.begin_nested():
                    db.add(sub)
                    db.flush()
            except IntegrityError:
                # another run inserted the same (account, merchant)
                logger.warning("subscription %s/%s inserted concurrently; refreshing instead", account_id, merchant)
                sub = db.execute(
                    select(Subscription).where(
                        Subscription.account_id == account_id,
                        Subscription.merchant == merchant,
                    )
                ).scalar_one()
            else:
                result.created.append(sub.id)
                audit_service.log_audit_event(
                    db,
                    event_type="subscription_detected",
                    actor=audit_service.SYSTEM_ACTOR,
                    reason=f"{match.profile} profile",
                    entity_type="subscription",
                    entity_id=sub.id,
                    before=None,
                    after=audit_service.serialize_subscription(sub),
                )
                continue

        if sub.status != "active":
            result.untouched.append(sub.id)
            continue
        if _refresh_active(sub, match, now):
            result.updated.append(sub.id)
    db.flush()
    return result


def advance_unmatched_charges(
    db: Session,
    series_map: Dict[Any, Series],
    matched: Iterable[Any],
    now: datetime,
) -> List[str]:
    """
    Active subscriptions whose series no longer fits a profile (a price change
    breaking the amount band, say) still move last_transaction_date forward.
    """
    skip = set(matched)
    advanced: List[str] = []
    rows = db.execute(select(Subscription).where(Subscription.status == "active")).scalars().all()
    for sub in rows:
        key = (sub.account_id, sub.merchant)
        if key in skip:
            continue
        series = series_map.get(key)
        last = series.last_date if series is not None else None
        if last is None:
            continue
        if sub.last_transaction_date is None or last > sub.last_transaction_date:
            sub.last_transaction_date = last
            sub.updated_at = naive_utc(now)
            advanced.append(sub.id)
    db.flush()
    return advanced


# -------------------------
# Lifecycle transitions
# -------------------------

def apply_transition(
    db: Session,
    transition: Transition,
    *,
    actor: str = audit_service.SYSTEM_ACTOR,
    reason: Optional[str] = None,
) -> Subscription:
    sub = require_subscription(db, transition.subscription_id)
    if sub.status != transition.from_status:
        raise InvalidTransition(
            f"subscription {sub.id} is {sub.status}, expected {transition.from_status}"
        )
    check_transition(sub.status, transition.to_status)

    before = audit_service.serialize_subscription(sub)
    for name, value in transition.changes.items():
        if isinstance(value, datetime):
            value = naive_utc(value)
        setattr(sub, name, value)
    sub.updated_at = naive_utc(utcnow())
    db.flush()
    audit_service.log_audit_event(
        db,
        event_type=transition.event_type,
        actor=actor,
        reason=reason,
        entity_type="subscription",
        entity_id=sub.id,
        before=before,
        after=audit_service.serialize_subscription(sub),
    )
    return sub


def _set_alert_status(db: Session, alerts: List[Alert], status: str, *, actor: str, reason: str, now: datetime) -> None:
    event_type = {"excluded": "alert_excluded", "dismissed": "alert_dismissed"}[status]
    for alert in alerts:
        before = audit_service.serialize_alert(alert)
        alert.status = status
        alert.updated_at = naive_utc(now)
        if status == "dismissed":
            alert.dismissed_at = naive_utc(now)
            alert.condition_fingerprint = None
        audit_service.log_audit_event(
            db,
            event_type=event_type,
            actor=actor,
            reason=reason,
            entity_type="alert",
            entity_id=alert.id,
            before=before,
            after=audit_service.serialize_alert(alert),
        )


def _alerts_for(db: Session, subscription_id: str, *, statuses) -> List[Alert]:
    return (
        db.execute(
            select(Alert)
            .where(Alert.subscription_id == subscription_id, Alert.status.in_(statuses))
            .order_by(Alert.created_at.asc(), Alert.id.asc())
        )
        .scalars()
        .all()
    )


# -------------------------
# User actions
# -------------------------

def acknowledge_subscription(db: Session, subscription_id: str, *, actor: str = "user", now: Optional[datetime] = None) -> Subscription:
    sub = require_subscription(db, subscription_id)
    now = now or utcnow()
    before = audit_service.serialize_subscription(sub)
    sub.user_acknowledged = True
    sub.acknowledged_at = naive_utc(now)
    sub.updated_at = naive_utc(now)
    db.flush()
    audit_service.log_audit_event(
        db,
        event_type="subscription_acknowledged",
        actor=actor,
        entity_type="subscription",
        entity_id=sub.id,
        before=before,
        after=audit_service.serialize_subscription(sub),
    )
    return sub


def cancel_subscription(db: Session, subscription_id: str, *, actor: str = "user", now: Optional[datetime] = None) -> Subscription:
    sub = require_subscription(db, subscription_id)
    try:
        transition = cancel_transition(SubscriptionSnapshot.from_row(sub), now or utcnow())
    except InvalidTransition as exc:
        raise HTTPException(409, str(exc)) from exc
    return apply_transition(db, transition, actor=actor, reason="user_cancel")


def exclude_subscription(db: Session, subscription_id: str, *, actor: str = "user", now: Optional[datetime] = None) -> Subscription:
    """
    Mark as "not a subscription": remembered as a RETAIL override for the
    merchant, and every alert of the subscription moves to excluded.
    """
    sub = require_subscription(db, subscription_id)
    try:
        check_transition(sub.status, "excluded")
    except InvalidTransition as exc:
        raise HTTPException(409, str(exc)) from exc
    now = now or utcnow()

    before = audit_service.serialize_subscription(sub)
    sub.status = "excluded"
    sub.updated_at = naive_utc(now)
    merchant_cache_service.set_user_override(db, sub.merchant, "RETAIL")
    _set_alert_status(
        db,
        _alerts_for(db, sub.id, statuses=("open", "dismissed")),
        "excluded",
        actor=actor,
        reason="subscription_excluded",
        now=now,
    )
    db.flush()
    audit_service.log_audit_event(
        db,
        event_type="subscription_excluded",
        actor=actor,
        entity_type="subscription",
        entity_id=sub.id,
        before=before,
        after=audit_service.serialize_subscription(sub),
    )
    return sub


def unexclude_subscription(db: Session, subscription_id: str, *, actor: str = "user", now: Optional[datetime] = None) -> Subscription:
    """
    Back to active. The override is removed and excluded alerts become
    dismissed with a cleared fingerprint, so the next run may re-open them.
    """
    sub = require_subscription(db, subscription_id)
    try:
        check_transition(sub.status, "active")
    except InvalidTransition as exc:
        raise HTTPException(409, str(exc)) from exc
    if sub.status != "excluded":
        raise HTTPException(409, "subscription is not excluded")
    now = now or utcnow()

    before = audit_service.serialize_subscription(sub)
    sub.status = "active"
    sub.updated_at = naive_utc(now)
    merchant_cache_service.clear_user_override(db, sub.merchant)
    _set_alert_status(
        db,
        _alerts_for(db, sub.id, statuses=("excluded",)),
        "dismissed",
        actor=actor,
        reason="subscription_unexcluded",
        now=now,
    )
    db.flush()
    audit_service.log_audit_event(
        db,
        event_type="subscription_unexcluded",
        actor=actor,
        entity_type="subscription",
        entity_id=sub.id,
        before=before,
        after=audit_service.serialize_subscription(sub),
    )
    return sub


def delete_subscription(db: Session, subscription_id: str, *, actor: str = "user") -> None:
    """Drops the subscription, its alerts and any cached oracle answer. Overrides stay."""
    sub = require_subscription(db, subscription_id)
    before = audit_service.serialize_subscription(sub)
    db.execute(delete(Alert).where(Alert.subscription_id == sub.id))
    merchant_cache_service.clear_oracle_entry(db, sub.merchant)
    db.delete(sub)
    db.flush()
    audit_service.log_audit_event(
        db,
        event_type="subscription_deleted",
        actor=actor,
        entity_type="subscription",
        entity_id=subscription_id,
        before=before,
        after=None,
    )


def set_merchant_classification(db: Session, merchant: str, *, is_subscription: bool, actor: str = "user") -> Dict[str, Any]:
    entry = merchant_cache_service.set_user_override(
        db, merchant, "SUBSCRIPTION" if is_subscription else "RETAIL"
    )
    audit_service.log_audit_event(
        db,
        event_type="merchant_override_set",
        actor=actor,
        entity_type="merchant",
        entity_id=None,
        before=None,
        after={"merchant": entry.merchant, "classification": entry.classification},
    )
    return {"merchant": entry.merchant, "classification": entry.classification, "source": entry.source}


# -------------------------
# Reports
# -------------------------

def _months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def savings_report(db: Session, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Savings from cancelled subscriptions, counted for at most 12 months each."""
    today = as_utc(now or utcnow()).date()
    rows = (
        db.execute(
            select(Subscription)
            .where(Subscription.status == "cancelled", Subscription.cancelled_at.is_not(None))
            .order_by(Subscription.cancelled_at.desc(), Subscription.id.asc())
        )
        .scalars()
        .all()
    )

    cancelled = []
    for sub in rows:
        monthly = sub.cancelled_monthly_amount
        if monthly is None:
            monthly = monthly_equivalent(sub.amount, sub.frequency)
        if monthly <= 0:
            continue
        cancelled_on = as_utc(sub.cancelled_at).date()
        months_counted = max(0, min(SAVINGS_MAX_MONTHS, _months_between(cancelled_on, today)))
        cancelled.append(
            {
                "id": sub.id,
                "merchant": sub.merchant,
                "monthly_amount": round(monthly, 2),
                "cancelled_at": cancelled_on.isoformat(),
                "months_counted": months_counted,
                "months_remaining": SAVINGS_MAX_MONTHS - months_counted,
                "savings": round(monthly * months_counted, 2),
            }
        )

    return {
        "total_savings": round(sum(c["savings"] for c in cancelled), 2),
        "total_monthly_saved": round(sum(c["monthly_amount"] for c in cancelled), 2),
        "cancelled_count": len(cancelled),
        "cancelled": cancelled,
    }
