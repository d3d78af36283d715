from __future__ import annotations

import logging
import threading
import zlib
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wastewatch.app.detection.detectors import Finding
from wastewatch.app.detection.errors import PersistenceConflict
from wastewatch.app.detection.lifecycle import alert_reopen_eligible
from wastewatch.app.detection.records import SubscriptionSnapshot
from wastewatch.app.models import Alert, naive_utc, utcnow
from wastewatch.app.services import audit_service

logger = logging.getLogger(__name__)

# writes for one dedup key always take the same stripe
LOCK_STRIPES = 64
_KEY_LOCKS: Tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(LOCK_STRIPES))


def _lock_for(dedup_key: str) -> threading.Lock:
    return _KEY_LOCKS[zlib.crc32(dedup_key.encode("utf-8")) % LOCK_STRIPES]


@dataclass
class EmitResult:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    reopened: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    suppression_reasons: Counter = field(default_factory=Counter)
    warnings: List[str] = field(default_factory=list)
    by_key: Dict[str, str] = field(default_factory=dict)

    @property
    def suppressed(self) -> int:
        return sum(self.suppression_reasons.values())


def require_alert(db: Session, alert_id: str) -> Alert:
    alert = db.get(Alert, alert_id)
    if not alert:
        raise HTTPException(404, "alert not found")
    return alert


def get_alert_by_key(db: Session, dedup_key: str) -> Optional[Alert]:
    return db.execute(select(Alert).where(Alert.dedup_key == dedup_key)).scalar_one_or_none()


def _apply_finding(alert: Alert, finding: Finding) -> bool:
    changed = (
        alert.message != finding.message
        or alert.severity != finding.severity
        or alert.metadata_json != finding.metadata
        or alert.condition_fingerprint != finding.fingerprint
        or alert.subscription_id != finding.subscription_id
        or alert.transaction_id != finding.transaction_id
    )
    alert.message = finding.message
    alert.severity = finding.severity
    alert.metadata_json = dict(finding.metadata)
    alert.condition_fingerprint = finding.fingerprint
    alert.subscription_id = finding.subscription_id
    alert.transaction_id = finding.transaction_id
    return changed


def _insert(db: Session, finding: Finding, now: datetime) -> Alert:
    alert = Alert(
        alert_type=finding.alert_type,
        dedup_key=finding.dedup_key,
        subscription_id=finding.subscription_id,
        transaction_id=finding.transaction_id,
        severity=finding.severity,
        message=finding.message,
        metadata_json=dict(finding.metadata),
        condition_fingerprint=finding.fingerprint,
        status="open",
        created_at=naive_utc(now),
        updated_at=naive_utc(now),
        last_detected_at=naive_utc(now),
    )
    with db.begin_nested():
        db.add(alert)
        db.flush()
    return alert


def _emit_one(
    db: Session,
    finding: Finding,
    subscription: Optional[SubscriptionSnapshot],
    now: datetime,
    *,
    retry: bool = True,
) -> Tuple[str, Optional[Alert]]:
    alert = get_alert_by_key(db, finding.dedup_key)

    if alert is None:
        if subscription is not None and subscription.status == "excluded":
            return "suppressed:subscription_excluded", None
        try:
            alert = _insert(db, finding, now)
        except IntegrityError:
            if not retry:
                raise PersistenceConflict(finding.dedup_key)
            logger.info("alert %s inserted concurrently; retrying as update", finding.dedup_key)
            return _emit_one(db, finding, subscription, now, retry=False)
        audit_service.log_audit_event(
            db,
            event_type="alert_created",
            actor=audit_service.SYSTEM_ACTOR,
            reason=finding.alert_type,
            entity_type="alert",
            entity_id=alert.id,
            before=None,
            after=audit_service.serialize_alert(alert),
        )
        return "created", alert

    if alert.status == "excluded":
        return "suppressed:alert_excluded", alert
    if subscription is not None and subscription.status == "excluded":
        return "suppressed:subscription_excluded", alert

    if not alert_reopen_eligible(alert, subscription, finding):
        return "suppressed:dismissed_unchanged", alert

    before = audit_service.serialize_alert(alert)
    if alert.status == "dismissed":
        _apply_finding(alert, finding)
        alert.status = "open"
        alert.dismissed_at = None
        alert.updated_at = naive_utc(now)
        alert.last_detected_at = naive_utc(now)
        event_type, outcome = "alert_reopened", "reopened"
    else:
        alert.last_detected_at = naive_utc(now)
        if not _apply_finding(alert, finding):
            return "unchanged", alert
        alert.updated_at = naive_utc(now)
        event_type, outcome = "alert_updated", "updated"

    db.flush()
    audit_service.log_audit_event(
        db,
        event_type=event_type,
        actor=audit_service.SYSTEM_ACTOR,
        reason=finding.alert_type,
        entity_type="alert",
        entity_id=alert.id,
        before=before,
        after=audit_service.serialize_alert(alert),
    )
    return outcome, alert


def emit_findings(
    db: Session,
    findings: Iterable[Finding],
    subscriptions: Dict[str, SubscriptionSnapshot],
    *,
    now: Optional[datetime] = None,
) -> EmitResult:
    """
    Persist findings, one alert per dedup key. Writes for one key are
    serialized in-process; the unique constraint on dedup_key catches
    writers in other processes.
    """
    now = now or utcnow()
    result = EmitResult()
    for finding in findings:
        subscription = subscriptions.get(finding.subscription_id) if finding.subscription_id else None
        with _lock_for(finding.dedup_key):
            try:
                outcome, alert = _emit_one(db, finding, subscription, now)
            except PersistenceConflict as exc:
                logger.warning("%s", exc)
                result.warnings.append(str(exc))
                continue

        if alert is not None:
            result.by_key[finding.dedup_key] = alert.id
        if outcome.startswith("suppressed:"):
            result.suppression_reasons[outcome.split(":", 1)[1]] += 1
        else:
            getattr(result, outcome).append(alert.id)
    db.flush()
    return result


# -------------------------
# User actions
# -------------------------

def list_alerts(
    db: Session,
    *,
    include_dismissed: bool = False,
    alert_type: Optional[str] = None,
    subscription_id: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
) -> List[Alert]:
    statuses = ("open", "dismissed") if include_dismissed else ("open",)
    stmt = select(Alert).where(Alert.status.in_(statuses))
    if alert_type:
        stmt = stmt.where(Alert.alert_type == alert_type)
    if subscription_id:
        stmt = stmt.where(Alert.subscription_id == subscription_id)
    stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.asc()).limit(limit).offset(offset)
    return db.execute(stmt).scalars().all()


def dismiss_alert(db: Session, alert_id: str, *, actor: str = "user", now: Optional[datetime] = None) -> Alert:
    alert = require_alert(db, alert_id)
    if alert.status == "dismissed":
        return alert
    if alert.status != "open":
        raise HTTPException(409, f"alert is {alert.status}")
    now = now or utcnow()
    before = audit_service.serialize_alert(alert)
    alert.status = "dismissed"
    alert.dismissed_at = naive_utc(now)
    alert.updated_at = naive_utc(now)
    db.flush()
    audit_service.log_audit_event(
        db,
        event_type="alert_dismissed",
        actor=actor,
        entity_type="alert",
        entity_id=alert.id,
        before=before,
        after=audit_service.serialize_alert(alert),
    )
    return alert


def restore_alert(db: Session, alert_id: str, *, actor: str = "user", now: Optional[datetime] = None) -> Alert:
    alert = require_alert(db, alert_id)
    if alert.status == "open":
        return alert
    if alert.status != "dismissed":
        raise HTTPException(409, f"alert is {alert.status}")
    now = now or utcnow()
    before = audit_service.serialize_alert(alert)
    alert.status = "open"
    alert.dismissed_at = None
    alert.updated_at = naive_utc(now)
    db.flush()
    audit_service.log_audit_event(
        db,
        event_type="alert_restored",
        actor=actor,
        entity_type="alert",
        entity_id=alert.id,
        before=before,
        after=audit_service.serialize_alert(alert),
    )
    return alert
