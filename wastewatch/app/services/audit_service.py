from __future__ import annotations

import base64
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi import HTTPException
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from wastewatch.app.models import Alert, AuditLog, Subscription

SYSTEM_ACTOR = "system"


def _iso(value: Optional[Any]) -> Optional[str]:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def serialize_subscription(sub: Subscription) -> Dict[str, Any]:
    return {
        "id": sub.id,
        "account_id": sub.account_id,
        "merchant": sub.merchant,
        "amount": sub.amount,
        "frequency": sub.frequency,
        "status": sub.status,
        "user_acknowledged": bool(sub.user_acknowledged),
        "acknowledged_at": _iso(sub.acknowledged_at),
        "first_seen_date": _iso(sub.first_seen_date),
        "last_transaction_date": _iso(sub.last_transaction_date),
        "cancelled_at": _iso(sub.cancelled_at),
        "cancelled_monthly_amount": sub.cancelled_monthly_amount,
    }


def serialize_alert(alert: Alert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "alert_type": alert.alert_type,
        "dedup_key": alert.dedup_key,
        "subscription_id": alert.subscription_id,
        "transaction_id": alert.transaction_id,
        "severity": alert.severity,
        "message": alert.message,
        "metadata": alert.metadata_json,
        "condition_fingerprint": alert.condition_fingerprint,
        "status": alert.status,
        "dismissed_at": _iso(alert.dismissed_at),
    }


def log_audit_event(
    db: Session,
    *,
    event_type: str,
    actor: str,
    reason: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    row = AuditLog(
        event_type=event_type,
        actor=actor,
        reason=reason,
        entity_type=entity_type,
        entity_id=entity_id,
        before_state=before,
        after_state=after,
    )
    db.add(row)
    db.flush()
    return row


def _audit_item(row: AuditLog) -> Dict[str, Any]:
    return {
        "id": row.id,
        "event_type": row.event_type,
        "actor": row.actor,
        "reason": row.reason,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "before_state": row.before_state,
        "after_state": row.after_state,
        "created_at": _iso(row.created_at),
    }


def _cursor_for(row: AuditLog) -> str:
    payload = json.dumps({"at": row.created_at.isoformat(), "id": row.id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def _parse_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        return datetime.fromisoformat(payload["at"]), str(payload["id"])
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(400, "invalid audit cursor") from exc


def list_audit_events(
    db: Session,
    *,
    entity_type: Optional[str] = None,
    entity_ids: Optional[Sequence[str]] = None,
    event_type: Optional[str] = None,
    actor: Optional[str] = None,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Newest-first page of audit rows, keyset-paginated on (created_at, id).
    """
    conditions = []
    if entity_type:
        conditions.append(AuditLog.entity_type == entity_type)
    if entity_ids:
        conditions.append(AuditLog.entity_id.in_(list(entity_ids)))
    if event_type:
        conditions.append(AuditLog.event_type == event_type)
    if actor:
        conditions.append(AuditLog.actor == actor)
    if cursor:
        at, last_id = _parse_cursor(cursor)
        conditions.append(
            or_(AuditLog.created_at < at, and_(AuditLog.created_at == at, AuditLog.id < last_id))
        )

    stmt = (
        select(AuditLog)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit + 1)
    )
    rows: List[AuditLog] = list(db.execute(stmt).scalars())
    page, overflow = rows[:limit], rows[limit:]
    return {
        "items": [_audit_item(row) for row in page],
        "next_cursor": _cursor_for(page[-1]) if overflow else None,
    }


def subscription_history(
    db: Session,
    subscription_id: str,
    *,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> Dict[str, Any]:
    """Audit rows of a subscription together with those of its alerts."""
    alert_ids = db.execute(select(Alert.id).where(Alert.subscription_id == subscription_id)).scalars().all()
    return list_audit_events(
        db,
        entity_ids=[subscription_id, *alert_ids],
        limit=limit,
        cursor=cursor,
    )
