from datetime import date, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import func, select

from wastewatch.app.detection.detectors import Finding
from wastewatch.app.detection.records import SubscriptionSnapshot
from wastewatch.app.models import Alert, AuditLog, Subscription
from wastewatch.app.services import alert_service, subscription_service


@pytest.fixture()
def subscription(db_session, account):
    sub = Subscription(
        account_id=account.id,
        merchant="NETFLIX",
        amount=15.49,
        frequency="monthly",
        status="active",
        user_acknowledged=False,
        first_seen_date=date(2025, 12, 1),
        last_transaction_date=date(2026, 4, 1),
    )
    db_session.add(sub)
    db_session.flush()
    return sub


def _finding(sub, fingerprint="15.49->17.99", message="NETFLIX increased from $15.49 to $17.99 (+16.1%)"):
    return Finding(
        alert_type="price_increase",
        subject=f"subscription:{sub.id}",
        severity="medium",
        message=message,
        fingerprint=fingerprint,
        metadata={"fingerprint": fingerprint},
        subscription_id=sub.id,
    )


def _emit(db, findings, now):
    snapshots = subscription_service.snapshots(db)
    return alert_service.emit_findings(db, findings, snapshots, now=now)


def _alert_count(db):
    return db.execute(select(func.count()).select_from(Alert)).scalar_one()


def test_emit_is_idempotent(db_session, subscription, now):
    first = _emit(db_session, [_finding(subscription)], now)
    second = _emit(db_session, [_finding(subscription)], now + timedelta(days=1))

    assert len(first.created) == 1
    assert second.created == []
    assert second.updated == []
    assert second.unchanged == first.created
    assert _alert_count(db_session) == 1


def test_open_alert_is_updated_in_place(db_session, subscription, now):
    [alert_id] = _emit(db_session, [_finding(subscription)], now).created

    result = _emit(db_session, [_finding(subscription, "15.49->19.99", "NETFLIX increased again")], now)

    assert result.updated == [alert_id]
    alert = db_session.get(Alert, alert_id)
    assert alert.message == "NETFLIX increased again"
    assert alert.metadata_json == {"fingerprint": "15.49->19.99"}
    assert _alert_count(db_session) == 1


def test_dismissed_alert_is_not_resurrected_by_same_condition(db_session, subscription, now):
    [alert_id] = _emit(db_session, [_finding(subscription)], now).created
    alert_service.dismiss_alert(db_session, alert_id, now=now)

    result = _emit(db_session, [_finding(subscription)], now + timedelta(days=30))

    assert result.reopened == []
    assert result.suppression_reasons["dismissed_unchanged"] == 1
    assert db_session.get(Alert, alert_id).status == "dismissed"


def test_dismissed_alert_reopens_on_new_fingerprint(db_session, subscription, now):
    [alert_id] = _emit(db_session, [_finding(subscription)], now).created
    alert_service.dismiss_alert(db_session, alert_id, now=now)

    result = _emit(db_session, [_finding(subscription, "17.99->19.99")], now + timedelta(days=30))

    assert result.reopened == [alert_id]
    alert = db_session.get(Alert, alert_id)
    assert alert.status == "open"
    assert alert.dismissed_at is None


def test_excluded_subscription_suppresses_new_alerts(db_session, subscription, now):
    subscription.status = "excluded"
    db_session.flush()

    result = _emit(db_session, [_finding(subscription)], now)

    assert result.created == []
    assert result.suppressed == 1
    assert result.suppression_reasons["subscription_excluded"] == 1
    assert _alert_count(db_session) == 0


def test_excluded_alert_stays_excluded(db_session, subscription, now):
    [alert_id] = _emit(db_session, [_finding(subscription)], now).created
    db_session.get(Alert, alert_id).status = "excluded"
    db_session.flush()

    result = _emit(db_session, [_finding(subscription, "new->print")], now)

    assert result.suppression_reasons["alert_excluded"] == 1
    assert db_session.get(Alert, alert_id).status == "excluded"


def test_dismiss_and_restore_are_idempotent_and_audited(db_session, subscription, now):
    [alert_id] = _emit(db_session, [_finding(subscription)], now).created

    alert_service.dismiss_alert(db_session, alert_id, now=now)
    alert_service.dismiss_alert(db_session, alert_id, now=now)
    alert_service.restore_alert(db_session, alert_id, now=now)

    events = (
        db_session.execute(
            select(AuditLog.event_type).where(AuditLog.entity_id == alert_id).order_by(AuditLog.created_at.asc())
        )
        .scalars()
        .all()
    )
    assert sorted(events) == ["alert_created", "alert_dismissed", "alert_restored"]
    assert db_session.get(Alert, alert_id).status == "open"


def test_unknown_alert_is_404(db_session):
    with pytest.raises(HTTPException) as exc_info:
        alert_service.dismiss_alert(db_session, "missing")

    assert exc_info.value.status_code == 404


def test_list_alerts_hides_dismissed_by_default(db_session, subscription, now):
    [alert_id] = _emit(db_session, [_finding(subscription)], now).created
    alert_service.dismiss_alert(db_session, alert_id, now=now)

    assert alert_service.list_alerts(db_session) == []
    assert [a.id for a in alert_service.list_alerts(db_session, include_dismissed=True)] == [alert_id]


def test_snapshot_roundtrip_keeps_status(db_session, subscription):
    snapshot = SubscriptionSnapshot.from_row(subscription)

    assert snapshot.status == "active"
    assert snapshot.key == (subscription.account_id, "NETFLIX")


def test_key_locks_come_from_a_fixed_pool():
    first = alert_service._lock_for("zombie:subscription:abc")

    assert alert_service._lock_for("zombie:subscription:abc") is first
    locks = {id(alert_service._lock_for(f"zombie:subscription:{i}")) for i in range(5000)}
    assert len(locks) <= alert_service.LOCK_STRIPES
