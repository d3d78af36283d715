from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.lifecycle import (
    InvalidTransition,
    alert_reopen_eligible,
    apply_to_snapshot,
    cancel_transition,
    cancellation_due,
    check_transition,
    effectively_acknowledged,
    is_acknowledgment_stale,
    monthly_equivalent,
    resume_transition,
)
from wastewatch.app.detection.records import SubscriptionSnapshot


NOW = datetime(2026, 4, 20, 12, 0, tzinfo=timezone.utc)


def _sub(**overrides):
    values = dict(
        id="sub-1",
        account_id="acct-1",
        merchant="NETFLIX",
        amount=14.99,
        frequency="monthly",
        status="active",
        user_acknowledged=True,
        acknowledged_at=NOW - timedelta(days=10),
        first_seen_date=date(2025, 6, 15),
        last_transaction_date=date(2026, 3, 15),
    )
    values.update(overrides)
    return SubscriptionSnapshot(**values)


def _alert(status="dismissed", fingerprint="unacknowledged", alert_type="zombie", dismissed_at=None):
    return SimpleNamespace(
        status=status,
        condition_fingerprint=fingerprint,
        alert_type=alert_type,
        dismissed_at=dismissed_at,
    )


def _finding(fingerprint="unacknowledged"):
    return SimpleNamespace(fingerprint=fingerprint)


@pytest.mark.parametrize("days,stale", [(91, True), (90, False), (89, False)])
def test_acknowledgment_goes_stale_after_window(days, stale):
    config = DetectionConfig()
    sub = _sub(acknowledged_at=NOW - timedelta(days=days))

    assert is_acknowledgment_stale(sub, NOW, config) is stale
    assert effectively_acknowledged(sub, NOW, config) is not stale


def test_stale_window_zero_never_expires():
    config = DetectionConfig(acknowledgment_stale_days=0)
    sub = _sub(acknowledged_at=NOW - timedelta(days=4000))

    assert is_acknowledgment_stale(sub, NOW, config) is False


def test_acknowledged_without_timestamp_is_fresh():
    sub = _sub(acknowledged_at=None)

    assert effectively_acknowledged(sub, NOW, DetectionConfig()) is True


def test_unacknowledged_is_never_stale():
    sub = _sub(user_acknowledged=False, acknowledged_at=None)

    assert is_acknowledgment_stale(sub, NOW, DetectionConfig()) is False
    assert effectively_acknowledged(sub, NOW, DetectionConfig()) is False


@pytest.mark.parametrize("days_since_last,due", [(37, True), (36, False), (60, True)])
def test_monthly_grace_period(days_since_last, due):
    sub = _sub(last_transaction_date=date(2026, 1, 1))
    today = date(2026, 1, 1) + timedelta(days=days_since_last)

    assert cancellation_due(sub, today, DetectionConfig()) is due


def test_weekly_and_yearly_grace_periods():
    config = DetectionConfig()
    weekly = _sub(frequency="weekly", last_transaction_date=date(2026, 1, 1))
    yearly = _sub(frequency="yearly", last_transaction_date=date(2025, 1, 1))

    assert cancellation_due(weekly, date(2026, 1, 11), config) is True
    assert cancellation_due(weekly, date(2026, 1, 10), config) is False
    assert cancellation_due(yearly, date(2025, 1, 1) + timedelta(days=395), config) is True
    assert cancellation_due(yearly, date(2025, 1, 1) + timedelta(days=394), config) is False


def test_transition_graph():
    check_transition("active", "cancelled")
    check_transition("cancelled", "active")
    check_transition("excluded", "active")
    with pytest.raises(InvalidTransition):
        check_transition("excluded", "cancelled")
    with pytest.raises(InvalidTransition):
        check_transition("cancelled", "cancelled")


def test_cancel_transition_records_savings():
    transition = cancel_transition(_sub(amount=120.0, frequency="yearly"), NOW)

    assert transition.to_status == "cancelled"
    assert transition.changes["cancelled_at"] == NOW
    assert transition.changes["cancelled_monthly_amount"] == 10.0


def test_resume_transition_reacknowledges():
    sub = _sub(status="cancelled", user_acknowledged=False, acknowledged_at=None)
    transition = resume_transition(sub, date(2026, 4, 10), -15.99, NOW)
    resumed = apply_to_snapshot(sub, transition)

    assert resumed.status == "active"
    assert resumed.user_acknowledged is True
    assert resumed.acknowledged_at == NOW
    assert resumed.amount == 15.99
    assert resumed.last_transaction_date == date(2026, 4, 10)
    assert resumed.cancelled_at is None


def test_monthly_equivalent():
    assert monthly_equivalent(12.0, "weekly") == 52.0
    assert monthly_equivalent(30.0, "quarterly") == 10.0
    assert monthly_equivalent(None, "monthly") == 0.0


def test_open_alert_is_always_refreshed():
    assert alert_reopen_eligible(_alert(status="open"), _sub(), _finding()) is True


def test_excluded_alert_or_subscription_is_never_reopened():
    assert alert_reopen_eligible(_alert(status="excluded"), _sub(), _finding("new")) is False
    assert alert_reopen_eligible(_alert(), _sub(status="excluded"), _finding("new")) is False


def test_dismissed_alert_reopens_only_on_new_fingerprint():
    alert = _alert(
        alert_type="price_increase",
        fingerprint="14.99->17.99",
        dismissed_at=NOW - timedelta(days=400),
    )

    assert alert_reopen_eligible(alert, _sub(), _finding("14.99->17.99")) is False
    assert alert_reopen_eligible(alert, _sub(), _finding("17.99->19.99")) is True


@pytest.mark.parametrize("days", [1, 91, 400])
def test_dismissed_zombie_stays_dismissed_on_unchanged_fingerprint(days):
    alert = _alert(dismissed_at=NOW - timedelta(days=days))

    assert alert_reopen_eligible(alert, _sub(), _finding("unacknowledged")) is False
    assert alert_reopen_eligible(alert, _sub(), _finding("stale:2026-01-01")) is True
