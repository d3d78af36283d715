"""
Subscription lifecycle rules.

Everything here is a pure function of snapshots, config and a clock. The
services apply the resulting transitions; nothing in this module writes.

    active    -> cancelled   auto-cancellation or user cancel
    cancelled -> active      resume (re-acknowledged)
    active    -> excluded    user only
    cancelled -> excluded    user only
    excluded  -> active      user unexclude
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.pattern import period_for
from wastewatch.app.detection.records import SubscriptionSnapshot, as_utc

ALLOWED_TRANSITIONS = {
    ("active", "cancelled"),
    ("cancelled", "active"),
    ("active", "excluded"),
    ("cancelled", "excluded"),
    ("excluded", "active"),
}

MONTHLY_FACTORS = {
    "weekly": 52.0 / 12.0,
    "monthly": 1.0,
    "quarterly": 1.0 / 3.0,
    "yearly": 1.0 / 12.0,
}


class InvalidTransition(ValueError):
    pass


@dataclass(frozen=True)
class Transition:
    subscription_id: str
    from_status: str
    to_status: str
    event_type: str
    changes: Dict[str, Any] = field(default_factory=dict)


def check_transition(from_status: str, to_status: str) -> None:
    if (from_status, to_status) not in ALLOWED_TRANSITIONS:
        raise InvalidTransition(f"cannot move subscription from {from_status} to {to_status}")


def period_days(frequency: Optional[str]) -> int:
    return period_for(frequency or "monthly")


def monthly_equivalent(amount: Optional[float], frequency: Optional[str]) -> float:
    if amount is None:
        return 0.0
    return round(abs(amount) * MONTHLY_FACTORS.get(frequency or "monthly", 1.0), 2)


def is_acknowledgment_stale(sub: SubscriptionSnapshot, now: datetime, config: DetectionConfig) -> bool:
    if not sub.user_acknowledged:
        return False
    if config.acknowledgment_stale_days <= 0:
        return False
    acknowledged_at = as_utc(sub.acknowledged_at)
    if acknowledged_at is None:
        # acknowledged before timestamps were recorded: treat as fresh
        return False
    return as_utc(now) - acknowledged_at > timedelta(days=config.acknowledgment_stale_days)


def effectively_acknowledged(sub: SubscriptionSnapshot, now: datetime, config: DetectionConfig) -> bool:
    return sub.user_acknowledged and not is_acknowledgment_stale(sub, now, config)


def cancellation_deadline(sub: SubscriptionSnapshot, config: DetectionConfig) -> Optional[date]:
    if sub.last_transaction_date is None:
        return None
    frequency = sub.frequency or "monthly"
    return sub.last_transaction_date + timedelta(
        days=period_days(frequency) + config.grace_days_for(frequency)
    )


def cancellation_due(sub: SubscriptionSnapshot, today: date, config: DetectionConfig) -> bool:
    deadline = cancellation_deadline(sub, config)
    return deadline is not None and today >= deadline


def cancel_transition(sub: SubscriptionSnapshot, now: datetime, *, event_type: str = "subscription_cancelled") -> Transition:
    check_transition(sub.status, "cancelled")
    return Transition(
        subscription_id=sub.id,
        from_status=sub.status,
        to_status="cancelled",
        event_type=event_type,
        changes={
            "status": "cancelled",
            "cancelled_at": now,
            "cancelled_monthly_amount": monthly_equivalent(sub.amount, sub.frequency),
        },
    )


def resume_transition(sub: SubscriptionSnapshot, charge_date: date, amount: float, now: datetime) -> Transition:
    check_transition(sub.status, "active")
    return Transition(
        subscription_id=sub.id,
        from_status=sub.status,
        to_status="active",
        event_type="subscription_resumed",
        changes={
            "status": "active",
            "user_acknowledged": True,
            "acknowledged_at": now,
            "amount": round(abs(amount), 2),
            "last_transaction_date": charge_date,
            "cancelled_at": None,
            "cancelled_monthly_amount": None,
        },
    )


def apply_to_snapshot(sub: SubscriptionSnapshot, transition: Transition) -> SubscriptionSnapshot:
    fields = {k: v for k, v in transition.changes.items() if hasattr(sub, k)}
    return replace(sub, **fields)


def alert_reopen_eligible(alert, subscription: Optional[SubscriptionSnapshot], finding) -> bool:
    """
    May `finding` update or re-open `alert`?

    Open alerts are always refreshed. Excluded alerts and alerts of excluded
    subscriptions never are. A dismissed alert re-opens only when the
    condition fingerprint moved; a stale acknowledgment re-arms a zombie
    through its `stale:<date>` fingerprint.
    """
    if alert.status == "excluded":
        return False
    if subscription is not None and subscription.status == "excluded":
        return False
    if alert.status == "open":
        return True
    if alert.status != "dismissed":
        return False

    return finding.fingerprint != alert.condition_fingerprint
