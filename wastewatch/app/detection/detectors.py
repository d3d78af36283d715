from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from wastewatch.app.detection.classification import CacheEntry, cache_key
from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.lifecycle import (
    Transition,
    cancel_transition,
    cancellation_deadline,
    cancellation_due,
    effectively_acknowledged,
    is_acknowledgment_stale,
    monthly_equivalent,
    resume_transition,
)
from wastewatch.app.detection.records import (
    DetectorFailure,
    ReceiptRecord,
    SubscriptionSnapshot,
    TransactionRecord,
    as_utc,
)
from wastewatch.app.detection.series import Series, SeriesKey
from wastewatch.app.detection.taxonomy import bucket_for

logger = logging.getLogger(__name__)

KINDS = ("zombies", "increases", "duplicates", "auto_cancel", "resume", "anomaly", "tip")

# lifecycle detectors run first and their transitions are applied before
# the subscription detectors see the snapshots
PHASES = ("lifecycle", "subscription", "activity")


@dataclass(frozen=True)
class DetectionContext:
    subscriptions: Dict[str, SubscriptionSnapshot]
    series_map: Dict[SeriesKey, Series]
    transactions_window: List[TransactionRecord]
    config: DetectionConfig
    classification_cache: Dict[str, CacheEntry]
    receipts: List[ReceiptRecord]
    now: datetime

    @property
    def today(self) -> date:
        return as_utc(self.now).date()

    def series_for(self, sub: SubscriptionSnapshot) -> Optional[Series]:
        return self.series_map.get(sub.key)

    def is_retail(self, merchant: str) -> bool:
        entry = self.classification_cache.get(cache_key(merchant))
        return entry is not None and entry.classification == "RETAIL"

    def ordered_subscriptions(self) -> List[SubscriptionSnapshot]:
        return sorted(self.subscriptions.values(), key=lambda s: (s.account_id, s.merchant, s.id))

    def with_subscriptions(self, subscriptions: Dict[str, SubscriptionSnapshot]) -> "DetectionContext":
        return replace(self, subscriptions=subscriptions)


@dataclass(frozen=True)
class Finding:
    alert_type: str
    subject: str
    severity: str
    message: str
    fingerprint: str
    metadata: Dict[str, Any]
    subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None
    transition: Optional[Transition] = None

    @property
    def dedup_key(self) -> str:
        return dedup_key(self.alert_type, self.subject)


@dataclass
class DetectorOutput:
    findings: List[Finding] = field(default_factory=list)
    failures: List[DetectorFailure] = field(default_factory=list)


@dataclass(frozen=True)
class DetectorDefinition:
    detector_id: str
    kind: str
    alert_types: Tuple[str, ...]
    phase: str
    runner: Callable[[DetectionContext], DetectorOutput]


@dataclass(frozen=True)
class DetectorRunResult:
    detector_id: str
    kind: str
    ran: bool
    fired: bool
    finding_count: int
    failed_items: int
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.ran and self.error is None and self.failed_items == 0


@dataclass
class DetectorRunSummary:
    findings: List[Finding] = field(default_factory=list)
    detectors: List[DetectorRunResult] = field(default_factory=list)
    failures: List[DetectorFailure] = field(default_factory=list)


def dedup_key(alert_type: str, subject: str) -> str:
    return f"{alert_type}:{subject}"


def subscription_subject(subscription_id: str) -> str:
    return f"subscription:{subscription_id}"


def transaction_subject(transaction_id: str) -> str:
    return f"transaction:{transaction_id}"


def category_subject(category: str) -> str:
    return f"category:{category}"


def _isolated(kind: str, subject: str, output: DetectorOutput, fn: Callable[[], Optional[Finding]]) -> None:
    try:
        finding = fn()
    except Exception as exc:
        logger.exception("%s detector failed on %s", kind, subject)
        output.failures.append(DetectorFailure(kind, subject, f"{type(exc).__name__}: {exc}"))
        return
    if finding is not None:
        output.findings.append(finding)


def _money(value: Optional[float]) -> str:
    return f"${abs(value or 0.0):.2f}"


# -------------------------
# Zombie
# -------------------------

def _zombie_finding(sub: SubscriptionSnapshot, ctx: DetectionContext) -> Optional[Finding]:
    config = ctx.config
    if sub.status != "active" or ctx.is_retail(sub.merchant):
        return None
    if effectively_acknowledged(sub, ctx.now, config):
        return None
    if sub.first_seen_date is None:
        return None
    if sub.first_seen_date > ctx.today - timedelta(days=config.zombie_min_months * 30):
        return None

    stale = is_acknowledgment_stale(sub, ctx.now, config)
    acknowledged_at = as_utc(sub.acknowledged_at)
    if stale:
        message = (
            f"It's been a while since you confirmed {sub.merchant} "
            f"({_money(sub.amount)}/mo). Still using it?"
        )
        fingerprint = f"stale:{acknowledged_at.date().isoformat()}"
    else:
        message = (
            f"You've been paying {_money(sub.amount)} for {sub.merchant} since "
            f"{sub.first_seen_date.strftime('%B %Y')}. Still using it?"
        )
        fingerprint = "unacknowledged"

    return Finding(
        alert_type="zombie",
        subject=subscription_subject(sub.id),
        severity="medium",
        message=message,
        fingerprint=fingerprint,
        subscription_id=sub.id,
        metadata={
            "merchant": sub.merchant,
            "amount": sub.amount,
            "frequency": sub.frequency,
            "first_seen_date": sub.first_seen_date.isoformat(),
            "stale_acknowledgment": stale,
            "acknowledged_at": acknowledged_at.isoformat() if acknowledged_at else None,
        },
    )


def detect_zombies(ctx: DetectionContext) -> DetectorOutput:
    output = DetectorOutput()
    for sub in ctx.ordered_subscriptions():
        _isolated("zombies", subscription_subject(sub.id), output, lambda s=sub: _zombie_finding(s, ctx))
    return output


# -------------------------
# Price increase
# -------------------------

def _price_finding(sub: SubscriptionSnapshot, ctx: DetectionContext) -> Optional[Finding]:
    config = ctx.config
    if sub.status != "active" or ctx.is_retail(sub.merchant):
        return None
    series = ctx.series_for(sub)
    if series is None or series.count < 2:
        return None

    latest = series.latest
    cutoff = latest.date - timedelta(days=config.price_lookback_days)
    earlier = [txn for txn in series.transactions if txn.date <= cutoff]
    if not earlier:
        return None
    previous = earlier[-1]

    old_amount = round(abs(previous.amount), 2)
    new_amount = round(abs(latest.amount), 2)
    if old_amount <= 0:
        return None
    increase = round(new_amount - old_amount, 2)
    if increase <= config.amount_tolerance:
        return None
    percent = increase / old_amount * 100.0
    if increase <= config.price_increase_absolute or percent <= config.price_increase_percent:
        return None

    return Finding(
        alert_type="price_increase",
        subject=subscription_subject(sub.id),
        severity="high" if percent >= 20.0 else "medium",
        message=f"{sub.merchant} increased from {_money(old_amount)} to {_money(new_amount)} (+{percent:.1f}%)",
        fingerprint=f"{old_amount:.2f}->{new_amount:.2f}",
        subscription_id=sub.id,
        transaction_id=latest.id,
        metadata={
            "merchant": sub.merchant,
            "old_amount": old_amount,
            "new_amount": new_amount,
            "increase_amount": increase,
            "increase_percent": round(percent, 2),
            "old_date": previous.date.isoformat(),
            "new_date": latest.date.isoformat(),
        },
    )


def detect_price_increases(ctx: DetectionContext) -> DetectorOutput:
    output = DetectorOutput()
    for sub in ctx.ordered_subscriptions():
        _isolated("increases", subscription_subject(sub.id), output, lambda s=sub: _price_finding(s, ctx))
    return output


# -------------------------
# Duplicate services
# -------------------------

def _duplicate_finding(bucket: str, members: List[SubscriptionSnapshot]) -> Optional[Finding]:
    if len(members) < 2:
        return None
    members = sorted(members, key=lambda s: s.id)
    anchor = members[0]
    names = sorted({m.merchant for m in members})
    total = round(sum(monthly_equivalent(m.amount, m.frequency) for m in members), 2)
    return Finding(
        alert_type="duplicate",
        subject=subscription_subject(anchor.id),
        severity="medium",
        message=(
            f"You have {len(members)} {bucket.lower()} services: {', '.join(names)}. "
            f"Total: {_money(total)}/mo"
        ),
        fingerprint=",".join(m.id for m in members),
        subscription_id=anchor.id,
        metadata={
            "bucket": bucket,
            "subscription_ids": [m.id for m in members],
            "merchants": names,
            "monthly_total": total,
        },
    )


def detect_duplicates(ctx: DetectionContext) -> DetectorOutput:
    output = DetectorOutput()
    buckets: Dict[str, List[SubscriptionSnapshot]] = defaultdict(list)
    for sub in ctx.ordered_subscriptions():
        if sub.status != "active" or ctx.is_retail(sub.merchant):
            continue
        bucket = bucket_for(sub.merchant)
        if bucket:
            buckets[bucket].append(sub)
    for bucket in sorted(buckets):
        members = buckets[bucket]
        _isolated("duplicates", f"bucket:{bucket}", output, lambda b=bucket, m=members: _duplicate_finding(b, m))
    return output


# -------------------------
# Auto-cancellation
# -------------------------

def _auto_cancel_finding(sub: SubscriptionSnapshot, ctx: DetectionContext) -> Optional[Finding]:
    if sub.status != "active" or not sub.user_acknowledged:
        return None
    series = ctx.series_for(sub)
    if series is not None and sub.last_transaction_date is not None and series.after(sub.last_transaction_date):
        return None
    if not cancellation_due(sub, ctx.today, ctx.config):
        return None
    transition = cancel_transition(sub, ctx.now)
    expected_by = cancellation_deadline(sub, ctx.config)
    last = sub.last_transaction_date
    return Finding(
        alert_type="auto_cancellation",
        subject=subscription_subject(sub.id),
        severity="low",
        message=f"{sub.merchant} looks cancelled: no charge since {last.strftime('%B %d, %Y')}",
        fingerprint=last.isoformat(),
        subscription_id=sub.id,
        transition=transition,
        metadata={
            "merchant": sub.merchant,
            "last_transaction_date": last.isoformat(),
            "expected_by": expected_by.isoformat(),
            "frequency": sub.frequency,
            "monthly_savings": transition.changes["cancelled_monthly_amount"],
        },
    )


def detect_auto_cancellations(ctx: DetectionContext) -> DetectorOutput:
    output = DetectorOutput()
    for sub in ctx.ordered_subscriptions():
        _isolated("auto_cancel", subscription_subject(sub.id), output, lambda s=sub: _auto_cancel_finding(s, ctx))
    return output


# -------------------------
# Resume
# -------------------------

def _resume_finding(sub: SubscriptionSnapshot, ctx: DetectionContext) -> Optional[Finding]:
    if sub.status != "cancelled" or sub.last_transaction_date is None:
        return None
    series = ctx.series_for(sub)
    if series is None:
        return None
    new_charges = series.after(sub.last_transaction_date)
    if not new_charges:
        return None
    latest = new_charges[-1]
    amount = round(abs(latest.amount), 2)
    return Finding(
        alert_type="resume",
        subject=subscription_subject(sub.id),
        severity="high",
        message=f"{sub.merchant} started charging again: {_money(amount)} on {latest.date.strftime('%B %d, %Y')}",
        fingerprint=latest.date.isoformat(),
        subscription_id=sub.id,
        transaction_id=latest.id,
        transition=resume_transition(sub, latest.date, amount, ctx.now),
        metadata={
            "merchant": sub.merchant,
            "amount": amount,
            "charge_date": latest.date.isoformat(),
            "previous_last_transaction_date": sub.last_transaction_date.isoformat(),
            "new_charge_count": len(new_charges),
        },
    )


def detect_resumed(ctx: DetectionContext) -> DetectorOutput:
    output = DetectorOutput()
    for sub in ctx.ordered_subscriptions():
        _isolated("resume", subscription_subject(sub.id), output, lambda s=sub: _resume_finding(s, ctx))
    return output


# -------------------------
# Spending anomaly
# -------------------------

def _month_start(day: date, months_back: int = 0) -> date:
    index = day.year * 12 + (day.month - 1) - months_back
    return date(index // 12, index % 12 + 1, 1)


def _category_totals(txns: Iterable[TransactionRecord], start: date, end: date) -> Dict[str, float]:
    """Debit spend per category for start <= date < end."""
    totals: Dict[str, float] = defaultdict(float)
    for txn in txns:
        if not txn.is_debit or not txn.category:
            continue
        if start <= txn.date < end:
            totals[txn.category] += abs(txn.amount)
    return totals


def _anomaly_finding(category: str, current: float, baseline_total: float, month: str, ctx: DetectionContext) -> Optional[Finding]:
    config = ctx.config
    baseline = baseline_total / 3.0
    if baseline <= 0 or baseline < config.spending_anomaly_min_baseline:
        return None
    percent = (current - baseline) / baseline * 100.0
    if percent > config.spending_increase_threshold:
        direction = "increase"
    elif percent < -config.spending_decrease_threshold:
        direction = "decrease"
    else:
        return None

    verb = "increased" if direction == "increase" else "decreased"
    return Finding(
        alert_type="spending_anomaly",
        subject=category_subject(category),
        severity="high" if abs(percent) >= 100.0 else "medium",
        message=f"{category} spending {verb} by {abs(percent):.0f}%",
        fingerprint=f"{month}:{direction}",
        metadata={
            "category": category,
            "month": month,
            "current_amount": round(current, 2),
            "baseline_average": round(baseline, 2),
            "percent_change": round(percent, 2),
            "direction": direction,
        },
    )


def detect_spending_anomalies(ctx: DetectionContext) -> DetectorOutput:
    output = DetectorOutput()
    today = ctx.today
    current_start = _month_start(today)
    baseline_start = _month_start(today, 3)
    current = _category_totals(ctx.transactions_window, current_start, today + timedelta(days=1))
    baseline = _category_totals(ctx.transactions_window, baseline_start, current_start)
    month = current_start.strftime("%Y-%m")

    for category in sorted(current):
        if category not in baseline:
            continue
        _isolated(
            "anomaly",
            category_subject(category),
            output,
            lambda c=category: _anomaly_finding(c, current[c], baseline[c], month, ctx),
        )
    return output


# -------------------------
# Receipt discrepancies (tip + reconciliation)
# -------------------------

def _receipt_finding(receipt: ReceiptRecord, txn: TransactionRecord, ctx: DetectionContext) -> Optional[Finding]:
    config = ctx.config
    bank = round(abs(txn.amount), 2)
    expected = round(abs(receipt.expected_amount), 2)
    difference = round(bank - expected, 2)
    threshold = max(config.tip_discrepancy_threshold, config.amount_tolerance)
    merchant = receipt.merchant or txn.merchant

    if difference > threshold:
        alert_type = "tip_discrepancy"
        message = (
            f"{merchant} charged {_money(bank)} but the receipt says {_money(expected)} "
            f"({_money(difference)} more)"
        )
        severity = "medium"
    elif -difference > threshold:
        alert_type = "reconciliation"
        message = (
            f"{merchant} charged {_money(bank)}, {_money(difference)} less than the "
            f"receipt total of {_money(expected)}"
        )
        severity = "low"
    else:
        return None

    return Finding(
        alert_type=alert_type,
        subject=transaction_subject(txn.id),
        severity=severity,
        message=message,
        fingerprint=f"{expected:.2f}:{bank:.2f}",
        transaction_id=txn.id,
        metadata={
            "receipt_id": receipt.id,
            "merchant": merchant,
            "expected_amount": expected,
            "bank_amount": bank,
            "discrepancy": abs(difference),
            "transaction_date": txn.date.isoformat(),
        },
    )


def detect_receipt_discrepancies(ctx: DetectionContext) -> DetectorOutput:
    output = DetectorOutput()
    by_id = {txn.id: txn for txn in ctx.transactions_window}
    for receipt in sorted(ctx.receipts, key=lambda r: r.id):
        if not receipt.transaction_id:
            continue
        txn = by_id.get(receipt.transaction_id)
        if txn is None:
            continue
        _isolated(
            "tip",
            transaction_subject(txn.id),
            output,
            lambda r=receipt, t=txn: _receipt_finding(r, t, ctx),
        )
    return output


# -------------------------
# Registry
# -------------------------

DETECTOR_DEFINITIONS: List[DetectorDefinition] = [
    DetectorDefinition("detect_auto_cancellations", "auto_cancel", ("auto_cancellation",), "lifecycle", detect_auto_cancellations),
    DetectorDefinition("detect_resumed", "resume", ("resume",), "lifecycle", detect_resumed),
    DetectorDefinition("detect_zombies", "zombies", ("zombie",), "subscription", detect_zombies),
    DetectorDefinition("detect_price_increases", "increases", ("price_increase",), "subscription", detect_price_increases),
    DetectorDefinition("detect_duplicates", "duplicates", ("duplicate",), "subscription", detect_duplicates),
    DetectorDefinition("detect_spending_anomalies", "anomaly", ("spending_anomaly",), "activity", detect_spending_anomalies),
    DetectorDefinition("detect_receipt_discrepancies", "tip", ("tip_discrepancy", "reconciliation"), "activity", detect_receipt_discrepancies),
]

KIND_FOR_ALERT_TYPE = {
    alert_type: definition.kind
    for definition in DETECTOR_DEFINITIONS
    for alert_type in definition.alert_types
}


def resolve_kinds(kinds: Optional[Iterable[str]]) -> List[str]:
    requested = {k.strip().lower() for k in (kinds or []) if k and k.strip()}
    if not requested or "all" in requested:
        return list(KINDS)
    unknown = sorted(requested - set(KINDS))
    if unknown:
        raise ValueError(f"unknown detection kind(s): {', '.join(unknown)}")
    return [k for k in KINDS if k in requested]


def run_detectors(
    ctx: DetectionContext,
    kinds: Iterable[str],
    *,
    phase: Optional[str] = None,
) -> DetectorRunSummary:
    """
    Run the selected detectors in registry order. A detector that raises is
    recorded as failed for its kind and the remaining detectors still run.
    """
    if phase is not None and phase not in PHASES:
        raise ValueError(f"unknown detector phase: {phase}")
    selected = set(kinds)
    summary = DetectorRunSummary()
    for definition in DETECTOR_DEFINITIONS:
        if definition.kind not in selected:
            continue
        if phase is not None and definition.phase != phase:
            continue
        try:
            output = definition.runner(ctx)
        except Exception as exc:
            logger.exception("detector %s failed", definition.detector_id)
            error = f"{type(exc).__name__}: {exc}"
            summary.failures.append(DetectorFailure(definition.kind, "*", error))
            summary.detectors.append(
                DetectorRunResult(definition.detector_id, definition.kind, True, False, 0, 0, error)
            )
            continue

        summary.findings.extend(output.findings)
        summary.failures.extend(output.failures)
        summary.detectors.append(
            DetectorRunResult(
                detector_id=definition.detector_id,
                kind=definition.kind,
                ran=True,
                fired=bool(output.findings),
                finding_count=len(output.findings),
                failed_items=len(output.failures),
            )
        )
    return summary
