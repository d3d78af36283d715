"""
Detection pipeline: transactions -> series -> classification -> pattern fit
-> lifecycle -> findings -> alerts.

Services flush but never commit; callers (routes, scripts) own the
transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from wastewatch.app.detection.classification import ClassificationOracle, classify_series
from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.detectors import (
    KIND_FOR_ALERT_TYPE,
    DetectionContext,
    DetectorRunSummary,
    Finding,
    resolve_kinds,
    run_detectors,
)
from wastewatch.app.detection.oracle import oracle_from_env
from wastewatch.app.detection.pattern import match_series
from wastewatch.app.detection.records import DetectorFailure, as_utc
from wastewatch.app.detection.series import build_series
from wastewatch.app.models import Alert, DetectionRun, Transaction, naive_utc, utcnow
from wastewatch.app.services import (
    alert_service,
    audit_service,
    merchant_cache_service,
    settings_service,
    subscription_service,
    transaction_service,
)

logger = logging.getLogger(__name__)

ORACLE_FROM_ENV = object()

SUBSCRIPTION_KINDS = ("auto_cancel", "resume", "zombies", "increases", "duplicates")


@dataclass
class DetectionResults:
    run_id: Optional[str] = None
    kinds: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    subscriptions_found: int = 0
    subscriptions_created: List[str] = field(default_factory=list)
    created_alert_ids: List[str] = field(default_factory=list)
    updated_alert_ids: List[str] = field(default_factory=list)
    reopened_alert_ids: List[str] = field(default_factory=list)
    suppressed: int = 0
    suppression_reasons: Dict[str, int] = field(default_factory=dict)
    succeeded_kinds: List[str] = field(default_factory=list)
    failed_kinds: List[str] = field(default_factory=list)
    failures: List[DetectorFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.failed_kinds:
            return "succeeded"
        return "partial" if self.succeeded_kinds else "failed"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "kinds": self.kinds,
            "counts": self.counts,
            "subscriptions_found": self.subscriptions_found,
            "subscriptions_created": self.subscriptions_created,
            "created_alert_ids": self.created_alert_ids,
            "updated_alert_ids": self.updated_alert_ids,
            "reopened_alert_ids": self.reopened_alert_ids,
            "suppressed": self.suppressed,
            "suppression_reasons": self.suppression_reasons,
            "succeeded_kinds": self.succeeded_kinds,
            "failed_kinds": self.failed_kinds,
            "failures": [f.as_dict() for f in self.failures],
            "warnings": self.warnings,
        }


@dataclass
class ReanalyzeResult:
    alert: Optional[Alert]
    results: DetectionResults


def _resolve_oracle(oracle: Any, config: DetectionConfig) -> Optional[ClassificationOracle]:
    if oracle is ORACLE_FROM_ENV:
        return oracle_from_env(timeout=config.oracle_timeout_seconds)
    return oracle


def _apply_lifecycle(
    db: Session,
    summary: DetectorRunSummary,
    focus: Optional[Callable[[Finding], bool]],
) -> List[Finding]:
    """Apply transitions carried by lifecycle findings. Returns the findings to emit."""
    applied: List[Finding] = []
    for finding in summary.findings:
        if focus is not None and not focus(finding):
            continue
        if finding.transition is None:
            applied.append(finding)
            continue
        try:
            with db.begin_nested():
                subscription_service.apply_transition(db, finding.transition, reason=finding.alert_type)
        except Exception as exc:
            logger.exception("could not apply %s to %s", finding.alert_type, finding.subject)
            summary.failures.append(
                DetectorFailure(KIND_FOR_ALERT_TYPE[finding.alert_type], finding.subject, f"{type(exc).__name__}: {exc}")
            )
            continue
        applied.append(finding)
    return applied


def _run_pipeline(
    db: Session,
    *,
    account_id: Optional[str],
    kinds: List[str],
    config: DetectionConfig,
    now: datetime,
    oracle: Optional[ClassificationOracle],
    since: Optional[date] = None,
    force_classification: bool = False,
    refresh_merchants: Optional[Iterable[str]] = None,
    focus: Optional[Callable[[Finding], bool]] = None,
) -> DetectionResults:
    results = DetectionResults(kinds=list(kinds), counts={k: 0 for k in kinds})

    transactions = transaction_service.fetch_transactions(db, account_id=account_id)
    series_map = build_series(transactions, config, account_id=account_id, since=since)

    cache = merchant_cache_service.load_cache(db)
    gate = classify_series(
        series_map.values(),
        cache,
        config,
        oracle=oracle,
        force=force_classification,
        refresh=refresh_merchants,
    )
    results.warnings.extend(gate.warnings)
    if gate.cache_writes:
        merchant_cache_service.write_oracle_results(db, gate.cache_writes)
        cache = merchant_cache_service.load_cache(db)

    outcome = match_series(series_map, gate, config)
    upsert = subscription_service.upsert_from_matches(db, outcome.matches, now)
    subscription_service.advance_unmatched_charges(db, series_map, outcome.matches, now)
    results.subscriptions_found = len(outcome.matches)
    results.subscriptions_created = upsert.created
    failures: List[DetectorFailure] = list(outcome.failures)

    receipts = transaction_service.fetch_linked_receipts(db, account_id=account_id) if "tip" in kinds else []
    ctx = DetectionContext(
        subscriptions=subscription_service.snapshots(db, account_id=account_id),
        series_map=series_map,
        transactions_window=transactions,
        config=config,
        classification_cache=cache,
        receipts=receipts,
        now=now,
    )

    lifecycle = run_detectors(ctx, kinds, phase="lifecycle")
    findings = _apply_lifecycle(db, lifecycle, focus)
    ctx = ctx.with_subscriptions(subscription_service.snapshots(db, account_id=account_id))

    summaries = [lifecycle]
    for phase in ("subscription", "activity"):
        summary = run_detectors(ctx, kinds, phase=phase)
        summaries.append(summary)
        findings.extend(f for f in summary.findings if focus is None or focus(f))

    for summary in summaries:
        failures.extend(summary.failures)

    emitted = alert_service.emit_findings(db, findings, ctx.subscriptions, now=now)

    for finding in findings:
        results.counts[KIND_FOR_ALERT_TYPE[finding.alert_type]] += 1
    results.created_alert_ids = emitted.created
    results.updated_alert_ids = emitted.updated
    results.reopened_alert_ids = emitted.reopened
    results.suppressed = emitted.suppressed
    results.suppression_reasons = dict(emitted.suppression_reasons)
    results.warnings.extend(emitted.warnings)
    results.failures = failures

    failed = {f.kind for f in failures if f.kind in kinds}
    for summary in summaries:
        failed.update(d.kind for d in summary.detectors if not d.succeeded)
    results.failed_kinds = [k for k in kinds if k in failed]
    results.succeeded_kinds = [k for k in kinds if k not in failed]
    return results


def _record_run(
    db: Session,
    results: DetectionResults,
    *,
    account_id: Optional[str],
    started_at: datetime,
    reason: str,
) -> None:
    run = DetectionRun(
        account_id=account_id,
        kinds=results.kinds,
        status=results.status,
        counts_json=results.counts,
        failures_json=[f.as_dict() for f in results.failures],
        started_at=naive_utc(started_at),
        finished_at=naive_utc(utcnow()),
    )
    db.add(run)
    db.flush()
    results.run_id = run.id
    audit_service.log_audit_event(
        db,
        event_type="detection_run",
        actor=audit_service.SYSTEM_ACTOR,
        reason=reason,
        entity_type="detection_run",
        entity_id=run.id,
        before=None,
        after={
            "status": results.status,
            "counts": results.counts,
            "created": len(results.created_alert_ids),
            "updated": len(results.updated_alert_ids),
            "reopened": len(results.reopened_alert_ids),
            "suppressed": results.suppressed,
            "failed_kinds": results.failed_kinds,
        },
    )


def run_detection(
    db: Session,
    *,
    account_id: Optional[str] = None,
    kinds: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
    since: Optional[date] = None,
    oracle: Any = ORACLE_FROM_ENV,
    config: Optional[DetectionConfig] = None,
    force_classification: bool = False,
) -> DetectionResults:
    """
    One batch pass. Idempotent: re-running on unchanged data creates no new
    alerts and moves no state.

    Raises ConfigInvalid before any write when thresholds are malformed, and
    ValueError for unknown kinds. Detector failures are reported in the
    results, never raised.
    """
    selected = resolve_kinds(kinds)
    config = config or settings_service.load_detection_config(db)
    started_at = utcnow()
    now = as_utc(now) if now else started_at

    results = _run_pipeline(
        db,
        account_id=account_id,
        kinds=selected,
        config=config,
        now=now,
        oracle=_resolve_oracle(oracle, config),
        since=since,
        force_classification=force_classification,
    )
    _record_run(db, results, account_id=account_id, started_at=started_at, reason="run")
    logger.info(
        "detection run %s: status=%s found=%s created=%s updated=%s reopened=%s suppressed=%s failed=%s",
        results.run_id,
        results.status,
        results.subscriptions_found,
        len(results.created_alert_ids),
        len(results.updated_alert_ids),
        len(results.reopened_alert_ids),
        results.suppressed,
        results.failed_kinds,
    )
    return results


def _touches_subscription(subscription_id: str) -> Callable[[Finding], bool]:
    def _focus(finding: Finding) -> bool:
        if finding.subscription_id == subscription_id:
            return True
        return subscription_id in (finding.metadata.get("subscription_ids") or [])
    return _focus


def _has_key(dedup_key: str) -> Callable[[Finding], bool]:
    return lambda finding: finding.dedup_key == dedup_key


def reanalyze(
    db: Session,
    *,
    subscription_id: Optional[str] = None,
    alert_id: Optional[str] = None,
    now: Optional[datetime] = None,
    oracle: Any = ORACLE_FROM_ENV,
    config: Optional[DetectionConfig] = None,
) -> ReanalyzeResult:
    """
    Re-run the detectors relevant to one subscription or one alert with the
    current config. The merchant's cached oracle answer is ignored so the
    oracle is asked again; a user override still wins.
    """
    if bool(subscription_id) == bool(alert_id):
        raise ValueError("pass exactly one of subscription_id or alert_id")

    account_id: Optional[str] = None
    refresh: Set[str] = set()
    if alert_id:
        alert = alert_service.require_alert(db, alert_id)
        kinds = [KIND_FOR_ALERT_TYPE[alert.alert_type]]
        focus = _has_key(alert.dedup_key)
        if alert.subscription_id:
            sub = subscription_service.require_subscription(db, alert.subscription_id)
            account_id = sub.account_id
            refresh.add(sub.merchant)
        elif alert.transaction_id:
            txn = db.get(Transaction, alert.transaction_id)
            account_id = txn.account_id if txn else None
    else:
        sub = subscription_service.require_subscription(db, subscription_id)
        account_id = sub.account_id
        refresh.add(sub.merchant)
        kinds = list(SUBSCRIPTION_KINDS)
        focus = _touches_subscription(sub.id)

    config = config or settings_service.load_detection_config(db)
    started_at = utcnow()
    now = as_utc(now) if now else started_at

    results = _run_pipeline(
        db,
        account_id=account_id,
        kinds=resolve_kinds(kinds),
        config=config,
        now=now,
        oracle=_resolve_oracle(oracle, config),
        refresh_merchants=refresh,
        focus=focus,
    )
    _record_run(db, results, account_id=account_id, started_at=started_at, reason="reanalyze")

    if alert_id:
        alert = db.get(Alert, alert_id)
    else:
        touched = results.reopened_alert_ids + results.created_alert_ids + results.updated_alert_ids
        alert = db.get(Alert, touched[0]) if touched else None
        if alert is None:
            open_alerts = alert_service.list_alerts(db, subscription_id=subscription_id, limit=1)
            alert = open_alerts[0] if open_alerts else None
    return ReanalyzeResult(alert=alert, results=results)
