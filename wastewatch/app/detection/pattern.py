from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from statistics import median
from typing import Dict, List, Optional

from wastewatch.app.detection.classification import GateResult, profile_for
from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.errors import SeriesInsufficientData
from wastewatch.app.detection.records import DetectorFailure
from wastewatch.app.detection.series import Series, SeriesKey, description_signature

logger = logging.getLogger(__name__)

# float slack so 5.00% / 70.00% pass as inclusive boundaries
EPSILON = 1e-9

# period days -> (frequency, band around the period the median gap must fall in)
FREQUENCY_BUCKETS = (
    (7, "weekly", 3),
    (30, "monthly", 15),
    (91, "quarterly", 30),
    (365, "yearly", 45),
)

STRICT_TOLERANCE_DAYS = {"weekly": 3, "monthly": 7, "quarterly": 14, "yearly": 30}
SMART_TOLERANCE_DAYS = {"weekly": 3, "monthly": 10, "quarterly": 21, "yearly": 45}


@dataclass(frozen=True)
class ThresholdProfile:
    name: str
    min_transactions: int
    amount_variance: float
    interval_consistency: float
    tolerance_days: Dict[str, int]


def strict_profile(config: DetectionConfig) -> ThresholdProfile:
    return ThresholdProfile(
        name="strict",
        min_transactions=config.strict_min_transactions,
        amount_variance=config.strict_amount_variance,
        interval_consistency=config.strict_interval_consistency,
        tolerance_days=STRICT_TOLERANCE_DAYS,
    )


def smart_profile(config: DetectionConfig) -> ThresholdProfile:
    return ThresholdProfile(
        name="smart",
        min_transactions=config.smart_min_transactions,
        amount_variance=config.smart_amount_variance,
        interval_consistency=config.smart_interval_consistency,
        tolerance_days=SMART_TOLERANCE_DAYS,
    )


@dataclass(frozen=True)
class SeriesStats:
    count: int
    amount_variance: float
    interval_consistency: float
    frequency: Optional[str]
    median_gap: Optional[float]
    median_amount: float
    description_agreement: float


@dataclass(frozen=True)
class PatternMatch:
    series: Series
    stats: SeriesStats
    profile: str
    classification_source: str

    @property
    def key(self) -> SeriesKey:
        return self.series.key

    @property
    def amount(self) -> float:
        return round(self.stats.median_amount, 2)

    @property
    def frequency(self) -> str:
        return self.stats.frequency or "monthly"


@dataclass
class MatchOutcome:
    matches: Dict[SeriesKey, PatternMatch] = field(default_factory=dict)
    skipped: Dict[SeriesKey, str] = field(default_factory=dict)
    failures: List[DetectorFailure] = field(default_factory=list)


def bucket_frequency(median_gap: float) -> Optional[str]:
    """
    Nearest of 7/30/91/365 days, ties to the shorter period. None when the
    gap is outside that bucket's band.
    """
    best = None
    best_distance = None
    for period, name, band in FREQUENCY_BUCKETS:
        distance = abs(median_gap - period)
        if best_distance is None or distance < best_distance:
            best = (period, name, band)
            best_distance = distance
    period, name, band = best
    if best_distance > band:
        return None
    return name


def period_for(frequency: str) -> int:
    for period, name, _band in FREQUENCY_BUCKETS:
        if name == frequency:
            return period
    return 30


def amount_variance(amounts: List[float]) -> float:
    if not amounts:
        return float("inf")
    mid = median(amounts)
    if mid < 0.01:
        return float("inf")
    return max(abs(a - mid) for a in amounts) / mid


def interval_consistency(gaps: List[int], frequency: str, tolerance_days: Dict[str, int]) -> float:
    if not gaps:
        return 0.0
    period = period_for(frequency)
    tolerance = tolerance_days.get(frequency, tolerance_days["monthly"])
    within = sum(1 for gap in gaps if abs(gap - period) <= tolerance)
    return within / len(gaps)


def description_agreement(series: Series) -> float:
    if series.count < 2:
        return 1.0
    counts = Counter(description_signature(txn.merchant) for txn in series.transactions)
    return counts.most_common(1)[0][1] / series.count


def compute_stats(series: Series, profile: ThresholdProfile) -> SeriesStats:
    dates = series.dates
    gaps = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    amounts = series.amounts
    median_gap = float(median(gaps)) if gaps else None
    frequency = bucket_frequency(median_gap) if median_gap is not None else None
    consistency = interval_consistency(gaps, frequency, profile.tolerance_days) if frequency else 0.0
    return SeriesStats(
        count=series.count,
        amount_variance=amount_variance(amounts),
        interval_consistency=consistency,
        frequency=frequency,
        median_gap=median_gap,
        median_amount=float(median(amounts)) if amounts else 0.0,
        description_agreement=description_agreement(series),
    )


def meets_profile(stats: SeriesStats, profile: ThresholdProfile, *, description_similarity: float = 0.0) -> bool:
    if stats.count < profile.min_transactions:
        return False
    if stats.frequency is None:
        return False
    if stats.amount_variance > profile.amount_variance + EPSILON:
        return False
    if stats.interval_consistency + EPSILON < profile.interval_consistency:
        return False
    if stats.description_agreement + EPSILON < description_similarity:
        return False
    return True


def fit_series(series: Series, profile: ThresholdProfile, config: DetectionConfig) -> Optional[SeriesStats]:
    """Stats for a recurring series, None when it is not recurring."""
    if series.count < profile.min_transactions:
        raise SeriesInsufficientData(series.key, series.count, profile.min_transactions)
    stats = compute_stats(series, profile)
    if not meets_profile(stats, profile, description_similarity=config.description_similarity):
        return None
    return stats


def match_series(
    series_map: Dict[SeriesKey, Series],
    gate: GateResult,
    config: DetectionConfig,
) -> MatchOutcome:
    outcome = MatchOutcome()
    profiles = {"strict": strict_profile(config), "smart": smart_profile(config)}

    for key in sorted(series_map):
        series = series_map[key]
        if series.insufficient:
            outcome.skipped[key] = "insufficient"
            continue
        decision = gate.decision_for(series.merchant)
        profile_name = profile_for(decision.label, config)
        if profile_name is None:
            outcome.skipped[key] = "retail"
            continue
        profile = profiles[profile_name]
        try:
            stats = fit_series(series, profile, config)
        except SeriesInsufficientData as exc:
            outcome.skipped[key] = "insufficient"
            logger.debug("skipping %s: %s", key, exc)
            continue
        except Exception as exc:
            logger.exception("pattern fit failed for %s", key)
            outcome.failures.append(DetectorFailure("pattern", f"{key[0]}:{key[1]}", str(exc)))
            continue
        if stats is None:
            outcome.skipped[key] = "not_recurring"
            continue
        outcome.matches[key] = PatternMatch(
            series=series,
            stats=stats,
            profile=profile_name,
            classification_source=decision.source,
        )
    return outcome
