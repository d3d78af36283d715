"""
Classification gate.

Decides, per sufficient series, whether the merchant is subscription-like.
Lookup order is: user override, cached oracle answer, live oracle call.
The oracle only ever loosens thresholds; every failure degrades to the
strict profile.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Union

from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.errors import OracleUnavailable
from wastewatch.app.detection.series import Series

logger = logging.getLogger(__name__)

SOURCE_ORACLE = "ollama"
SOURCE_USER = "user_override"


@dataclass(frozen=True)
class SubscriptionLabel:
    confidence: float


@dataclass(frozen=True)
class RetailLabel:
    confidence: float


@dataclass(frozen=True)
class Unavailable:
    reason: str


Label = Union[SubscriptionLabel, RetailLabel, Unavailable]


class ClassificationOracle(Protocol):
    def classify(self, merchant: str, category_hint: Optional[str] = None) -> Label:
        ...


@dataclass(frozen=True)
class CacheEntry:
    merchant: str
    classification: str            # SUBSCRIPTION | RETAIL
    confidence: float
    source: str                    # ollama | user_override

    @property
    def is_override(self) -> bool:
        return self.source == SOURCE_USER

    def to_label(self) -> Label:
        if self.classification == "SUBSCRIPTION":
            return SubscriptionLabel(self.confidence)
        if self.classification == "RETAIL":
            return RetailLabel(self.confidence)
        return Unavailable(f"unknown cached classification {self.classification!r}")


@dataclass(frozen=True)
class Decision:
    merchant: str
    label: Label
    source: str                    # user_override | ollama | oracle | none

    @property
    def is_retail(self) -> bool:
        return isinstance(self.label, RetailLabel)


@dataclass
class GateResult:
    decisions: Dict[str, Decision]
    cache_writes: List[CacheEntry]
    warnings: List[str]

    def decision_for(self, merchant: str) -> Decision:
        key = cache_key(merchant)
        return self.decisions.get(key) or Decision(key, Unavailable("not classified"), "none")


def cache_key(merchant: str) -> str:
    return (merchant or "").strip().upper()


def label_to_cache(merchant: str, label: Label, source: str = SOURCE_ORACLE) -> Optional[CacheEntry]:
    if isinstance(label, SubscriptionLabel):
        return CacheEntry(cache_key(merchant), "SUBSCRIPTION", float(label.confidence), source)
    if isinstance(label, RetailLabel):
        return CacheEntry(cache_key(merchant), "RETAIL", float(label.confidence), source)
    return None


def profile_for(label: Label, config: DetectionConfig) -> Optional[str]:
    """
    "smart", "strict", or None when the series is not a candidate at all.
    """
    if isinstance(label, SubscriptionLabel):
        if label.confidence >= config.ollama_confidence_threshold:
            return "smart"
        return "strict"
    if isinstance(label, RetailLabel):
        return None
    return "strict"


def _call_oracle(oracle: ClassificationOracle, merchant: str, hint: Optional[str]) -> Label:
    try:
        label = oracle.classify(merchant, hint)
    except OracleUnavailable as exc:
        return Unavailable(str(exc) or "oracle unavailable")
    if not isinstance(label, (SubscriptionLabel, RetailLabel, Unavailable)):
        return Unavailable(f"unexpected oracle result {type(label).__name__}")
    return label


def classify_series(
    series: Iterable[Series],
    cache: Dict[str, CacheEntry],
    config: DetectionConfig,
    *,
    oracle: Optional[ClassificationOracle] = None,
    force: bool = False,
    refresh: Optional[Iterable[str]] = None,
) -> GateResult:
    """
    Classify every sufficient series. Insufficient series are skipped.

    `force` ignores every cached oracle answer, `refresh` only those of the
    given merchants (re-analysis). User overrides are always honoured.
    Oracle calls for misses run on a bounded pool under one shared
    oracle_timeout_seconds deadline. Cache writes are returned, never applied here.
    """
    decisions: Dict[str, Decision] = {}
    warnings: List[str] = []
    misses: Dict[str, Optional[str]] = {}
    refreshed = {cache_key(m) for m in (refresh or ())}

    for item in series:
        if item.insufficient:
            continue
        key = cache_key(item.merchant)
        if key in decisions or key in misses:
            continue
        entry = cache.get(key)
        if entry is not None and entry.is_override:
            decisions[key] = Decision(key, entry.to_label(), SOURCE_USER)
            continue
        if entry is not None and not force and key not in refreshed:
            decisions[key] = Decision(key, entry.to_label(), SOURCE_ORACLE)
            continue
        misses[key] = item.dominant_category()

    if not misses:
        return GateResult(decisions=decisions, cache_writes=[], warnings=warnings)

    if oracle is None:
        for key in misses:
            decisions[key] = Decision(key, Unavailable("oracle not configured"), "none")
        return GateResult(decisions=decisions, cache_writes=[], warnings=warnings)

    labels: Dict[str, Label] = {}
    timeout = config.oracle_timeout_seconds
    pool = ThreadPoolExecutor(max_workers=config.classification_workers)
    try:
        futures = {pool.submit(_call_oracle, oracle, key, hint): key for key, hint in misses.items()}
        # one deadline for the whole batch; hung calls never free their worker
        done, pending = wait(futures, timeout=timeout)
        for future in done:
            key = futures[future]
            try:
                labels[key] = future.result()
            except Exception as exc:
                labels[key] = Unavailable(f"oracle error: {exc}")
        for future in pending:
            future.cancel()
            labels[futures[future]] = Unavailable(f"oracle timed out after {timeout:g}s")
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    cache_writes: List[CacheEntry] = []
    unavailable = 0
    for key in misses:
        label = labels[key]
        if isinstance(label, Unavailable):
            unavailable += 1
            logger.warning("classification unavailable for %s: %s", key, label.reason)
            decisions[key] = Decision(key, label, "none")
            continue
        decisions[key] = Decision(key, label, "oracle")
        entry = label_to_cache(key, label)
        if entry is not None:
            cache_writes.append(entry)

    if unavailable:
        warnings.append(f"oracle unavailable for {unavailable} merchant(s); strict profile used")
    return GateResult(decisions=decisions, cache_writes=cache_writes, warnings=warnings)
