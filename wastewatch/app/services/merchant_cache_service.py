from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from wastewatch.app.detection.classification import SOURCE_ORACLE, SOURCE_USER, CacheEntry, cache_key
from wastewatch.app.models import MerchantSubscriptionCache, utcnow

logger = logging.getLogger(__name__)


def _to_entry(row: MerchantSubscriptionCache) -> CacheEntry:
    return CacheEntry(
        merchant=row.merchant,
        classification=row.classification,
        confidence=float(row.confidence or 0.0),
        source=row.source,
    )


def load_cache(db: Session) -> Dict[str, CacheEntry]:
    stmt = select(MerchantSubscriptionCache)
    return {row.merchant: _to_entry(row) for row in db.execute(stmt).scalars().all()}


def write_oracle_results(db: Session, entries: Iterable[CacheEntry]) -> List[str]:
    """
    Store oracle answers. Last writer wins between oracle rows; a
    user_override row is never replaced.
    """
    written: List[str] = []
    for entry in entries:
        key = cache_key(entry.merchant)
        row = db.get(MerchantSubscriptionCache, key)
        if row is not None and row.source == SOURCE_USER:
            logger.info("cache write for %s skipped: user override present", key)
            continue
        if row is None:
            row = MerchantSubscriptionCache(merchant=key)
            db.add(row)
        row.classification = entry.classification
        row.confidence = entry.confidence
        row.source = SOURCE_ORACLE
        row.updated_at = utcnow()
        written.append(key)
    db.flush()
    return written


def set_user_override(db: Session, merchant: str, classification: str, *, confidence: float = 1.0) -> CacheEntry:
    classification = classification.upper()
    if classification not in ("SUBSCRIPTION", "RETAIL"):
        raise ValueError(f"classification must be SUBSCRIPTION or RETAIL, got {classification!r}")
    key = cache_key(merchant)
    row = db.get(MerchantSubscriptionCache, key)
    if row is None:
        row = MerchantSubscriptionCache(merchant=key)
        db.add(row)
    row.classification = classification
    row.confidence = confidence
    row.source = SOURCE_USER
    row.updated_at = utcnow()
    db.flush()
    return _to_entry(row)


def clear_user_override(db: Session, merchant: str) -> bool:
    key = cache_key(merchant)
    result = db.execute(
        delete(MerchantSubscriptionCache).where(
            MerchantSubscriptionCache.merchant == key,
            MerchantSubscriptionCache.source == SOURCE_USER,
        )
    )
    return bool(result.rowcount)


def clear_oracle_entry(db: Session, merchant: str) -> bool:
    key = cache_key(merchant)
    result = db.execute(
        delete(MerchantSubscriptionCache).where(
            MerchantSubscriptionCache.merchant == key,
            MerchantSubscriptionCache.source == SOURCE_ORACLE,
        )
    )
    return bool(result.rowcount)
