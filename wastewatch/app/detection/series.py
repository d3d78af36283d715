from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.records import TransactionRecord

SeriesKey = Tuple[str, str]  # (account_id, normalized merchant)

_PAYMENT_PREFIXES = (
    "APLPAY ",
    "APPLEPAY ",
    "APPLE PAY ",
    "PAYPAL *",
    "PAYPAL*",
    "SQ *",
    "SQ*",
    "SP *",
    "SP*",
    "TST* ",
    "TST*",
    "PP*",
    "POS ",
    "ACH ",
)

_NOISE_TOKENS = {
    "POS", "ACH", "DEBIT", "CREDIT", "CARD", "CHECKCARD", "PURCHASE", "PAYMENT", "PMT",
    "ONLINE", "RECURRING", "AUTOPAY", "WEB", "WWW", "INC", "LLC", "CORP", "CORPORATION",
    "THE", "VISA", "MC", "DES", "ID", "INDN",
}

_LOCATION_CODES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL", "IN", "IA",
    "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT",
    "VA", "WA", "WV", "WI", "WY", "DC", "US", "USA",
}

_PHONE_RE = re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b")
_DOMAIN_RE = re.compile(r"\.(COM|NET|ORG|IO|TV|CO)\b")
_NON_WORD_RE = re.compile(r"[^A-Z0-9&'\s]")

MAX_MERCHANT_TOKENS = 3


def _strip_prefixes(value: str) -> str:
    changed = True
    while changed:
        changed = False
        for prefix in _PAYMENT_PREFIXES:
            if value.startswith(prefix):
                value = value[len(prefix):].lstrip()
                changed = True
    return value


def merchant_tokens(description: str) -> List[str]:
    s = (description or "").upper().strip()
    s = _strip_prefixes(s)
    s = _PHONE_RE.sub(" ", s)
    s = s.replace("WWW.", " ")
    s = _DOMAIN_RE.sub(" ", s)
    s = _NON_WORD_RE.sub(" ", s)

    # store numbers, terminal ids and reference numbers all carry digits
    tokens = [t for t in s.split() if not any(ch.isdigit() for ch in t)]
    tokens = [t for t in tokens if t not in _NOISE_TOKENS]

    while len(tokens) > 1 and tokens[-1] in _LOCATION_CODES:
        tokens.pop()
    return tokens


def normalize_merchant(description: str) -> str:
    """
    Canonical merchant key for grouping, e.g.
    "NETFLIX.COM 866-579-7172 CA" -> "NETFLIX".
    Falls back to the raw description when nothing survives normalization.
    """
    tokens = merchant_tokens(description)[:MAX_MERCHANT_TOKENS]
    if not tokens:
        return (description or "").strip().upper() or "UNKNOWN"
    return " ".join(tokens)


def merchant_for(txn: TransactionRecord) -> str:
    if txn.merchant_normalized and txn.merchant_normalized.strip():
        return txn.merchant_normalized.strip().upper()
    return normalize_merchant(txn.merchant)


def description_signature(description: str) -> str:
    """First two significant words of a raw description."""
    return " ".join(merchant_tokens(description)[:2])


@dataclass
class Series:
    account_id: str
    merchant: str
    transactions: List[TransactionRecord] = field(default_factory=list)
    insufficient: bool = False

    @property
    def key(self) -> SeriesKey:
        return (self.account_id, self.merchant)

    @property
    def count(self) -> int:
        return len(self.transactions)

    @property
    def dates(self) -> List[date]:
        return [txn.date for txn in self.transactions]

    @property
    def amounts(self) -> List[float]:
        return [abs(txn.amount) for txn in self.transactions]

    @property
    def first_date(self) -> Optional[date]:
        return self.transactions[0].date if self.transactions else None

    @property
    def last_date(self) -> Optional[date]:
        return self.transactions[-1].date if self.transactions else None

    @property
    def latest(self) -> Optional[TransactionRecord]:
        return self.transactions[-1] if self.transactions else None

    def dominant_category(self) -> Optional[str]:
        categories = [txn.category for txn in self.transactions if txn.category]
        if not categories:
            return None
        return Counter(categories).most_common(1)[0][0]

    def after(self, cutoff: date) -> List[TransactionRecord]:
        return [txn for txn in self.transactions if txn.date > cutoff]


def build_series(
    transactions: Iterable[TransactionRecord],
    config: DetectionConfig,
    *,
    account_id: Optional[str] = None,
    since: Optional[date] = None,
) -> Dict[SeriesKey, Series]:
    """
    Group debit transactions by (account_id, normalized merchant).

    Credits and excluded categories (bank fees) never form a series. Series
    shorter than the smallest profile minimum are kept and flagged so
    downstream stages can skip them without special cases.
    """
    grouped: Dict[SeriesKey, Series] = {}
    for txn in transactions:
        if not txn.is_debit:
            continue
        if account_id and txn.account_id != account_id:
            continue
        if since and txn.date < since:
            continue
        if config.is_excluded_category(txn.category):
            continue
        merchant = merchant_for(txn)
        key = (txn.account_id, merchant)
        series = grouped.get(key)
        if series is None:
            series = Series(account_id=txn.account_id, merchant=merchant)
            grouped[key] = series
        series.transactions.append(txn)

    for series in grouped.values():
        series.transactions.sort(key=lambda t: (t.date, t.id))
        series.insufficient = series.count < config.smart_min_transactions
    return grouped
