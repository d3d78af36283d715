"""
Plain, immutable views of the rows detection reads.

Detectors work on these snapshots instead of ORM objects so they can be
exercised without a session and cannot write through by accident.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TransactionRecord:
    id: str
    account_id: str
    date: date
    amount: float                      # signed, negative = debit
    merchant: str                      # raw description
    merchant_normalized: Optional[str] = None
    category: Optional[str] = None

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @classmethod
    def from_row(cls, row) -> "TransactionRecord":
        return cls(
            id=row.id,
            account_id=row.account_id,
            date=row.date,
            amount=float(row.amount),
            merchant=row.merchant,
            merchant_normalized=row.merchant_normalized,
            category=row.category,
        )


@dataclass(frozen=True)
class ReceiptRecord:
    id: str
    transaction_id: str
    expected_amount: float
    merchant: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    account_id: str
    merchant: str
    amount: Optional[float]
    frequency: Optional[str]
    status: str
    user_acknowledged: bool
    acknowledged_at: Optional[datetime]
    first_seen_date: Optional[date]
    last_transaction_date: Optional[date]
    detected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.account_id, self.merchant)

    @classmethod
    def from_row(cls, row) -> "SubscriptionSnapshot":
        return cls(
            id=row.id,
            account_id=row.account_id,
            merchant=row.merchant,
            amount=row.amount,
            frequency=row.frequency,
            status=row.status,
            user_acknowledged=bool(row.user_acknowledged),
            acknowledged_at=as_utc(row.acknowledged_at),
            first_seen_date=row.first_seen_date,
            last_transaction_date=row.last_transaction_date,
            detected_at=as_utc(row.detected_at),
            cancelled_at=as_utc(row.cancelled_at),
        )


@dataclass(frozen=True)
class DetectorFailure:
    """One item x stage that raised. Collected, never re-raised."""
    kind: str
    subject: str
    error: str

    def as_dict(self) -> dict:
        return {"kind": self.kind, "subject": self.subject, "error": self.error}
