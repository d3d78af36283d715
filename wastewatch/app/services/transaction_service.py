from __future__ import annotations

from datetime import date
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from wastewatch.app.detection.records import ReceiptRecord, TransactionRecord
from wastewatch.app.models import Receipt, Transaction


def fetch_transactions(
    db: Session,
    *,
    account_id: Optional[str] = None,
    since: Optional[date] = None,
    until: Optional[date] = None,
) -> List[TransactionRecord]:
    stmt = select(Transaction)
    if account_id:
        stmt = stmt.where(Transaction.account_id == account_id)
    if since:
        stmt = stmt.where(Transaction.date >= since)
    if until:
        stmt = stmt.where(Transaction.date <= until)
    stmt = stmt.order_by(Transaction.date.asc(), Transaction.id.asc())
    return [TransactionRecord.from_row(row) for row in db.execute(stmt).scalars().all()]


def fetch_linked_receipts(db: Session, *, account_id: Optional[str] = None) -> List[ReceiptRecord]:
    stmt = select(Receipt).where(Receipt.transaction_id.is_not(None))
    if account_id:
        stmt = stmt.join(Transaction, Transaction.id == Receipt.transaction_id).where(
            Transaction.account_id == account_id
        )
    rows = db.execute(stmt.order_by(Receipt.id.asc())).scalars().all()
    return [
        ReceiptRecord(
            id=row.id,
            transaction_id=row.transaction_id,
            expected_amount=float(row.expected_amount),
            merchant=row.merchant,
        )
        for row in rows
    ]
