from datetime import date

import pytest

from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.records import TransactionRecord
from wastewatch.app.detection.series import (
    build_series,
    description_signature,
    merchant_for,
    normalize_merchant,
)


def _txn(txn_id, day, amount, merchant, *, account_id="acct-1", category=None, merchant_normalized=None):
    return TransactionRecord(
        id=txn_id,
        account_id=account_id,
        date=day,
        amount=amount,
        merchant=merchant,
        merchant_normalized=merchant_normalized,
        category=category,
    )


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("NETFLIX.COM 866-579-7172 CA", "NETFLIX"),
        ("SQ *BLUE BOTTLE COFFEE #123 OAKLAND CA", "BLUE BOTTLE COFFEE"),
        ("TST* JOES PIZZA 0042", "JOES PIZZA"),
        ("APLPAY SPOTIFY USA", "SPOTIFY"),
        ("POS DEBIT PURCHASE HULU", "HULU"),
        ("www.hulu.com/bill", "HULU BILL"),
    ],
)
def test_normalize_merchant(raw, expected):
    assert normalize_merchant(raw) == expected


def test_normalize_merchant_falls_back_to_raw_description():
    assert normalize_merchant("12345 #99") == "12345 #99"
    assert normalize_merchant("") == "UNKNOWN"


def test_merchant_normalized_field_wins():
    txn = _txn("t1", date(2026, 1, 1), -9.99, "SOMETHING ELSE 123", merchant_normalized="Netflix ")
    assert merchant_for(txn) == "NETFLIX"


def test_description_signature_uses_first_two_words():
    assert description_signature("SPOTIFY USA P0A1B2 STOCKHOLM") == "SPOTIFY USA"
    assert description_signature("NETFLIX.COM 866-579-7172 CA") == "NETFLIX"


def test_build_series_groups_debits_by_account_and_merchant():
    config = DetectionConfig()
    txns = [
        _txn("t3", date(2026, 3, 15), -14.99, "NETFLIX.COM 866-579-7172 CA"),
        _txn("t1", date(2026, 1, 15), -14.99, "NETFLIX.COM 866-579-7172 CA"),
        _txn("t2", date(2026, 2, 15), -14.99, "NETFLIX.COM 866-579-7172 CA"),
        _txn("t4", date(2026, 2, 15), -14.99, "NETFLIX.COM 866-579-7172 CA", account_id="acct-2"),
        _txn("t5", date(2026, 2, 20), 14.99, "NETFLIX.COM REFUND"),
        _txn("t6", date(2026, 2, 21), -35.00, "OVERDRAFT FEE", category="Fees"),
    ]

    series_map = build_series(txns, config)

    assert set(series_map) == {("acct-1", "NETFLIX"), ("acct-2", "NETFLIX")}
    netflix = series_map[("acct-1", "NETFLIX")]
    assert [t.id for t in netflix.transactions] == ["t1", "t2", "t3"]
    assert netflix.amounts == [14.99, 14.99, 14.99]
    assert netflix.insufficient is False
    assert series_map[("acct-2", "NETFLIX")].insufficient is True


def test_build_series_filters_account_and_since():
    config = DetectionConfig()
    txns = [
        _txn("t1", date(2026, 1, 15), -10.0, "SPOTIFY"),
        _txn("t2", date(2026, 2, 15), -10.0, "SPOTIFY"),
        _txn("t3", date(2026, 2, 15), -10.0, "SPOTIFY", account_id="acct-2"),
    ]

    series_map = build_series(txns, config, account_id="acct-1", since=date(2026, 2, 1))

    assert list(series_map) == [("acct-1", "SPOTIFY")]
    assert series_map[("acct-1", "SPOTIFY")].count == 1
    assert series_map[("acct-1", "SPOTIFY")].insufficient is True


def test_dominant_category_and_after():
    config = DetectionConfig()
    txns = [
        _txn("t1", date(2026, 1, 1), -5.0, "BLUE BOTTLE", category="Dining"),
        _txn("t2", date(2026, 1, 8), -5.0, "BLUE BOTTLE", category="Coffee"),
        _txn("t3", date(2026, 1, 15), -5.0, "BLUE BOTTLE", category="Dining"),
    ]
    series = build_series(txns, config)[("acct-1", "BLUE BOTTLE")]

    assert series.dominant_category() == "Dining"
    assert [t.id for t in series.after(date(2026, 1, 8))] == ["t3"]
