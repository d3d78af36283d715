from datetime import date, timedelta

import pytest

from wastewatch.app.detection.classification import (
    CacheEntry,
    Decision,
    GateResult,
    RetailLabel,
    SubscriptionLabel,
)
from wastewatch.app.detection.config import DetectionConfig
from wastewatch.app.detection.errors import SeriesInsufficientData
from wastewatch.app.detection.pattern import (
    SeriesStats,
    amount_variance,
    bucket_frequency,
    fit_series,
    match_series,
    meets_profile,
    strict_profile,
)
from wastewatch.app.detection.records import TransactionRecord
from wastewatch.app.detection.series import build_series


def _stats(variance, consistency, count=3, frequency="monthly"):
    return SeriesStats(
        count=count,
        amount_variance=variance,
        interval_consistency=consistency,
        frequency=frequency,
        median_gap=30.0,
        median_amount=10.0,
        description_agreement=1.0,
    )


def _charges(merchant, dates, amounts, account_id="acct-1"):
    return [
        TransactionRecord(
            id=f"{merchant}-{i}",
            account_id=account_id,
            date=day,
            amount=-amount,
            merchant=merchant,
        )
        for i, (day, amount) in enumerate(zip(dates, amounts))
    ]


def _empty_gate():
    return GateResult(decisions={}, cache_writes=[], warnings=[])


@pytest.mark.parametrize(
    "variance,consistency,expected",
    [
        (0.05, 0.70, True),
        (0.0500, 0.7000, True),
        (0.0501, 0.70, False),
        (0.05, 0.6999, False),
    ],
)
def test_strict_boundaries_are_inclusive(variance, consistency, expected):
    profile = strict_profile(DetectionConfig())
    assert meets_profile(_stats(variance, consistency), profile) is expected


def test_amount_variance_is_max_deviation_from_median():
    # median 10.00, worst deviation 0.50
    assert amount_variance([10.0, 10.5, 9.8]) == pytest.approx(0.05)
    assert amount_variance([10.0, 10.51, 10.0]) > 0.05


@pytest.mark.parametrize(
    "gap,expected",
    [
        (7, "weekly"),
        (10, "weekly"),
        (18.5, None),
        (29.5, "monthly"),
        (45, "monthly"),
        (60.5, None),
        (91, "quarterly"),
        (120, "quarterly"),
        (228, None),
        (365, "yearly"),
        (200, None),
        (420, None),
    ],
)
def test_bucket_frequency(gap, expected):
    assert bucket_frequency(gap) == expected


def test_netflix_three_monthly_charges_match_strict():
    config = DetectionConfig()
    txns = _charges(
        "NETFLIX.COM 866-579-7172 CA",
        [date(2026, 1, 15), date(2026, 2, 15), date(2026, 3, 15)],
        [14.99, 14.99, 14.99],
    )
    series_map = build_series(txns, config)

    outcome = match_series(series_map, _empty_gate(), config)

    match = outcome.matches[("acct-1", "NETFLIX")]
    assert match.profile == "strict"
    assert match.frequency == "monthly"
    assert match.amount == 14.99
    assert match.series.first_date == date(2026, 1, 15)
    assert match.series.last_date == date(2026, 3, 15)


def test_two_charges_need_the_smart_profile():
    config = DetectionConfig()
    txns = _charges("CLASSPASS", [date(2026, 1, 3), date(2026, 2, 3)], [49.0, 59.0])
    series_map = build_series(txns, config)

    strict = match_series(series_map, _empty_gate(), config)
    assert strict.matches == {}
    assert strict.skipped[("acct-1", "CLASSPASS")] == "insufficient"

    gate = GateResult(
        decisions={"CLASSPASS": Decision("CLASSPASS", SubscriptionLabel(0.9), "oracle")},
        cache_writes=[],
        warnings=[],
    )
    smart = match_series(series_map, gate, config)
    assert smart.matches[("acct-1", "CLASSPASS")].profile == "smart"


def test_retail_series_is_never_a_candidate():
    config = DetectionConfig()
    txns = _charges(
        "BLUE BOTTLE",
        [date(2026, 1, 1) + timedelta(days=7 * i) for i in range(6)],
        [5.25] * 6,
    )
    gate = GateResult(
        decisions={"BLUE BOTTLE": Decision("BLUE BOTTLE", RetailLabel(0.9), "user_override")},
        cache_writes=[],
        warnings=[],
    )

    outcome = match_series(build_series(txns, config), gate, config)

    assert outcome.matches == {}
    assert outcome.skipped[("acct-1", "BLUE BOTTLE")] == "retail"


def test_irregular_series_is_not_recurring():
    config = DetectionConfig()
    txns = _charges(
        "HARDWARE STORE",
        [date(2026, 1, 2), date(2026, 1, 20), date(2026, 3, 1), date(2026, 3, 9)],
        [40.0, 41.0, 40.0, 40.5],
    )

    outcome = match_series(build_series(txns, config), _empty_gate(), config)

    assert outcome.skipped[("acct-1", "HARDWARE STORE")] == "not_recurring"


def test_fit_series_raises_on_too_few_transactions():
    config = DetectionConfig()
    txns = _charges("HULU", [date(2026, 1, 1), date(2026, 2, 1)], [7.99, 7.99])
    series = build_series(txns, config)[("acct-1", "HULU")]

    with pytest.raises(SeriesInsufficientData):
        fit_series(series, strict_profile(config), config)


def test_description_disagreement_blocks_match():
    config = DetectionConfig()
    txns = [
        TransactionRecord("a", "acct-1", date(2026, 1, 5), -20.0, "ACME GYM DOWNTOWN", merchant_normalized="ACME"),
        TransactionRecord("b", "acct-1", date(2026, 2, 5), -20.0, "ACME HARDWARE", merchant_normalized="ACME"),
        TransactionRecord("c", "acct-1", date(2026, 3, 5), -20.0, "ACME TRAVEL AGENCY", merchant_normalized="ACME"),
    ]

    outcome = match_series(build_series(txns, config), _empty_gate(), config)

    assert outcome.matches == {}
    assert outcome.skipped[("acct-1", "ACME")] == "not_recurring"


def test_override_cache_entry_shape():
    entry = CacheEntry("NETFLIX", "SUBSCRIPTION", 1.0, "user_override")
    assert entry.is_override
    assert entry.to_label() == SubscriptionLabel(1.0)
