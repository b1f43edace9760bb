from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from fifo_ledger.ledger.records import ReferencePriceRecord
from fifo_ledger.ledger.store import LotStore
from fifo_ledger.validation.prices import MatchKind, Severity, SeverityBands, find_reference, validate_prices


def _ref(item_code: str, price: str, source_ref: str = "", on: date | None = None) -> ReferencePriceRecord:
    return ReferencePriceRecord(item_code=item_code, source_ref=source_ref, date=on, unit_price=Decimal(price))


def test_exact_price_is_a_match_and_medium_variance_is_reported(store: LotStore):
    store.add_lot("BEEF-10", date(2025, 1, 6), "INV-1", Decimal("30"), Decimal("57.38"))
    store.add_lot("BEEF-10", date(2025, 1, 13), "INV-2", Decimal("10"), Decimal("60.00"))

    report = validate_prices(
        store.all_ledgers(),
        [_ref("BEEF-10", "57.38", "INV-1"), _ref("BEEF-10", "57.38", "INV-2")],
    )

    assert report.summary.matches == 1
    assert report.summary.discrepancies == 1
    record = report.discrepancies[0]
    assert record.lot_source_ref == "INV-2"
    assert record.percent_variance == Decimal("4.57")
    assert record.severity == Severity.MEDIUM
    assert record.match_kind == MatchKind.SOURCE_REF
    assert record.absolute_diff == Decimal("2.62")


@pytest.mark.parametrize(
    ("percent", "severity"),
    [
        ("0.99", Severity.LOW),
        ("1", Severity.MEDIUM),
        ("4.99", Severity.MEDIUM),
        ("5", Severity.HIGH),
        ("9.99", Severity.HIGH),
        ("10", Severity.CRITICAL),
        ("42", Severity.CRITICAL),
    ],
)
def test_severity_breakpoints(percent: str, severity: Severity):
    assert SeverityBands().classify(Decimal(percent)) == severity


def test_bands_must_be_ascending():
    with pytest.raises(ValueError):
        SeverityBands(match_below=Decimal("5"), high_from=Decimal("1"), critical_from=Decimal("10"))


def test_fallback_uses_nearest_dated_reference(store: LotStore):
    store.add_lot("OIL-5", date(2025, 2, 10), "INV-X", Decimal("3"), Decimal("5.00"))
    lot = store.get_ledger("OIL-5").lots[0]

    references = [
        _ref("OIL-5", "9.00"),
        _ref("OIL-5", "4.00", "INV-OLD", date(2025, 1, 1)),
        _ref("OIL-5", "5.50", "INV-NEAR-1", date(2025, 2, 7)),
        _ref("OIL-5", "5.60", "INV-NEAR-2", date(2025, 2, 13)),
    ]

    reference, match_kind = find_reference(lot, references)
    assert match_kind == MatchKind.NEAREST_DATE
    assert reference.source_ref == "INV-NEAR-1"


def test_lots_without_reference_are_unvalidated(store: LotStore):
    store.add_lot("OIL-5", date(2025, 2, 10), "INV-X", Decimal("3"), Decimal("5.00"))
    store.add_lot("SALT-1", date(2025, 2, 10), "INV-Y", Decimal("3"), Decimal("1.00"))

    report = validate_prices(
        store.all_ledgers(),
        [_ref("OIL-5", "5.00"), _ref("SALT-1", "0", "INV-Y")],
    )

    reasons = {(lot.item_code, lot.reason) for lot in report.unvalidated}
    assert reasons == {("OIL-5", "no_reference"), ("SALT-1", "zero_reference_price")}
    assert report.summary.unvalidated == 2
    assert report.summary.discrepancies == 0
    assert report.summary.items_without_reference == ()


def test_summary_flags_recurring_items_and_sorts_by_variance(store: LotStore):
    store.add_lot("BEEF-10", date(2025, 1, 6), "INV-1", Decimal("1"), Decimal("110"))
    store.add_lot("BEEF-10", date(2025, 1, 13), "INV-2", Decimal("1"), Decimal("103"))
    store.add_lot("OIL-5", date(2025, 1, 6), "INV-1", Decimal("1"), Decimal("106"))
    store.add_lot("SALT-1", date(2025, 1, 6), "INV-1", Decimal("1"), Decimal("1"))

    report = validate_prices(
        store.all_ledgers(),
        [
            _ref("BEEF-10", "100", "INV-1"),
            _ref("BEEF-10", "100", "INV-2"),
            _ref("OIL-5", "100", "INV-1"),
        ],
    )

    assert [record.percent_variance for record in report.discrepancies] == [
        Decimal("10.00"),
        Decimal("6.00"),
        Decimal("3.00"),
    ]
    summary = report.summary
    assert summary.items_checked == 3
    assert summary.lots_checked == 4
    assert summary.recurring_items == ("BEEF-10",)
    assert summary.items_without_reference == ("SALT-1",)
    assert summary.severity_counts == {"medium": 1, "high": 1, "critical": 1}
    assert summary.average_variance == Decimal("6.33")
    assert report.recommendations[0].startswith("1 critical price discrepancies")
    assert "High average price variance detected" in report.recommendations
    assert "1 items show consistent pricing issues" in report.recommendations


def test_all_clear_recommendation(beef_store: LotStore):
    report = validate_prices(beef_store.all_ledgers(), [_ref("BEEF-10", "57.38", "INV-1")])

    assert report.discrepancies == ()
    assert report.recommendations == ("All prices validated successfully; no action needed",)


def test_custom_bands_change_classification(beef_store: LotStore):
    bands = SeverityBands(match_below=Decimal("0.5"), high_from=Decimal("2"), critical_from=Decimal("4"))

    report = validate_prices(beef_store.all_ledgers(), [_ref("BEEF-10", "55", "INV-1")], bands=bands)

    assert report.discrepancies[0].severity == Severity.CRITICAL


def test_drained_items_are_not_checked(beef_store: LotStore):
    beef_store.consume("BEEF-10", Decimal("30"), on_date=date(2025, 1, 10))
    beef_store.add_lot("OIL-5", date(2025, 2, 1), "INV-2", Decimal("3"), Decimal("5.88"))

    report = validate_prices(beef_store.all_ledgers(), [_ref("OIL-5", "5.88", "INV-2")])

    assert beef_store.get_ledger("BEEF-10").lots == ()
    assert report.summary.items_checked == 1
    assert report.summary.lots_checked == 1
    assert report.summary.items_without_reference == ()
    assert "low" not in report.to_dict()["summary"]["severity_counts"]
