from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from fifo_ledger.core.config import Settings
from fifo_ledger.ledger.records import OrderIngestRequest, RecordValidationError
from fifo_ledger.ledger.service import InventoryLedgerService


def _order(**overrides):
    order = {
        "orderDate": "2025-01-06",
        "sourceRef": "INV-1",
        "lines": [
            {"itemCode": "BEEF-10", "description": "Ground beef", "unit": "kg", "quantity": "30", "unitPrice": "57.38"},
            {"itemCode": "OIL-5", "description": "Canola oil", "unit": "L", "quantity": 3, "unitPrice": "5.88"},
        ],
    }
    order.update(overrides)
    return order


def test_ingest_camel_case_document(service: InventoryLedgerService):
    result = service.ingest_order_lines(_order())

    assert result.lots_added == 2
    assert result.corrections == 0
    assert result.persisted is False
    beef = service.get_ledger("BEEF-10")
    assert beef.description == "Ground beef"
    assert beef.total_quantity == Decimal("30")
    assert beef.lots[0].unit_price == Decimal("57.38")


def test_credit_memo_line_is_a_correction(service: InventoryLedgerService):
    service.ingest_order_lines(_order())
    memo = OrderIngestRequest(
        order_date=date(2025, 1, 8),
        source_ref="CM-7",
        lines=[{"item_code": "BEEF-10", "quantity": "-2", "unit_price": "57.38"}],
    )

    result = service.ingest_order_lines(memo)

    assert result.lots_added == 0
    assert result.corrections == 1
    assert result.correction_shortfall == 0
    assert service.get_ledger("BEEF-10").total_quantity == Decimal("28")


@pytest.mark.parametrize(
    "bad_line",
    [
        {"itemCode": "", "quantity": "1", "unitPrice": "1"},
        {"itemCode": "X", "quantity": "0", "unitPrice": "1"},
        {"itemCode": "X", "quantity": "1", "unitPrice": "-1"},
        {"itemCode": "X", "quantity": "1", "unitPrice": "abc"},
        {"itemCode": "X", "quantity": "NaN", "unitPrice": "1"},
        {"quantity": "1", "unitPrice": "1"},
    ],
)
def test_malformed_lines_never_reach_the_ledger(service: InventoryLedgerService, bad_line):
    with pytest.raises(RecordValidationError) as excinfo:
        service.ingest_order_lines(_order(lines=[bad_line]))

    assert excinfo.value.record_type == "OrderIngestRequest"
    assert service.list_ledgers() == []


def test_order_without_lines_is_rejected(service: InventoryLedgerService):
    with pytest.raises(RecordValidationError):
        service.ingest_order_lines(_order(lines=[]))


def test_withdraw_and_history(service: InventoryLedgerService):
    service.ingest_order_lines(_order())

    result = service.withdraw("BEEF-10", {"quantity": "4", "onDate": "2025-01-07"})

    assert result.consumed == Decimal("4")
    entries = service.history("BEEF-10")
    assert [entry.kind.value for entry in entries] == ["order", "removal"]
    assert service.history("BEEF-10", limit=1)[0].entry_date == date(2025, 1, 7)


def test_withdraw_rejects_non_positive_quantity(service: InventoryLedgerService):
    with pytest.raises(RecordValidationError):
        service.withdraw("BEEF-10", {"quantity": "0"})


def test_submit_count_and_reports(service: InventoryLedgerService):
    service.ingest_order_lines(_order())

    result = service.submit_count({"itemCode": "BEEF-10", "countedQty": "50", "countDate": "2025-01-20"})

    assert result.diff == Decimal("20")
    assert service.valuation("BEEF-10").total_quantity == Decimal("50")
    assert service.count_variance_report()["over_counts"] == 1
    assert service.system_report().total_items == 2


def test_reference_prices_keep_latest_report(service: InventoryLedgerService):
    service.ingest_order_lines(_order())
    assert service.latest_discrepancy_report() is None

    report = service.submit_reference_prices(
        [
            {"itemCode": "BEEF-10", "sourceRef": "INV-1", "date": "2025-01-06", "unitPrice": "60.00"},
            {"itemCode": "OIL-5", "sourceRef": "INV-1", "unitPrice": "5.88"},
        ]
    )

    assert service.latest_discrepancy_report() is report
    assert report.summary.matches == 1
    assert report.discrepancies[0].item_code == "BEEF-10"


def test_autosave_persists_after_each_batch(settings: Settings):
    service = InventoryLedgerService.from_settings(settings.model_copy(update={"autosave": True}))

    result = service.ingest_order_lines(_order())

    assert result.persisted is True
    assert settings.ledgers_path.exists()
    assert settings.history_path.exists()

    reopened = InventoryLedgerService.from_settings(settings)
    assert reopened.get_ledger("OIL-5").total_quantity == Decimal("3")


def test_health_reports_backend(service: InventoryLedgerService):
    health = service.health()

    assert health["status"] == "ok"
    assert health["backend"] == "json"
    assert health["items"] == 0


def test_repeated_invoice_is_ignored(service: InventoryLedgerService, caplog: pytest.LogCaptureFixture):
    first = service.ingest_order_lines(_order())

    with caplog.at_level("WARNING", logger="fifo_ledger.ledger.service"):
        again = service.ingest_order_lines(_order())

    assert first.duplicate is False
    assert again.duplicate is True
    assert again.lots_added == 0
    assert again.to_dict()["duplicate"] is True
    assert service.get_ledger("BEEF-10").total_quantity == Decimal("30")
    assert [entry.kind.value for entry in service.history("BEEF-10")] == ["order"]
    assert "duplicate order ignored source_ref=INV-1" in caplog.text


def test_repeated_invoice_is_ignored_after_reload(settings: Settings):
    service = InventoryLedgerService.from_settings(settings)
    service.ingest_order_lines(_order())
    service.ingest_order_lines(
        OrderIngestRequest(
            order_date=date(2025, 1, 8),
            source_ref="CM-7",
            lines=[{"item_code": "BEEF-10", "quantity": "-2", "unit_price": "57.38"}],
        )
    )
    assert service.persist() is True

    reopened = InventoryLedgerService.from_settings(settings)

    assert reopened.ingest_order_lines(_order()).duplicate is True
    assert reopened.ingest_order_lines(_order(sourceRef="CM-7", lines=[{"itemCode": "BEEF-10", "quantity": "-2", "unitPrice": "57.38"}])).duplicate is True
    assert reopened.get_ledger("BEEF-10").total_quantity == Decimal("28")
    assert reopened.ingest_order_lines(_order(sourceRef="INV-2")).lots_added == 2


def test_rejected_invoice_can_be_resubmitted(service: InventoryLedgerService):
    with pytest.raises(RecordValidationError):
        service.ingest_order_lines(_order(lines=[{"itemCode": "X", "quantity": "0", "unitPrice": "1"}]))

    result = service.ingest_order_lines(_order())

    assert result.duplicate is False
    assert result.lots_added == 2
