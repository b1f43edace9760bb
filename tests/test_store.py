from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal

import pytest

from fifo_ledger.domain.lots import HistoryKind
from fifo_ledger.ledger.store import LotStore


def test_add_lot_creates_ledger_and_history(store: LotStore):
    receipt = store.add_lot("BEEF-10", date(2025, 1, 6), "INV-1", Decimal("30"), Decimal("57.38"), description="Beef", unit="kg")

    ledger = store.get_ledger("BEEF-10")
    assert receipt.lot is not None
    assert receipt.correction is None
    assert ledger.description == "Beef"
    assert ledger.unit == "kg"
    assert ledger.total_quantity == Decimal("30")
    assert ledger.last_unit_price == Decimal("57.38")
    assert ledger.last_order_date == date(2025, 1, 6)

    entries = store.history("BEEF-10")
    assert [entry.kind for entry in entries] == [HistoryKind.ORDER]
    assert entries[0].unit_price == Decimal("57.38")


def test_out_of_order_receipt_is_inserted_by_date(store: LotStore):
    store.add_lot("RICE-2", date(2025, 1, 10), "INV-B", Decimal("5"), Decimal("2.00"))
    store.add_lot("RICE-2", date(2025, 1, 20), "INV-C", Decimal("5"), Decimal("2.20"))
    store.add_lot("RICE-2", date(2025, 1, 10), "INV-D", Decimal("5"), Decimal("2.10"))
    store.add_lot("RICE-2", date(2025, 1, 2), "INV-A", Decimal("5"), Decimal("1.90"))

    ledger = store.get_ledger("RICE-2")
    assert [lot.source_ref for lot in ledger.lots] == ["INV-A", "INV-B", "INV-D", "INV-C"]
    # a back-dated receipt does not move the last purchase price backwards
    assert ledger.last_unit_price == Decimal("2.20")
    assert ledger.last_order_date == date(2025, 1, 20)


def test_negative_quantity_is_a_correction(beef_store: LotStore):
    receipt = beef_store.add_lot("BEEF-10", date(2025, 1, 8), "CM-1", Decimal("-4"), Decimal("57.38"))

    assert receipt.lot is None
    assert receipt.correction is not None
    assert receipt.correction.reason == "correction"
    assert receipt.correction.consumed == Decimal("4")
    ledger = beef_store.get_ledger("BEEF-10")
    assert ledger.total_quantity == Decimal("26")
    assert ledger.lot_count == 1

    entry = beef_store.history("BEEF-10")[-1]
    assert entry.kind == HistoryKind.REMOVAL
    assert entry.source_ref == "CM-1"
    assert entry.details["reason"] == "correction"


def test_correction_on_unknown_item_reports_shortfall(store: LotStore):
    receipt = store.add_lot("GHOST", date(2025, 1, 8), "CM-2", Decimal("-3"), Decimal("1"))

    assert receipt.ledger is None
    assert receipt.correction.shortfall == Decimal("3")
    assert store.get_ledger("GHOST") is None


def test_zero_quantity_and_negative_price_rejected(store: LotStore):
    with pytest.raises(ValueError):
        store.add_lot("X", date(2025, 1, 1), "INV", Decimal("0"), Decimal("1"))
    with pytest.raises(ValueError):
        store.add_lot("X", date(2025, 1, 1), "INV", Decimal("1"), Decimal("-1"))
    assert store.get_ledger("X") is None


def test_history_limit_returns_latest_entries(store: LotStore):
    for day in range(1, 6):
        store.add_lot("EGG-12", date(2025, 4, day), f"INV-{day}", Decimal("1"), Decimal("3"))

    latest = store.history("EGG-12", limit=2)
    assert [entry.source_ref for entry in latest] == ["INV-4", "INV-5"]
    assert len(store.history("EGG-12")) == 5
    assert store.history("EGG-12", limit=0) == []


def test_all_ledgers_sorted_by_item_code(store: LotStore):
    store.add_lot("ZUCC", date(2025, 1, 1), "INV-1", Decimal("1"), Decimal("1"))
    store.add_lot("APPL", date(2025, 1, 1), "INV-1", Decimal("1"), Decimal("1"))

    assert [ledger.item_code for ledger in store.all_ledgers()] == ["APPL", "ZUCC"]


def test_concurrent_mutations_keep_totals(store: LotStore):
    store.add_lot("FLOUR", date(2025, 1, 1), "INV-0", Decimal("1000"), Decimal("0.80"))

    def receive(worker: int) -> None:
        for n in range(50):
            store.add_lot("FLOUR", date(2025, 1, 2), f"INV-{worker}-{n}", Decimal("2"), Decimal("0.85"))

    def withdraw() -> None:
        for _ in range(50):
            store.consume("FLOUR", Decimal("3"))

    threads = [threading.Thread(target=receive, args=(i,)) for i in range(4)]
    threads += [threading.Thread(target=withdraw) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    ledger = store.get_ledger("FLOUR")
    # 1000 + 4 * 50 * 2 - 4 * 50 * 3
    assert ledger.total_quantity == Decimal("800")
    assert ledger.total_quantity == sum((lot.remaining_qty for lot in ledger.lots), Decimal("0"))
    assert len({lot.seq for lot in ledger.lots}) == ledger.lot_count


def test_unknown_item_locks_are_not_retained(store: LotStore):
    for n in range(100):
        assert store.consume(f"GHOST-{n}", Decimal("1")).shortfall == Decimal("1")
    store.add_lot("BEEF-10", date(2025, 1, 6), "INV-1", Decimal("3"), Decimal("57.38"))
    store.consume("BEEF-10", Decimal("1"))

    assert set(store._locks) == {"BEEF-10"}


def test_waiting_holder_keeps_lock_alive(store: LotStore):
    entered = threading.Event()
    release = threading.Event()

    def hold() -> None:
        with store.item_lock("GHOST"):
            entered.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold)
    holder.start()
    assert entered.wait(timeout=5)
    waiter = threading.Thread(target=store.consume, args=("GHOST", Decimal("1")))
    waiter.start()
    release.set()
    holder.join(timeout=5)
    waiter.join(timeout=5)

    assert "GHOST" not in store._locks
