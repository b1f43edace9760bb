from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping

from fifo_ledger.domain.lots import ZERO, HistoryKind, ItemLedger, PriceHistoryEntry, decimal_text

COST_QUANTUM = Decimal("0.0001")
MONEY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class ItemValuation:
    item_code: str
    total_quantity: Decimal
    weighted_average_cost: Decimal
    total_value: Decimal
    lot_count: int
    last_unit_price: Decimal | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "total_quantity": decimal_text(self.total_quantity),
            "weighted_average_cost": decimal_text(self.weighted_average_cost),
            "total_value": decimal_text(self.total_value),
            "lot_count": self.lot_count,
            "last_unit_price": decimal_text(self.last_unit_price),
        }


@dataclass(frozen=True)
class ComplexItem:
    item_code: str
    lot_count: int
    total_quantity: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "lot_count": self.lot_count,
            "total_quantity": decimal_text(self.total_quantity),
        }


@dataclass(frozen=True)
class SystemReport:
    total_items: int
    total_quantity: Decimal
    total_value: Decimal
    items_with_multiple_lots: int
    average_value_per_item: Decimal
    top_complex_items: tuple[ComplexItem, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_items": self.total_items,
            "total_quantity": decimal_text(self.total_quantity),
            "total_value": decimal_text(self.total_value),
            "items_with_multiple_lots": self.items_with_multiple_lots,
            "average_value_per_item": decimal_text(self.average_value_per_item),
            "top_complex_items": [item.to_dict() for item in self.top_complex_items],
        }


def value_ledger(ledger: ItemLedger) -> ItemValuation:
    """Weighted-average cost over the remaining lots.

    An item with nothing on hand is valued at its last purchase price (or 0
    if it was never priced) so a later count adjustment has a cost to use.
    """
    total_qty = ledger.total_quantity
    total_value = ledger.total_value
    if total_qty > 0:
        average = (total_value / total_qty).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)
    else:
        average = ledger.last_unit_price if ledger.last_unit_price is not None else ZERO
    return ItemValuation(
        item_code=ledger.item_code,
        total_quantity=total_qty,
        weighted_average_cost=average,
        total_value=total_value,
        lot_count=ledger.lot_count,
        last_unit_price=ledger.last_unit_price,
    )


def item_status(ledger: ItemLedger) -> dict[str, Any]:
    valuation = value_ledger(ledger)
    return {
        "item_code": ledger.item_code,
        "description": ledger.description,
        "unit": ledger.unit,
        "total_quantity": decimal_text(ledger.total_quantity),
        "lots": [
            {
                **lot.to_dict(),
                "lot_value": decimal_text(lot.value),
                "is_adjustment": lot.is_adjustment,
            }
            for lot in ledger.lots
        ],
        "weighted_average_cost": decimal_text(valuation.weighted_average_cost),
        "total_value": decimal_text(valuation.total_value),
        "last_order_date": ledger.last_order_date.isoformat() if ledger.last_order_date else None,
        "last_unit_price": decimal_text(ledger.last_unit_price),
        "lot_count": ledger.lot_count,
    }


def system_report(ledgers: Iterable[ItemLedger], top_n: int = 5) -> SystemReport:
    ledger_list = list(ledgers)
    total_quantity = sum((ledger.total_quantity for ledger in ledger_list), ZERO)
    total_value = sum((ledger.total_value for ledger in ledger_list), ZERO)
    multiple = sum(1 for ledger in ledger_list if ledger.lot_count > 1)
    average = (
        (total_value / len(ledger_list)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
        if ledger_list
        else ZERO
    )
    ranked = sorted(ledger_list, key=lambda ledger: (-ledger.lot_count, ledger.item_code))[:top_n]
    return SystemReport(
        total_items=len(ledger_list),
        total_quantity=total_quantity,
        total_value=total_value,
        items_with_multiple_lots=multiple,
        average_value_per_item=average,
        top_complex_items=tuple(
            ComplexItem(item_code=ledger.item_code, lot_count=ledger.lot_count, total_quantity=ledger.total_quantity)
            for ledger in ranked
        ),
    )


def count_variance_report(history: Mapping[str, list[PriceHistoryEntry]]) -> dict[str, Any]:
    """Summarise the latest physical count of every counted item."""
    latest: dict[str, PriceHistoryEntry] = {}
    for item_code, entries in history.items():
        for entry in entries:
            if entry.kind == HistoryKind.COUNT:
                latest[item_code] = entry

    perfect = over = under = 0
    total_variance_value = ZERO
    rows = []
    for item_code in sorted(latest):
        details = latest[item_code].details
        diff = Decimal(details.get("diff", "0"))
        variance_value = Decimal(details.get("variance_value", "0"))
        total_variance_value += variance_value
        if diff > 0:
            over += 1
        elif diff < 0:
            under += 1
        else:
            perfect += 1
        rows.append(
            {
                "item_code": item_code,
                "count_date": latest[item_code].entry_date.isoformat(),
                "system_qty": details.get("system_qty"),
                "counted_qty": details.get("counted_qty"),
                "diff": decimal_text(diff),
                "variance_value": decimal_text(variance_value),
            }
        )

    rows.sort(key=lambda row: abs(Decimal(row["variance_value"])), reverse=True)
    return {
        "items_counted": len(latest),
        "perfect_counts": perfect,
        "over_counts": over,
        "under_counts": under,
        "total_variance_value": decimal_text(total_variance_value),
        "items": rows,
    }
