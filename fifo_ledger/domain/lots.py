from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

ZERO = Decimal("0")
ADJUSTMENT_SOURCE_REF = "INVENTORY_ADJUSTMENT"


class HistoryKind(str, Enum):
    ORDER = "order"
    REMOVAL = "removal"
    ADJUSTMENT = "adjustment"
    COUNT = "count"


def decimal_text(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format(value, "f")


def date_text(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Lot:
    received_date: date
    source_ref: str
    original_qty: Decimal
    remaining_qty: Decimal
    unit_price: Decimal
    seq: int = 0

    def __post_init__(self) -> None:
        if self.original_qty <= 0:
            raise ValueError(f"lot original quantity must be positive: {self.original_qty}")
        if not ZERO <= self.remaining_qty <= self.original_qty:
            raise ValueError(
                f"lot remaining quantity {self.remaining_qty} outside [0, {self.original_qty}]"
            )
        if self.unit_price < 0:
            raise ValueError(f"lot unit price must not be negative: {self.unit_price}")

    @property
    def value(self) -> Decimal:
        return self.remaining_qty * self.unit_price

    @property
    def is_adjustment(self) -> bool:
        return self.source_ref == ADJUSTMENT_SOURCE_REF

    def sort_key(self) -> tuple[date, int]:
        return (self.received_date, self.seq)

    def to_dict(self) -> dict[str, Any]:
        return {
            "received_date": date_text(self.received_date),
            "source_ref": self.source_ref,
            "original_qty": decimal_text(self.original_qty),
            "remaining_qty": decimal_text(self.remaining_qty),
            "unit_price": decimal_text(self.unit_price),
            "seq": self.seq,
        }


def sum_remaining(lots: Iterable[Lot]) -> Decimal:
    return sum((lot.remaining_qty for lot in lots), ZERO)


@dataclass(frozen=True)
class ItemLedger:
    """Immutable per-item lot queue.

    ``lots`` is always ordered by ``(received_date, seq)`` and only holds lots
    with stock left; ``total_quantity`` is derived from them on every change.
    """

    item_code: str
    description: str = ""
    unit: str = ""
    lots: tuple[Lot, ...] = ()
    total_quantity: Decimal = ZERO
    last_unit_price: Decimal | None = None
    last_order_date: date | None = None

    @classmethod
    def empty(cls, item_code: str, description: str = "", unit: str = "") -> "ItemLedger":
        return cls(item_code=item_code, description=description, unit=unit)

    def with_lots(self, lots: Iterable[Lot]) -> "ItemLedger":
        kept = tuple(sorted((lot for lot in lots if lot.remaining_qty > 0), key=Lot.sort_key))
        return replace(self, lots=kept, total_quantity=sum_remaining(kept))

    def with_lot(self, lot: Lot) -> "ItemLedger":
        return self.with_lots((*self.lots, lot))

    @property
    def lot_count(self) -> int:
        return len(self.lots)

    @property
    def oldest_lot(self) -> Lot | None:
        return self.lots[0] if self.lots else None

    @property
    def total_value(self) -> Decimal:
        return sum((lot.value for lot in self.lots), ZERO)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "description": self.description,
            "unit": self.unit,
            "lots": [lot.to_dict() for lot in self.lots],
            "total_quantity": decimal_text(self.total_quantity),
            "last_unit_price": decimal_text(self.last_unit_price),
            "last_order_date": date_text(self.last_order_date),
        }


@dataclass(frozen=True)
class ConsumedPortion:
    lot_date: date
    source_ref: str
    unit_price: Decimal
    quantity_used: Decimal
    fully_used: bool

    @property
    def cost(self) -> Decimal:
        return self.quantity_used * self.unit_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "lot_date": date_text(self.lot_date),
            "source_ref": self.source_ref,
            "unit_price": decimal_text(self.unit_price),
            "quantity_used": decimal_text(self.quantity_used),
            "fully_used": self.fully_used,
            "cost": decimal_text(self.cost),
        }


@dataclass(frozen=True)
class PriceHistoryEntry:
    entry_date: date
    kind: HistoryKind
    source_ref: str | None = None
    unit_price: Decimal | None = None
    quantity: Decimal | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_date": date_text(self.entry_date),
            "kind": self.kind.value,
            "source_ref": self.source_ref,
            "unit_price": decimal_text(self.unit_price),
            "quantity": decimal_text(self.quantity),
            "details": self.details,
        }
