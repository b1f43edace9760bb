from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any

from fifo_ledger.domain.lots import ZERO, ConsumedPortion, ItemLedger, Lot, decimal_text


@dataclass(frozen=True)
class ConsumptionResult:
    item_code: str
    reason: str
    requested: Decimal
    portions: tuple[ConsumedPortion, ...]
    shortfall: Decimal
    ledger: ItemLedger | None

    @property
    def consumed(self) -> Decimal:
        return sum((portion.quantity_used for portion in self.portions), ZERO)

    @property
    def cost(self) -> Decimal:
        return sum((portion.cost for portion in self.portions), ZERO)

    @property
    def fully_fulfilled(self) -> bool:
        return self.shortfall == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "reason": self.reason,
            "requested": decimal_text(self.requested),
            "consumed": decimal_text(self.consumed),
            "shortfall": decimal_text(self.shortfall),
            "cost": decimal_text(self.cost),
            "portions": [portion.to_dict() for portion in self.portions],
            "ledger": self.ledger.to_dict() if self.ledger is not None else None,
        }


def drain_fifo(ledger: ItemLedger, quantity: Decimal) -> tuple[ItemLedger, tuple[ConsumedPortion, ...], Decimal]:
    """Take ``quantity`` from the oldest lots first.

    Returns the new ledger value, the consumed portions in consumption order
    and the quantity that could not be satisfied.
    """
    if quantity < 0:
        raise ValueError(f"consumption quantity must not be negative: {quantity}")

    needed = quantity
    portions: list[ConsumedPortion] = []
    kept: list[Lot] = []
    for lot in ledger.lots:
        if needed <= 0:
            kept.append(lot)
            continue
        take = min(lot.remaining_qty, needed)
        needed -= take
        fully_used = take == lot.remaining_qty
        portions.append(
            ConsumedPortion(
                lot_date=lot.received_date,
                source_ref=lot.source_ref,
                unit_price=lot.unit_price,
                quantity_used=take,
                fully_used=fully_used,
            )
        )
        if not fully_used:
            kept.append(replace(lot, remaining_qty=lot.remaining_qty - take))

    return ledger.with_lots(kept), tuple(portions), max(needed, ZERO)
