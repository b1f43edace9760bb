from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from fifo_ledger.core.config import Settings
from fifo_ledger.domain.consumption import ConsumptionResult
from fifo_ledger.domain.lots import (
    ADJUSTMENT_SOURCE_REF,
    ZERO,
    HistoryKind,
    ItemLedger,
    Lot,
    PriceHistoryEntry,
    date_text,
    decimal_text,
)
from fifo_ledger.domain.valuation import value_ledger
from fifo_ledger.ledger.store import LotStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountThresholds:
    large_variance_ratio: Decimal = Decimal("0.5")
    excess_multiplier: Decimal = Decimal("2")
    stale_lot_days: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "CountThresholds":
        return cls(
            large_variance_ratio=settings.large_variance_ratio,
            excess_multiplier=settings.count_excess_multiplier,
            stale_lot_days=settings.stale_lot_days,
        )


@dataclass(frozen=True)
class CountRuleResult:
    rule: str
    passed: bool
    detail: str

    def to_dict(self) -> dict[str, Any]:
        return {"rule": self.rule, "passed": self.passed, "detail": self.detail}


@dataclass(frozen=True)
class ReconciliationResult:
    item_code: str
    count_date: date
    system_qty: Decimal
    counted_qty: Decimal
    diff: Decimal
    warnings: tuple[CountRuleResult, ...]
    recommendation: str
    ledger: ItemLedger | None
    adjustment_lot: Lot | None = None
    consumption: ConsumptionResult | None = None

    @property
    def adjusted(self) -> bool:
        return self.diff != 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "count_date": date_text(self.count_date),
            "system_qty": decimal_text(self.system_qty),
            "counted_qty": decimal_text(self.counted_qty),
            "diff": decimal_text(self.diff),
            "adjusted": self.adjusted,
            "warnings": [warning.to_dict() for warning in self.warnings],
            "recommendation": self.recommendation,
            "adjustment_lot": self.adjustment_lot.to_dict() if self.adjustment_lot is not None else None,
            "consumption": self.consumption.to_dict() if self.consumption is not None else None,
            "ledger": self.ledger.to_dict() if self.ledger is not None else None,
        }


def _percent_of(part: Decimal, whole: Decimal) -> str:
    return format((part / whole * 100).quantize(Decimal("0.1")), "f")


def check_large_variance(system_qty: Decimal, diff: Decimal, thresholds: CountThresholds) -> CountRuleResult:
    variance = abs(diff)
    passed = variance <= system_qty * thresholds.large_variance_ratio
    if passed:
        detail = f"variance={variance}"
    elif system_qty > 0:
        detail = f"large variance: {variance} units ({_percent_of(variance, system_qty)}% of system quantity {system_qty})"
    else:
        detail = f"large variance: {variance} units against an empty system quantity"
    return CountRuleResult(rule="large_variance", passed=passed, detail=detail)


def check_unrecorded_orders(ledger: ItemLedger | None, prior_order_date_hint: date | None) -> CountRuleResult:
    last_order_date = ledger.last_order_date if ledger is not None else None
    if prior_order_date_hint is None or last_order_date is None or prior_order_date_hint <= last_order_date:
        return CountRuleResult(rule="unrecorded_orders", passed=True, detail="ok")
    return CountRuleResult(
        rule="unrecorded_orders",
        passed=False,
        detail=(
            f"count includes orders the system has not recorded "
            f"({prior_order_date_hint.isoformat()} vs last recorded {last_order_date.isoformat()})"
        ),
    )


def check_count_exceeds_system(
    system_qty: Decimal,
    counted_qty: Decimal,
    thresholds: CountThresholds,
) -> CountRuleResult:
    limit = system_qty * thresholds.excess_multiplier
    if counted_qty <= limit:
        return CountRuleResult(rule="count_exceeds_system", passed=True, detail="ok")
    return CountRuleResult(
        rule="count_exceeds_system",
        passed=False,
        detail=(
            f"counted quantity ({counted_qty}) far exceeds system quantity ({system_qty}); "
            f"more than {thresholds.excess_multiplier}x"
        ),
    )


def check_stale_lots(ledger: ItemLedger | None, count_date: date, thresholds: CountThresholds) -> CountRuleResult:
    oldest = ledger.oldest_lot if ledger is not None else None
    if oldest is None:
        return CountRuleResult(rule="possible_spoilage", passed=True, detail="no lots on hand")
    age_days = (count_date - oldest.received_date).days
    if age_days <= thresholds.stale_lot_days:
        return CountRuleResult(rule="possible_spoilage", passed=True, detail=f"oldest lot is {age_days} days old")
    return CountRuleResult(
        rule="possible_spoilage",
        passed=False,
        detail=f"oldest lot ({oldest.source_ref}) is {age_days} days old; check for spoilage",
    )


def evaluate_count(
    ledger: ItemLedger | None,
    counted_qty: Decimal,
    count_date: date,
    prior_order_date_hint: date | None,
    thresholds: CountThresholds,
) -> list[CountRuleResult]:
    system_qty = ledger.total_quantity if ledger is not None else ZERO
    diff = counted_qty - system_qty
    return [
        check_large_variance(system_qty, diff, thresholds),
        check_unrecorded_orders(ledger, prior_order_date_hint),
        check_count_exceeds_system(system_qty, counted_qty, thresholds),
        check_stale_lots(ledger, count_date, thresholds),
    ]


def recommendation_for(diff: Decimal) -> str:
    if diff == 0:
        return "Inventory count matches system; no action needed"
    if diff > 0:
        return (
            f"Investigate the source of {diff} extra units; "
            "possible missing orders or a counting error"
        )
    return f"Investigate the {-diff} unit shortage; check for unreported usage, spoilage, or theft"


def reconcile(
    store: LotStore,
    item_code: str,
    counted_qty: Decimal,
    count_date: date,
    prior_order_date_hint: date | None = None,
    *,
    thresholds: CountThresholds | None = None,
    description: str | None = None,
    unit: str | None = None,
) -> ReconciliationResult:
    thresholds = thresholds or CountThresholds()
    counted = max(counted_qty, ZERO)
    if counted != counted_qty:
        logger.warning("negative count clamped to zero item=%s counted=%s", item_code, counted_qty)

    with store.item_lock(item_code):
        before = store.get_ledger(item_code)
        system_qty = before.total_quantity if before is not None else ZERO
        diff = counted - system_qty
        warnings = tuple(
            rule for rule in evaluate_count(before, counted, count_date, prior_order_date_hint, thresholds)
            if not rule.passed
        )
        unit_cost = value_ledger(before).weighted_average_cost if before is not None else ZERO

        adjustment_lot: Lot | None = None
        consumption: ConsumptionResult | None = None
        if diff > 0:
            last_price = before.last_unit_price if before is not None else None
            receipt = store.add_lot(
                item_code,
                count_date,
                ADJUSTMENT_SOURCE_REF,
                diff,
                last_price if last_price is not None else ZERO,
                description=description,
                unit=unit,
                kind=HistoryKind.ADJUSTMENT,
            )
            adjustment_lot = receipt.lot
        elif diff < 0:
            consumption = store.consume(item_code, -diff, reason="inventory_adjustment", on_date=count_date)

        after = store.get_ledger(item_code)
        recommendation = recommendation_for(diff)
        store.record_count(
            item_code,
            PriceHistoryEntry(
                entry_date=count_date,
                kind=HistoryKind.COUNT,
                quantity=counted,
                details={
                    "system_qty": decimal_text(system_qty),
                    "counted_qty": decimal_text(counted),
                    "diff": decimal_text(diff),
                    "variance_value": decimal_text(diff * unit_cost),
                    "prior_order_date_hint": date_text(prior_order_date_hint),
                    "before": before.to_dict() if before is not None else None,
                    "after": after.to_dict() if after is not None else None,
                    "warnings": [warning.to_dict() for warning in warnings],
                    "recommendation": recommendation,
                },
            ),
        )

    if warnings:
        logger.info(
            "count for item=%s raised %d warning(s): %s",
            item_code,
            len(warnings),
            ", ".join(warning.rule for warning in warnings),
        )
    return ReconciliationResult(
        item_code=item_code,
        count_date=count_date,
        system_qty=system_qty,
        counted_qty=counted,
        diff=diff,
        warnings=warnings,
        recommendation=recommendation,
        ledger=after,
        adjustment_lot=adjustment_lot,
        consumption=consumption,
    )
