from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable, Sequence

from fifo_ledger.core.config import Settings
from fifo_ledger.domain.lots import ZERO, ItemLedger, Lot, date_text, decimal_text
from fifo_ledger.ledger.records import ReferencePriceRecord

logger = logging.getLogger(__name__)

PERCENT_QUANTUM = Decimal("0.01")
HIGH_AVERAGE_VARIANCE_PCT = Decimal("2")


class Severity(str, Enum):
    """Discrepancy grades. ``LOW`` is the band under ``match_below``; such lots count as matches."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MatchKind(str, Enum):
    SOURCE_REF = "source_ref"
    NEAREST_DATE = "nearest_date"


@dataclass(frozen=True)
class SeverityBands:
    match_below: Decimal = Decimal("1")
    high_from: Decimal = Decimal("5")
    critical_from: Decimal = Decimal("10")

    def __post_init__(self) -> None:
        if not self.match_below <= self.high_from <= self.critical_from:
            raise ValueError("severity breakpoints must be ascending")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SeverityBands":
        return cls(
            match_below=settings.price_match_below_pct,
            high_from=settings.price_high_from_pct,
            critical_from=settings.price_critical_from_pct,
        )

    def classify(self, percent_variance: Decimal) -> Severity:
        if percent_variance >= self.critical_from:
            return Severity.CRITICAL
        if percent_variance >= self.high_from:
            return Severity.HIGH
        if percent_variance >= self.match_below:
            return Severity.MEDIUM
        return Severity.LOW


@dataclass(frozen=True)
class DiscrepancyRecord:
    item_code: str
    description: str
    lot_price: Decimal
    reference_price: Decimal
    absolute_diff: Decimal
    percent_variance: Decimal
    severity: Severity
    lot_date: date
    lot_source_ref: str
    reference_source_ref: str
    match_kind: MatchKind

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "description": self.description,
            "lot_price": decimal_text(self.lot_price),
            "reference_price": decimal_text(self.reference_price),
            "absolute_diff": decimal_text(self.absolute_diff),
            "percent_variance": decimal_text(self.percent_variance),
            "severity": self.severity.value,
            "lot_date": date_text(self.lot_date),
            "lot_source_ref": self.lot_source_ref,
            "reference_source_ref": self.reference_source_ref,
            "match_kind": self.match_kind.value,
        }


@dataclass(frozen=True)
class UnvalidatedLot:
    item_code: str
    lot_date: date
    lot_source_ref: str
    lot_price: Decimal
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "lot_date": date_text(self.lot_date),
            "lot_source_ref": self.lot_source_ref,
            "lot_price": decimal_text(self.lot_price),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ValidationSummary:
    items_checked: int
    lots_checked: int
    matches: int
    discrepancies: int
    unvalidated: int
    average_variance: Decimal
    severity_counts: dict[str, int]
    recurring_items: tuple[str, ...]
    items_without_reference: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "items_checked": self.items_checked,
            "lots_checked": self.lots_checked,
            "matches": self.matches,
            "discrepancies": self.discrepancies,
            "unvalidated": self.unvalidated,
            "average_variance": decimal_text(self.average_variance),
            "severity_counts": dict(self.severity_counts),
            "recurring_items": list(self.recurring_items),
            "items_without_reference": list(self.items_without_reference),
        }


@dataclass(frozen=True)
class PriceValidationReport:
    discrepancies: tuple[DiscrepancyRecord, ...]
    unvalidated: tuple[UnvalidatedLot, ...]
    summary: ValidationSummary
    recommendations: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "discrepancies": [record.to_dict() for record in self.discrepancies],
            "unvalidated": [lot.to_dict() for lot in self.unvalidated],
            "summary": self.summary.to_dict(),
            "recommendations": list(self.recommendations),
        }


def find_reference(
    lot: Lot,
    references: Sequence[ReferencePriceRecord],
) -> tuple[ReferencePriceRecord, MatchKind] | None:
    """Pick the reference a lot is checked against.

    A reference carrying the lot's own source ref wins; otherwise the dated
    reference closest to the lot's receipt date, the earliest listed on ties.
    """
    if lot.source_ref:
        for reference in references:
            if reference.source_ref == lot.source_ref:
                return reference, MatchKind.SOURCE_REF

    closest: ReferencePriceRecord | None = None
    smallest_gap: int | None = None
    for reference in references:
        if reference.reference_date is None:
            continue
        gap = abs((lot.received_date - reference.reference_date).days)
        if smallest_gap is None or gap < smallest_gap:
            closest, smallest_gap = reference, gap
    if closest is None:
        return None
    return closest, MatchKind.NEAREST_DATE


def _group_by_item(references: Iterable[ReferencePriceRecord]) -> dict[str, list[ReferencePriceRecord]]:
    grouped: dict[str, list[ReferencePriceRecord]] = {}
    for reference in references:
        grouped.setdefault(reference.item_code, []).append(reference)
    return grouped


def validate_prices(
    ledgers: Iterable[ItemLedger],
    references: Iterable[ReferencePriceRecord],
    *,
    bands: SeverityBands | None = None,
) -> PriceValidationReport:
    bands = bands or SeverityBands()
    by_item = _group_by_item(references)

    discrepancies: list[DiscrepancyRecord] = []
    unvalidated: list[UnvalidatedLot] = []
    raw_variances: list[Decimal] = []
    items_checked = lots_checked = matches = 0
    without_reference: list[str] = []

    for ledger in ledgers:
        if not ledger.lots:
            continue
        items_checked += 1
        item_refs = by_item.get(ledger.item_code, [])
        if not item_refs:
            without_reference.append(ledger.item_code)

        for lot in ledger.lots:
            lots_checked += 1
            found = find_reference(lot, item_refs)
            if found is None:
                unvalidated.append(
                    UnvalidatedLot(ledger.item_code, lot.received_date, lot.source_ref, lot.unit_price, "no_reference")
                )
                continue
            reference, match_kind = found
            if reference.unit_price == 0:
                unvalidated.append(
                    UnvalidatedLot(
                        ledger.item_code, lot.received_date, lot.source_ref, lot.unit_price, "zero_reference_price"
                    )
                )
                continue

            absolute_diff = abs(lot.unit_price - reference.unit_price)
            variance = absolute_diff / reference.unit_price * 100
            if variance < bands.match_below:
                matches += 1
                continue

            raw_variances.append(variance)
            discrepancies.append(
                DiscrepancyRecord(
                    item_code=ledger.item_code,
                    description=ledger.description,
                    lot_price=lot.unit_price,
                    reference_price=reference.unit_price,
                    absolute_diff=absolute_diff,
                    percent_variance=variance.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP),
                    severity=bands.classify(variance),
                    lot_date=lot.received_date,
                    lot_source_ref=lot.source_ref,
                    reference_source_ref=reference.source_ref,
                    match_kind=match_kind,
                )
            )

    # stable: equal variances keep ledger order
    discrepancies.sort(key=lambda record: record.percent_variance, reverse=True)

    average = (
        (sum(raw_variances, ZERO) / len(raw_variances)).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)
        if raw_variances
        else ZERO
    )
    severity_counts = Counter(record.severity.value for record in discrepancies)
    per_item = Counter(record.item_code for record in discrepancies)
    summary = ValidationSummary(
        items_checked=items_checked,
        lots_checked=lots_checked,
        matches=matches,
        discrepancies=len(discrepancies),
        unvalidated=len(unvalidated),
        average_variance=average,
        severity_counts={
            severity.value: severity_counts.get(severity.value, 0)
            for severity in Severity
            if severity is not Severity.LOW
        },
        recurring_items=tuple(sorted(code for code, count in per_item.items() if count > 1)),
        items_without_reference=tuple(without_reference),
    )
    report = PriceValidationReport(
        discrepancies=tuple(discrepancies),
        unvalidated=tuple(unvalidated),
        summary=summary,
        recommendations=tuple(build_recommendations(discrepancies, summary)),
    )
    logger.info(
        "price validation checked %d lots: matches=%d discrepancies=%d unvalidated=%d",
        lots_checked,
        matches,
        len(discrepancies),
        len(unvalidated),
    )
    return report


def build_recommendations(discrepancies: Sequence[DiscrepancyRecord], summary: ValidationSummary) -> list[str]:
    recommendations: list[str] = []
    if not discrepancies:
        recommendations.append("All prices validated successfully; no action needed")
    else:
        critical = summary.severity_counts.get(Severity.CRITICAL.value, 0)
        if critical:
            recommendations.append(f"{critical} critical price discrepancies found; immediate review required")
            recommendations.append("Verify invoice data extraction accuracy")
            recommendations.append("Check for bulk pricing or special discount applications")
        if summary.average_variance > HIGH_AVERAGE_VARIANCE_PCT:
            recommendations.append("High average price variance detected")
            recommendations.append("Validate unit price calculations for variable weight items")
        if summary.recurring_items:
            recommendations.append(f"{len(summary.recurring_items)} items show consistent pricing issues")
            recommendations.append("These items may need manual price verification")
    if summary.unvalidated:
        recommendations.append(f"{summary.unvalidated} lots could not be checked against a reference price")
    return recommendations
