from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Iterator

from fifo_ledger.domain.consumption import ConsumptionResult, drain_fifo
from fifo_ledger.domain.lots import (
    ZERO,
    HistoryKind,
    ItemLedger,
    Lot,
    PriceHistoryEntry,
    decimal_text,
)
from fifo_ledger.persistence.snapshots import PersistenceError, SnapshotBackend

logger = logging.getLogger(__name__)


def _ingested_refs(history: dict[str, list[PriceHistoryEntry]]) -> set[str]:
    refs: set[str] = set()
    for entries in history.values():
        for entry in entries:
            if entry.source_ref is None:
                continue
            if entry.kind is HistoryKind.ORDER or (
                entry.kind is HistoryKind.REMOVAL and entry.details.get("reason") == "correction"
            ):
                refs.add(entry.source_ref)
    return refs


@dataclass(frozen=True)
class ReceiptResult:
    item_code: str
    ledger: ItemLedger | None
    lot: Lot | None = None
    correction: ConsumptionResult | None = None

    def to_dict(self) -> dict:
        return {
            "item_code": self.item_code,
            "lot": self.lot.to_dict() if self.lot is not None else None,
            "correction": self.correction.to_dict() if self.correction is not None else None,
            "ledger": self.ledger.to_dict() if self.ledger is not None else None,
        }


class LotStore:
    """Owns every item ledger and the price-history log.

    Ledgers are immutable values; a mutation builds the next value under the
    item's lock and swaps it into ``_ledgers`` in one assignment.
    """

    def __init__(self, backend: SnapshotBackend | None = None):
        self.backend = backend
        self.degraded = False
        self.last_persist_error: str | None = None
        self._ledgers: dict[str, ItemLedger] = {}
        self._history: dict[str, list[PriceHistoryEntry]] = {}
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()
        self._persist_lock = threading.Lock()
        self._ingested_refs: set[str] = set()
        self._refs_lock = threading.Lock()
        self._history_lock = threading.Lock()
        self._seq_lock = threading.Lock()
        self._next_seq = 1

    @contextmanager
    def item_lock(self, item_code: str) -> Iterator[None]:
        # entry is [lock, holders]; dropped once idle unless the item has a ledger
        with self._locks_guard:
            entry = self._locks.setdefault(item_code, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0 and item_code not in self._ledgers:
                    self._locks.pop(item_code, None)

    def claim_source_ref(self, source_ref: str) -> bool:
        """Record an order reference as ingested. False when it was seen before."""
        with self._refs_lock:
            if source_ref in self._ingested_refs:
                return False
            self._ingested_refs.add(source_ref)
            return True

    def release_source_ref(self, source_ref: str) -> None:
        with self._refs_lock:
            self._ingested_refs.discard(source_ref)

    def _take_seq(self) -> int:
        with self._seq_lock:
            seq = self._next_seq
            self._next_seq += 1
            return seq

    def _append_history(self, item_code: str, entry: PriceHistoryEntry) -> None:
        with self._history_lock:
            self._history.setdefault(item_code, []).append(entry)

    def add_lot(
        self,
        item_code: str,
        received_date: date,
        source_ref: str,
        quantity: Decimal,
        unit_price: Decimal,
        *,
        description: str | None = None,
        unit: str | None = None,
        kind: HistoryKind = HistoryKind.ORDER,
    ) -> ReceiptResult:
        if quantity == 0:
            raise ValueError(f"lot quantity must not be zero for item={item_code}")
        if unit_price < 0:
            raise ValueError(f"unit price must not be negative for item={item_code}")

        if quantity < 0:
            correction = self.consume(
                item_code,
                -quantity,
                reason="correction",
                on_date=received_date,
                source_ref=source_ref,
            )
            return ReceiptResult(item_code=item_code, ledger=correction.ledger, correction=correction)

        with self.item_lock(item_code):
            current = self._ledgers.get(item_code) or ItemLedger.empty(item_code)
            if description and not current.description:
                current = replace(current, description=description)
            if unit and not current.unit:
                current = replace(current, unit=unit)

            lot = Lot(
                received_date=received_date,
                source_ref=source_ref,
                original_qty=quantity,
                remaining_qty=quantity,
                unit_price=unit_price,
                seq=self._take_seq(),
            )
            updated = current.with_lot(lot)
            if kind == HistoryKind.ORDER and (
                current.last_order_date is None or received_date >= current.last_order_date
            ):
                updated = replace(updated, last_unit_price=unit_price, last_order_date=received_date)

            self._ledgers[item_code] = updated
            self._append_history(
                item_code,
                PriceHistoryEntry(
                    entry_date=received_date,
                    kind=kind,
                    source_ref=source_ref,
                    unit_price=unit_price,
                    quantity=quantity,
                ),
            )
        return ReceiptResult(item_code=item_code, ledger=updated, lot=lot)

    def consume(
        self,
        item_code: str,
        quantity: Decimal,
        reason: str = "usage",
        *,
        on_date: date | None = None,
        source_ref: str | None = None,
    ) -> ConsumptionResult:
        if quantity < 0:
            raise ValueError(f"consumption quantity must not be negative for item={item_code}")

        with self.item_lock(item_code):
            current = self._ledgers.get(item_code)
            if current is None:
                logger.warning("withdrawal against unknown item=%s qty=%s reason=%s", item_code, quantity, reason)
                return ConsumptionResult(
                    item_code=item_code,
                    reason=reason,
                    requested=quantity,
                    portions=(),
                    shortfall=quantity,
                    ledger=None,
                )
            if quantity == 0:
                return ConsumptionResult(
                    item_code=item_code,
                    reason=reason,
                    requested=quantity,
                    portions=(),
                    shortfall=ZERO,
                    ledger=current,
                )

            updated, portions, shortfall = drain_fifo(current, quantity)
            self._ledgers[item_code] = updated
            result = ConsumptionResult(
                item_code=item_code,
                reason=reason,
                requested=quantity,
                portions=portions,
                shortfall=shortfall,
                ledger=updated,
            )
            self._append_history(
                item_code,
                PriceHistoryEntry(
                    entry_date=on_date or date.today(),
                    kind=HistoryKind.REMOVAL,
                    source_ref=source_ref,
                    quantity=quantity,
                    details={
                        "reason": reason,
                        "consumed": decimal_text(result.consumed),
                        "shortfall": decimal_text(shortfall),
                        "portions": [portion.to_dict() for portion in portions],
                    },
                ),
            )
        if shortfall > 0:
            logger.info("withdrawal shortfall item=%s requested=%s shortfall=%s", item_code, quantity, shortfall)
        return result

    def record_count(self, item_code: str, entry: PriceHistoryEntry) -> None:
        if entry.kind != HistoryKind.COUNT:
            raise ValueError(f"expected a count entry, got {entry.kind.value}")
        self._append_history(item_code, entry)

    def get_ledger(self, item_code: str) -> ItemLedger | None:
        return self._ledgers.get(item_code)

    def all_ledgers(self) -> list[ItemLedger]:
        snapshot = dict(self._ledgers)
        return [snapshot[code] for code in sorted(snapshot)]

    def item_codes(self) -> list[str]:
        return sorted(self._ledgers)

    def history(self, item_code: str, limit: int | None = None) -> list[PriceHistoryEntry]:
        with self._history_lock:
            entries = list(self._history.get(item_code, ()))
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    def all_history(self) -> dict[str, list[PriceHistoryEntry]]:
        with self._history_lock:
            return {code: list(entries) for code, entries in self._history.items()}

    def persist(self) -> bool:
        if self.backend is None:
            return False
        # saves land in snapshot order
        with self._persist_lock:
            ledgers = dict(self._ledgers)
            history = self.all_history()
            try:
                self.backend.save(ledgers, history)
            except PersistenceError as exc:
                self.degraded = True
                self.last_persist_error = str(exc)
                logger.warning("persist failed on backend=%s, running without durability: %s", self.backend.name, exc)
                return False
            if self.degraded:
                logger.info("persist recovered on backend=%s", self.backend.name)
            self.degraded = False
            self.last_persist_error = None
        logger.info("persisted %d ledgers to backend=%s", len(ledgers), self.backend.name)
        return True

    def load(self) -> None:
        if self.backend is None:
            return
        try:
            ledgers = self.backend.load_ledgers()
        except PersistenceError as exc:
            logger.warning("ledger snapshot unavailable on backend=%s, starting empty: %s", self.backend.name, exc)
            ledgers = {}
        try:
            history = self.backend.load_history()
        except PersistenceError as exc:
            logger.warning("price history unavailable on backend=%s, starting empty: %s", self.backend.name, exc)
            history = {}

        max_seq = max((lot.seq for ledger in ledgers.values() for lot in ledger.lots), default=0)
        with self._seq_lock:
            self._next_seq = max_seq + 1
        self._ledgers = dict(ledgers)
        with self._history_lock:
            self._history = {code: list(entries) for code, entries in history.items()}
        with self._refs_lock:
            self._ingested_refs = _ingested_refs(history)
        logger.info(
            "loaded %d ledgers and history for %d items from backend=%s",
            len(self._ledgers),
            len(self._history),
            self.backend.name,
        )
