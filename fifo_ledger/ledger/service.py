from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from fifo_ledger.core.config import Settings
from fifo_ledger.domain.consumption import ConsumptionResult
from fifo_ledger.domain.lots import ZERO, ItemLedger, PriceHistoryEntry, date_text, decimal_text
from fifo_ledger.domain.valuation import (
    ItemValuation,
    SystemReport,
    count_variance_report,
    item_status,
    system_report,
    value_ledger,
)
from fifo_ledger.ledger.records import (
    CountSubmission,
    OrderIngestRequest,
    ReferencePriceRecord,
    WithdrawalRequest,
    coerce_record,
)
from fifo_ledger.ledger.store import LotStore, ReceiptResult
from fifo_ledger.persistence.snapshots import build_snapshot_backend
from fifo_ledger.reconciliation.rules import CountThresholds, ReconciliationResult, reconcile
from fifo_ledger.validation.prices import PriceValidationReport, SeverityBands, validate_prices

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    order_date: date
    source_ref: str
    receipts: tuple[ReceiptResult, ...]
    persisted: bool = False
    duplicate: bool = False

    @property
    def lots_added(self) -> int:
        return sum(1 for receipt in self.receipts if receipt.lot is not None)

    @property
    def corrections(self) -> int:
        return sum(1 for receipt in self.receipts if receipt.correction is not None)

    @property
    def correction_shortfall(self) -> Decimal:
        return sum(
            (receipt.correction.shortfall for receipt in self.receipts if receipt.correction is not None),
            ZERO,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_date": date_text(self.order_date),
            "source_ref": self.source_ref,
            "lots_added": self.lots_added,
            "corrections": self.corrections,
            "correction_shortfall": decimal_text(self.correction_shortfall),
            "persisted": self.persisted,
            "duplicate": self.duplicate,
            "receipts": [receipt.to_dict() for receipt in self.receipts],
        }


class InventoryLedgerService:
    """Entry point for collaborators: ingestion, counts, price checks and reports."""

    def __init__(
        self,
        store: LotStore,
        *,
        thresholds: CountThresholds | None = None,
        bands: SeverityBands | None = None,
        autosave: bool = False,
        top_n: int = 5,
        history_limit: int = 20,
    ):
        self.store = store
        self.thresholds = thresholds or CountThresholds()
        self.bands = bands or SeverityBands()
        self.autosave = autosave
        self.top_n = top_n
        self.history_limit = history_limit
        self._latest_report: PriceValidationReport | None = None
        self._report_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "InventoryLedgerService":
        store = LotStore(build_snapshot_backend(settings))
        store.load()
        return cls(
            store,
            thresholds=CountThresholds.from_settings(settings),
            bands=SeverityBands.from_settings(settings),
            autosave=settings.autosave,
            top_n=settings.report_top_n,
            history_limit=settings.history_default_limit,
        )

    def _autosave(self) -> bool:
        if not self.autosave:
            return False
        return self.store.persist()

    def ingest_order_lines(self, request: OrderIngestRequest | dict[str, Any]) -> IngestResult:
        order = coerce_record(OrderIngestRequest, request)
        if not self.store.claim_source_ref(order.source_ref):
            logger.warning("duplicate order ignored source_ref=%s order_date=%s", order.source_ref, order.order_date)
            return IngestResult(
                order_date=order.order_date,
                source_ref=order.source_ref,
                receipts=(),
                duplicate=True,
            )
        receipts = []
        try:
            for line in order.lines:
                # negative lines are credit memos and drain the oldest lots
                receipts.append(
                    self.store.add_lot(
                        line.item_code,
                        order.order_date,
                        order.source_ref,
                        line.quantity,
                        line.unit_price,
                        description=line.description or None,
                        unit=line.unit or None,
                    )
                )
        except Exception:
            if not receipts:
                self.store.release_source_ref(order.source_ref)
            raise
        logger.info(
            "ingested order source_ref=%s lines=%d corrections=%d",
            order.source_ref,
            len(receipts),
            sum(1 for line in order.lines if line.is_correction),
        )
        return IngestResult(
            order_date=order.order_date,
            source_ref=order.source_ref,
            receipts=tuple(receipts),
            persisted=self._autosave(),
        )

    def withdraw(
        self,
        item_code: str,
        request: WithdrawalRequest | dict[str, Any],
    ) -> ConsumptionResult:
        withdrawal = coerce_record(WithdrawalRequest, request)
        result = self.store.consume(
            item_code,
            withdrawal.quantity,
            reason=withdrawal.reason,
            on_date=withdrawal.on_date,
        )
        self._autosave()
        return result

    def submit_count(self, submission: CountSubmission | dict[str, Any]) -> ReconciliationResult:
        count = coerce_record(CountSubmission, submission)
        result = reconcile(
            self.store,
            count.item_code,
            count.counted_qty,
            count.count_date,
            count.prior_order_date_hint,
            thresholds=self.thresholds,
            description=count.description,
            unit=count.unit,
        )
        self._autosave()
        return result

    def submit_reference_prices(
        self,
        records: Iterable[ReferencePriceRecord | dict[str, Any]],
    ) -> PriceValidationReport:
        references = [coerce_record(ReferencePriceRecord, record) for record in records]
        report = validate_prices(self.store.all_ledgers(), references, bands=self.bands)
        with self._report_lock:
            self._latest_report = report
        return report

    def latest_discrepancy_report(self) -> PriceValidationReport | None:
        with self._report_lock:
            return self._latest_report

    def get_ledger(self, item_code: str) -> ItemLedger | None:
        return self.store.get_ledger(item_code)

    def list_ledgers(self) -> list[ItemLedger]:
        return self.store.all_ledgers()

    def item_status(self, item_code: str) -> dict[str, Any] | None:
        ledger = self.store.get_ledger(item_code)
        return item_status(ledger) if ledger is not None else None

    def valuation(self, item_code: str) -> ItemValuation | None:
        ledger = self.store.get_ledger(item_code)
        return value_ledger(ledger) if ledger is not None else None

    def system_report(self, top_n: int | None = None) -> SystemReport:
        return system_report(self.store.all_ledgers(), top_n=top_n or self.top_n)

    def history(self, item_code: str, limit: int | None = None) -> list[PriceHistoryEntry]:
        return self.store.history(item_code, limit=limit if limit is not None else self.history_limit)

    def count_variance_report(self) -> dict[str, Any]:
        return count_variance_report(self.store.all_history())

    def persist(self) -> bool:
        return self.store.persist()

    def health(self) -> dict[str, Any]:
        backend = self.store.backend
        return {
            "status": "degraded" if self.store.degraded else "ok",
            "backend": backend.name if backend is not None else None,
            "items": len(self.store.item_codes()),
            "last_persist_error": self.store.last_persist_error,
        }
