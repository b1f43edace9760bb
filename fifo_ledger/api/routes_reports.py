from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from fifo_ledger.api.utils import get_service
from fifo_ledger.ledger.service import InventoryLedgerService

router = APIRouter(tags=["reports"])


@router.get("/reports/valuation/{item_code}")
def get_valuation(item_code: str, service: InventoryLedgerService = Depends(get_service)):
    valuation = service.valuation(item_code)
    if valuation is None:
        raise HTTPException(status_code=404, detail=f"unknown item: {item_code}")
    return valuation.to_dict()


@router.get("/reports/system")
def get_system_report(
    top_n: int | None = Query(default=None, ge=1, le=100),
    service: InventoryLedgerService = Depends(get_service),
):
    return service.system_report(top_n=top_n).to_dict()


@router.get("/reports/counts")
def get_count_report(service: InventoryLedgerService = Depends(get_service)):
    return service.count_variance_report()


@router.post("/reports/price-validation")
def run_price_validation(
    records: list[dict[str, Any]] = Body(...),
    limit: int | None = Query(default=None, ge=1, description="truncate the discrepancy list for display"),
    service: InventoryLedgerService = Depends(get_service),
):
    report = service.submit_reference_prices(records).to_dict()
    if limit is not None:
        report["discrepancies"] = report["discrepancies"][:limit]
    return report


@router.get("/reports/price-validation/latest")
def get_latest_price_validation(service: InventoryLedgerService = Depends(get_service)):
    report = service.latest_discrepancy_report()
    if report is None:
        raise HTTPException(status_code=404, detail="no price validation has been run")
    return report.to_dict()
