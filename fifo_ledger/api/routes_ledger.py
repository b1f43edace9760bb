from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from fifo_ledger.api.utils import get_service
from fifo_ledger.ledger.service import InventoryLedgerService

router = APIRouter(tags=["ledger"])


@router.post("/ledger/orders")
def ingest_order(
    payload: dict[str, Any] = Body(...),
    service: InventoryLedgerService = Depends(get_service),
):
    result = service.ingest_order_lines(payload)
    return result.to_dict()


@router.get("/ledger/items")
def list_items(service: InventoryLedgerService = Depends(get_service)):
    ledgers = service.list_ledgers()
    return {
        "count": len(ledgers),
        "items": [ledger.to_dict() for ledger in ledgers],
    }


@router.get("/ledger/items/{item_code}")
def get_item(item_code: str, service: InventoryLedgerService = Depends(get_service)):
    status = service.item_status(item_code)
    if status is None:
        raise HTTPException(status_code=404, detail=f"unknown item: {item_code}")
    return status


@router.get("/ledger/items/{item_code}/history")
def get_item_history(
    item_code: str,
    limit: int | None = Query(default=None, ge=1, le=1000),
    service: InventoryLedgerService = Depends(get_service),
):
    entries = service.history(item_code, limit=limit)
    return {
        "item_code": item_code,
        "count": len(entries),
        "entries": [entry.to_dict() for entry in entries],
    }


@router.post("/ledger/items/{item_code}/withdrawals")
def withdraw_item(
    item_code: str,
    payload: dict[str, Any] = Body(...),
    service: InventoryLedgerService = Depends(get_service),
):
    result = service.withdraw(item_code, payload)
    return result.to_dict()


@router.post("/ledger/persist")
def persist_ledger(service: InventoryLedgerService = Depends(get_service)):
    persisted = service.persist()
    return {"persisted": persisted, **service.health()}
