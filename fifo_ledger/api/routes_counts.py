from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from fifo_ledger.api.utils import get_service
from fifo_ledger.ledger.service import InventoryLedgerService

router = APIRouter(tags=["counts"])


@router.post("/counts")
def submit_count(
    payload: dict[str, Any] = Body(...),
    service: InventoryLedgerService = Depends(get_service),
):
    result = service.submit_count(payload)
    return result.to_dict()
