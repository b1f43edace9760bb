from __future__ import annotations

from fastapi import HTTPException, Request

from fifo_ledger.ledger.service import InventoryLedgerService


def get_service(request: Request) -> InventoryLedgerService:
    service = getattr(request.app.state, "ledger_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="ledger service is not ready")
    return service
