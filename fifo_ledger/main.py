from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fifo_ledger.api.routes_counts import router as counts_router
from fifo_ledger.api.routes_ledger import router as ledger_router
from fifo_ledger.api.routes_reports import router as reports_router
from fifo_ledger.core.config import get_settings
from fifo_ledger.core.logging import configure_logging
from fifo_ledger.ledger.records import RecordValidationError
from fifo_ledger.ledger.service import InventoryLedgerService

configure_logging()
logger = logging.getLogger(__name__)


def create_app(service: InventoryLedgerService | None = None) -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.ledger_service is None:
            app.state.ledger_service = InventoryLedgerService.from_settings(settings)
        health = app.state.ledger_service.health()
        logger.info("ledger service ready: backend=%s items=%s", health["backend"], health["items"])
        yield
        app.state.ledger_service.persist()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.ledger_service = service

    @app.exception_handler(RecordValidationError)
    async def record_validation_handler(_: Request, exc: RecordValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "detail": str(exc),
                "error": "invalid_record",
                "record_type": exc.record_type,
                "errors": exc.errors,
            },
        )

    @app.get("/healthz")
    def healthz() -> dict:
        current = app.state.ledger_service
        if current is None:
            return {"status": "starting"}
        return current.health()

    app.include_router(ledger_router)
    app.include_router(counts_router)
    app.include_router(reports_router)
    return app


app = create_app()
