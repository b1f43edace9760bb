from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from fifo_ledger.core.config import Settings
from fifo_ledger.ledger.service import InventoryLedgerService
from fifo_ledger.ledger.store import LotStore
from fifo_ledger.persistence.snapshots import JsonFileBackend


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "data",
        database_url=f"sqlite+pysqlite:///{tmp_path / 'ledger.sqlite'}",
        autosave=False,
    )


@pytest.fixture()
def json_backend(settings: Settings) -> JsonFileBackend:
    return JsonFileBackend(settings.ledgers_path, settings.history_path)


@pytest.fixture()
def store(json_backend: JsonFileBackend) -> LotStore:
    return LotStore(json_backend)


@pytest.fixture()
def service(settings: Settings) -> InventoryLedgerService:
    return InventoryLedgerService.from_settings(settings)


@pytest.fixture()
def client(service: InventoryLedgerService):
    from fifo_ledger.main import create_app

    with TestClient(create_app(service)) as c:
        yield c


@pytest.fixture()
def beef_store(store: LotStore) -> LotStore:
    store.add_lot("BEEF-10", date(2025, 1, 6), "INV-1", Decimal("30"), Decimal("57.38"), description="Ground beef", unit="kg")
    return store
