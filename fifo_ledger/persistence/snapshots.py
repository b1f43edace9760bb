from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from sqlalchemy import Engine, delete, select
from sqlalchemy.exc import SQLAlchemyError

from fifo_ledger.core.config import Settings
from fifo_ledger.domain.lots import HistoryKind, ItemLedger, Lot, PriceHistoryEntry
from fifo_ledger.ledger.canonical import CanonicalError, sha256_hex, to_canonical_obj, verify_checksum
from fifo_ledger.persistence.db import build_session_factory, create_engine_from_url, init_db, session_scope
from fifo_ledger.persistence.models import ItemLedgerModel, PriceHistoryModel

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class PersistenceError(RuntimeError):
    pass


class SnapshotMissingError(PersistenceError):
    pass


class SnapshotCorruptError(PersistenceError):
    pass


class LotDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    received_date: date
    source_ref: str
    original_qty: Decimal = Field(gt=0)
    remaining_qty: Decimal = Field(ge=0)
    unit_price: Decimal = Field(ge=0)
    seq: int = Field(ge=0)

    @model_validator(mode="after")
    def _remaining_within_original(self) -> "LotDocument":
        if self.remaining_qty > self.original_qty:
            raise ValueError("remaining_qty exceeds original_qty")
        return self

    def to_domain(self) -> Lot:
        return Lot(
            received_date=self.received_date,
            source_ref=self.source_ref,
            original_qty=self.original_qty,
            remaining_qty=self.remaining_qty,
            unit_price=self.unit_price,
            seq=self.seq,
        )


class ItemLedgerDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    item_code: str = Field(min_length=1)
    description: str = ""
    unit: str = ""
    lots: list[LotDocument] = Field(default_factory=list)
    total_quantity: Decimal = Field(ge=0)
    last_unit_price: Decimal | None = None
    last_order_date: date | None = None

    def to_domain(self) -> ItemLedger:
        ledger = ItemLedger(
            item_code=self.item_code,
            description=self.description,
            unit=self.unit,
            last_unit_price=self.last_unit_price,
            last_order_date=self.last_order_date,
        ).with_lots(lot.to_domain() for lot in self.lots)
        if ledger.total_quantity != self.total_quantity:
            raise ValueError(
                f"total_quantity {self.total_quantity} does not match lots ({ledger.total_quantity}) "
                f"for item={self.item_code}"
            )
        return ledger


class HistoryEntryDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entry_date: date
    kind: HistoryKind
    source_ref: str | None = None
    unit_price: Decimal | None = None
    quantity: Decimal | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    def to_domain(self) -> PriceHistoryEntry:
        return PriceHistoryEntry(
            entry_date=self.entry_date,
            kind=self.kind,
            source_ref=self.source_ref,
            unit_price=self.unit_price,
            quantity=self.quantity,
            details=self.details,
        )


_LEDGERS_ADAPTER = TypeAdapter(dict[str, ItemLedgerDocument])
_HISTORY_ADAPTER = TypeAdapter(dict[str, list[HistoryEntryDocument]])


def ledgers_payload(ledgers: dict[str, ItemLedger]) -> dict[str, Any]:
    return to_canonical_obj({code: ledger.to_dict() for code, ledger in ledgers.items()})


def history_payload(history: dict[str, list[PriceHistoryEntry]]) -> dict[str, Any]:
    return to_canonical_obj({code: [entry.to_dict() for entry in entries] for code, entries in history.items()})


def parse_ledgers(payload: Any) -> dict[str, ItemLedger]:
    try:
        documents = _LEDGERS_ADAPTER.validate_python(payload)
        ledgers = {code: doc.to_domain() for code, doc in documents.items()}
    except (ValidationError, ValueError) as exc:
        raise SnapshotCorruptError(f"ledger snapshot failed validation: {exc}") from exc
    for code, ledger in ledgers.items():
        if code != ledger.item_code:
            raise SnapshotCorruptError(f"ledger keyed {code} holds item={ledger.item_code}")
    return ledgers


def parse_history(payload: Any) -> dict[str, list[PriceHistoryEntry]]:
    try:
        documents = _HISTORY_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise SnapshotCorruptError(f"price history failed validation: {exc}") from exc
    return {code: [doc.to_domain() for doc in entries] for code, entries in documents.items()}


class SnapshotBackend:
    name = "base"

    def save(
        self,
        ledgers: dict[str, ItemLedger],
        history: dict[str, list[PriceHistoryEntry]],
    ) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def load_ledgers(self) -> dict[str, ItemLedger]:  # pragma: no cover - interface
        raise NotImplementedError

    def load_history(self) -> dict[str, list[PriceHistoryEntry]]:  # pragma: no cover - interface
        raise NotImplementedError


class JsonFileBackend(SnapshotBackend):
    """Two JSON documents, each replaced atomically via a temp file in the same directory."""

    name = "json"

    def __init__(self, ledgers_path: Path, history_path: Path):
        self.ledgers_path = ledgers_path
        self.history_path = history_path

    def save(self, ledgers: dict[str, ItemLedger], history: dict[str, list[PriceHistoryEntry]]) -> None:
        try:
            ledgers_doc = ledgers_payload(ledgers)
            history_doc = history_payload(history)
        except CanonicalError as exc:
            raise PersistenceError(f"snapshot is not serializable: {exc}") from exc
        self._write_atomic(self.ledgers_path, "ledgers", ledgers_doc)
        self._write_atomic(self.history_path, "price_history", history_doc)

    def load_ledgers(self) -> dict[str, ItemLedger]:
        return parse_ledgers(self._read(self.ledgers_path, "ledgers"))

    def load_history(self) -> dict[str, list[PriceHistoryEntry]]:
        return parse_history(self._read(self.history_path, "price_history"))

    def _write_atomic(self, path: Path, artifact: str, payload: dict[str, Any]) -> None:
        envelope = {
            "artifact": artifact,
            "version": SNAPSHOT_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "checksum": sha256_hex(payload),
            "payload": payload,
        }
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, sort_keys=True, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"failed to write {artifact} to {path}: {exc}") from exc

    def _read(self, path: Path, artifact: str) -> Any:
        if not path.exists():
            raise SnapshotMissingError(f"{artifact} file not found: {path}")
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PersistenceError(f"failed to read {artifact} from {path}: {exc}") from exc
        except ValueError as exc:
            raise SnapshotCorruptError(f"{artifact} file is not valid JSON: {path}") from exc

        if not isinstance(envelope, dict) or envelope.get("artifact") != artifact:
            raise SnapshotCorruptError(f"{path} is not a {artifact} snapshot")
        if envelope.get("version") != SNAPSHOT_VERSION:
            raise SnapshotCorruptError(f"unsupported {artifact} snapshot version: {envelope.get('version')!r}")
        payload = envelope.get("payload")
        if not verify_checksum(payload, envelope.get("checksum")):
            raise SnapshotCorruptError(f"{artifact} checksum mismatch in {path}")
        return payload


class SqlSnapshotBackend(SnapshotBackend):
    """Ledger rows and history rows replaced together in one transaction."""

    name = "sql"

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = build_session_factory(engine)
        try:
            init_db(engine)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to initialise ledger tables: {exc}") from exc

    def save(self, ledgers: dict[str, ItemLedger], history: dict[str, list[PriceHistoryEntry]]) -> None:
        saved_at = datetime.now(timezone.utc)
        try:
            ledger_docs = ledgers_payload(ledgers)
            history_docs = history_payload(history)
            with session_scope(self.session_factory) as session:
                session.execute(delete(ItemLedgerModel))
                session.execute(delete(PriceHistoryModel))
                for code, document in ledger_docs.items():
                    session.add(
                        ItemLedgerModel(
                            item_code=code,
                            document=document,
                            checksum=sha256_hex(document),
                            saved_at=saved_at,
                        )
                    )
                for code, documents in history_docs.items():
                    for position, document in enumerate(documents):
                        session.add(
                            PriceHistoryModel(
                                item_code=code,
                                position=position,
                                kind=document["kind"],
                                entry_date=document["entry_date"],
                                document=document,
                            )
                        )
        except (SQLAlchemyError, CanonicalError) as exc:
            raise PersistenceError(f"failed to write ledger snapshot: {exc}") from exc

    def load_ledgers(self) -> dict[str, ItemLedger]:
        try:
            with session_scope(self.session_factory) as session:
                rows = list(session.scalars(select(ItemLedgerModel).order_by(ItemLedgerModel.item_code.asc())).all())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read ledger snapshot: {exc}") from exc

        payload: dict[str, Any] = {}
        for row in rows:
            if not verify_checksum(row.document, row.checksum):
                raise SnapshotCorruptError(f"ledger row {row.item_code} checksum mismatch")
            payload[row.item_code] = row.document
        return parse_ledgers(payload)

    def load_history(self) -> dict[str, list[PriceHistoryEntry]]:
        try:
            with session_scope(self.session_factory) as session:
                rows = list(
                    session.scalars(
                        select(PriceHistoryModel).order_by(
                            PriceHistoryModel.item_code.asc(),
                            PriceHistoryModel.position.asc(),
                        )
                    ).all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read price history: {exc}") from exc

        payload: dict[str, list[Any]] = {}
        for row in rows:
            payload.setdefault(row.item_code, []).append(row.document)
        return parse_history(payload)


def build_snapshot_backend(settings: Settings) -> SnapshotBackend:
    if settings.ledger_backend == "sql":
        try:
            return SqlSnapshotBackend(create_engine_from_url(settings.database_url))
        except (PersistenceError, SQLAlchemyError) as exc:
            logger.warning("sql ledger backend unavailable, falling back to json files: %s", exc)
    return JsonFileBackend(settings.ledgers_path, settings.history_path)
