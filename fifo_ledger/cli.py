from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from fifo_ledger.core.config import get_settings
from fifo_ledger.core.logging import configure_logging
from fifo_ledger.ledger.records import RecordValidationError
from fifo_ledger.ledger.service import InventoryLedgerService


def _decimal_arg(text: str) -> Decimal:
    try:
        value = Decimal(text)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {text}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"not a finite number: {text}")
    return value


def _date_arg(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {text}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fifo-ledger", description="FIFO cost-layer inventory ledger")
    top = parser.add_subparsers(dest="command", required=True)

    report = top.add_parser("report", help="Print the system report")
    report.add_argument("--top", type=int, default=None, help="Number of multi-lot items to list")

    ingest = top.add_parser("ingest", help="Ingest an order document (JSON object or list of objects)")
    ingest.add_argument("file", type=Path)

    count = top.add_parser("count", help="Reconcile a physical count")
    count.add_argument("item_code")
    count.add_argument("quantity", type=_decimal_arg)
    count.add_argument("--date", dest="count_date", type=_date_arg, default=None, help="Count date (default: today)")
    count.add_argument("--last-order-date", type=_date_arg, default=None, help="Newest order date seen on shelf")

    validate = top.add_parser("validate-prices", help="Validate lot prices against reference records in FILE")
    validate.add_argument("file", type=Path)
    validate.add_argument("--limit", type=int, default=None, help="Show at most N discrepancies")

    history = top.add_parser("history", help="Show the price history of an item")
    history.add_argument("item_code")
    history.add_argument("--limit", type=int, default=None)

    return parser


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _run_report(service: InventoryLedgerService, args: argparse.Namespace) -> int:
    _print(service.system_report(top_n=args.top).to_dict())
    return 0


def _run_ingest(service: InventoryLedgerService, args: argparse.Namespace) -> int:
    document = _load_json(args.file)
    orders = document if isinstance(document, list) else [document]
    _print([service.ingest_order_lines(order).to_dict() for order in orders])
    return 0


def _run_count(service: InventoryLedgerService, args: argparse.Namespace) -> int:
    result = service.submit_count(
        {
            "item_code": args.item_code,
            "counted_qty": args.quantity,
            "count_date": args.count_date or date.today(),
            "prior_order_date_hint": args.last_order_date,
        }
    )
    _print(result.to_dict())
    return 0


def _run_validate(service: InventoryLedgerService, args: argparse.Namespace) -> int:
    records = _load_json(args.file)
    if not isinstance(records, list):
        records = [records]
    report = service.submit_reference_prices(records).to_dict()
    if args.limit is not None:
        report["discrepancies"] = report["discrepancies"][: args.limit]
    _print(report)
    return 0


def _run_history(service: InventoryLedgerService, args: argparse.Namespace) -> int:
    entries = service.history(args.item_code, limit=args.limit)
    _print({"item_code": args.item_code, "entries": [entry.to_dict() for entry in entries]})
    return 0


_COMMANDS = {
    "report": _run_report,
    "ingest": _run_ingest,
    "count": _run_count,
    "validate-prices": _run_validate,
    "history": _run_history,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    handler = _COMMANDS[args.command]
    service = InventoryLedgerService.from_settings(get_settings())
    try:
        code = handler(service, args)
        if args.command in {"ingest", "count"} and not service.autosave:
            service.persist()
        return code
    except RecordValidationError as exc:
        _print({"error": "invalid_record", "detail": str(exc), "errors": exc.errors})
        return 1
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
