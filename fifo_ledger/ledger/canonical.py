from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from hashlib import sha256
from typing import Any

SCALARS = (str, int, bool, type(None))


class CanonicalError(ValueError):
    pass


def _decimal_text(value: Decimal) -> str:
    if not value.is_finite():
        raise CanonicalError(f"non-finite quantity or price cannot be stored: {value}")
    return format(value, "f")


def _timestamp_text(value: datetime) -> str:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def to_canonical_obj(value: Any) -> Any:
    """Reduce ledger values to JSON primitives.

    Quantities and prices travel as plain decimal strings so a payload hashes
    the same after a load/save cycle; floats are refused outright.
    """
    if isinstance(value, Enum):
        return to_canonical_obj(value.value)
    if isinstance(value, SCALARS):
        return value
    if isinstance(value, Decimal):
        return _decimal_text(value)
    if isinstance(value, float):
        raise CanonicalError("float values are not allowed in ledger documents; use Decimal")
    if isinstance(value, datetime):
        return _timestamp_text(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_canonical_obj(item) for key, item in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [to_canonical_obj(item) for item in value]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        to_dict = getattr(value, "to_dict", None)
        return to_canonical_obj(to_dict() if to_dict is not None else dataclasses.asdict(value))
    if hasattr(value, "model_dump"):
        return to_canonical_obj(value.model_dump())
    raise CanonicalError(f"unsupported value in ledger document: {type(value)!r}")


def canonical_json(value: Any) -> bytes:
    return json.dumps(to_canonical_obj(value), sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("utf-8")


def sha256_hex(value: Any) -> str:
    return sha256(canonical_json(value)).hexdigest()


def verify_checksum(value: Any, expected: str | None) -> bool:
    try:
        return expected is not None and sha256_hex(value) == expected
    except CanonicalError:
        return False
