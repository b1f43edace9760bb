from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


class RecordValidationError(ValueError):
    def __init__(self, record_type: str, errors: list[dict[str, Any]]):
        self.record_type = record_type
        self.errors = errors
        fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) or "<root>" for err in errors)
        super().__init__(f"invalid {record_type}: {fields}")


class RecordModel(BaseModel):
    # Collaborators send camelCase documents (itemCode, unitPrice); both spellings are accepted.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class OrderLine(RecordModel):
    item_code: str = Field(min_length=1)
    description: str = ""
    unit: str = ""
    quantity: Decimal = Field(description="negative quantities are credit-memo corrections")
    unit_price: Decimal = Field(ge=0)

    @field_validator("quantity")
    @classmethod
    def _non_zero(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("quantity must be a finite number")
        if value == 0:
            raise ValueError("quantity must not be zero")
        return value

    @field_validator("unit_price")
    @classmethod
    def _finite_price(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("unit price must be a finite number")
        return value

    @property
    def is_correction(self) -> bool:
        return self.quantity < 0


class OrderIngestRequest(RecordModel):
    order_date: date
    source_ref: str = Field(min_length=1)
    lines: list[OrderLine] = Field(min_length=1)


class WithdrawalRequest(RecordModel):
    quantity: Decimal = Field(gt=0)
    on_date: date | None = None
    reason: str = "usage"


class CountSubmission(RecordModel):
    item_code: str = Field(min_length=1)
    counted_qty: Decimal
    count_date: date
    prior_order_date_hint: date | None = None
    description: str | None = None
    unit: str | None = None

    @field_validator("counted_qty")
    @classmethod
    def _finite_count(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("counted quantity must be a finite number")
        return value


class ReferencePriceRecord(RecordModel):
    item_code: str = Field(min_length=1)
    source_ref: str = ""
    reference_date: date | None = Field(default=None, alias="date")
    unit_price: Decimal = Field(ge=0)
    quantity: Decimal | None = None


RecordT = TypeVar("RecordT", bound=BaseModel)


def coerce_record(model: type[RecordT], value: Any) -> RecordT:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        raise RecordValidationError(model.__name__, errors) from exc
