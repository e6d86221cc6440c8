from __future__ import annotations

from datetime import datetime
import hashlib
import re
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from tenantsync.core.errors import RecordValidationError


MODEL_TYPES = ("customers", "products", "orders", "order_items")

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(value: Any) -> str | None:
    # Keep digits only, fold the 84 country code into a leading 0, accept 9-11 digits.
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    if digits.startswith("84") and len(digits) > 9:
        digits = "0" + digits[2:]
    if len(digits) < 9 or len(digits) > 11:
        return None
    if not digits.startswith("0"):
        digits = "0" + digits
    return digits


def normalize_email(value: Any) -> str | None:
    if value is None:
        return None
    email = str(value).strip().lower()
    if "@" not in email:
        return None
    return email


def _blank_to_none(value: Any) -> Any:
    # Warehouse exports use empty strings for missing values.
    if isinstance(value, str) and not value.strip():
        return None
    return value


class _Record(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)

    natural_key: str = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _empty_strings(cls, data: Any) -> Any:
        # The discriminator is left untouched so the union can still route on it.
        if not isinstance(data, dict):
            return data
        return {
            key: value if key == "model_type" else _blank_to_none(value) for key, value in data.items()
        }


class CustomerRecord(_Record):
    model_type: Literal["customers"] = "customers"
    external_id: str | None = None
    full_name: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    province: str | None = None
    lifetime_value: float | None = None
    tags: str | None = None
    source_created_at: datetime | None = None


class ProductRecord(_Record):
    model_type: Literal["products"] = "products"
    sku: str = Field(min_length=1)
    barcode: str | None = None
    name: str | None = None
    category: str | None = None
    brand: str | None = None
    unit: str | None = None
    cost_price: float | None = None
    sell_price: float | None = None


class OrderRecord(_Record):
    model_type: Literal["orders"] = "orders"
    status: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    branch_code: str | None = None
    gross_revenue: float | None = None
    net_revenue: float | None = None
    discount: float | None = None
    payment_method: str | None = None
    ordered_at: datetime | None = None


class OrderItemRecord(_Record):
    model_type: Literal["order_items"] = "order_items"
    order_key: str = Field(min_length=1)
    sku: str | None = None
    name: str | None = None
    quantity: float = 0.0
    unit_price: float | None = None
    discount: float | None = None
    line_total: float | None = None


SourceRecord = Annotated[
    Union[CustomerRecord, ProductRecord, OrderRecord, OrderItemRecord],
    Field(discriminator="model_type"),
]
_record_adapter: TypeAdapter[SourceRecord] = TypeAdapter(SourceRecord)


def _text(value: Any) -> str | None:
    value = _blank_to_none(value)
    if value is None:
        return None
    return str(value).strip()


def _customer_fields(values: dict[str, Any]) -> dict[str, Any]:
    phone = normalize_phone(values.get("phone"))
    email = normalize_email(values.get("email"))
    # Customers dedupe on phone first, then email.
    natural_key = phone or email
    if not natural_key:
        raise RecordValidationError("customer has neither phone nor email", reason="missing_natural_key")
    full_name = _text(values.get("name"))
    if full_name is None:
        parts = [_text(values.get("first_name")), _text(values.get("last_name"))]
        full_name = " ".join(part for part in parts if part) or None
    return {
        "natural_key": natural_key,
        "external_id": _text(values.get("id")),
        "full_name": full_name,
        "phone": phone,
        "email": email,
        "address": values.get("address"),
        "province": values.get("province"),
        "lifetime_value": values.get("lifetime_value"),
        "tags": _text(values.get("tags")),
        "source_created_at": values.get("created_at"),
    }


def _product_fields(values: dict[str, Any]) -> dict[str, Any]:
    sku = _text(values.get("sku")) or _text(values.get("barcode"))
    if not sku:
        raise RecordValidationError("product has no sku or barcode", reason="missing_natural_key")
    return {
        "natural_key": sku,
        "sku": sku,
        "barcode": _text(values.get("barcode")),
        "name": values.get("name"),
        "category": values.get("category"),
        "brand": values.get("brand"),
        "unit": values.get("unit"),
        "cost_price": values.get("cost_price"),
        "sell_price": values.get("sell_price"),
    }


def _order_fields(values: dict[str, Any]) -> dict[str, Any]:
    order_key = _text(values.get("order_key"))
    if not order_key:
        raise RecordValidationError("order has no order key", reason="missing_natural_key")
    return {
        "natural_key": order_key,
        "status": _text(values.get("status")),
        "customer_name": values.get("customer_name"),
        "customer_phone": normalize_phone(values.get("customer_phone")),
        "branch_code": _text(values.get("branch_code")),
        "gross_revenue": values.get("gross_revenue"),
        "net_revenue": values.get("net_revenue"),
        "discount": values.get("discount"),
        "payment_method": values.get("payment_method"),
        "ordered_at": values.get("order_at"),
    }


def _order_item_fields(values: dict[str, Any]) -> dict[str, Any]:
    order_key = _text(values.get("order_key"))
    line_key = _text(values.get("item_id")) or _text(values.get("sku"))
    if not order_key or not line_key:
        raise RecordValidationError("order item has no order or line key", reason="missing_natural_key")
    return {
        "natural_key": f"{order_key}:{line_key}",
        "order_key": order_key,
        "sku": _text(values.get("sku")),
        "name": values.get("name"),
        "quantity": values.get("quantity") if values.get("quantity") is not None else 0,
        "unit_price": values.get("unit_price"),
        "discount": values.get("discount"),
        "line_total": values.get("total"),
    }


_FIELD_BUILDERS = {
    "customers": _customer_fields,
    "products": _product_fields,
    "orders": _order_fields,
    "order_items": _order_item_fields,
}


def build_record(model_type: str, row: Mapping[str, Any], mapping: Mapping[str, str]) -> SourceRecord:
    """Translate a warehouse row into its typed record.

    ``mapping`` maps record field names to warehouse column names. Raises
    ``RecordValidationError`` for rows whose shape does not fit the model; unknown
    model types are rejected rather than passed through.
    """
    builder = _FIELD_BUILDERS.get(model_type)
    if builder is None:
        raise RecordValidationError(f"unknown model type: {model_type}", reason="unknown_model")
    values = {field: row.get(column) for field, column in mapping.items()}
    fields = builder(values)
    fields["model_type"] = model_type
    try:
        return _record_adapter.validate_python(fields)
    except ValidationError as exc:
        raise RecordValidationError(
            f"{model_type} row failed validation: {exc.error_count()} error(s)",
            reason="invalid_record",
        ) from exc


def record_hash(record: BaseModel) -> str:
    # Stable content hash used to detect unchanged rows across runs.
    payload = record.model_dump_json(exclude={"natural_key"})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
