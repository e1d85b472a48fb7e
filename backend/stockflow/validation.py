"""
Input parsing for the fulfillment engine.

Raw payloads (dicts straight from a request body or a CLI) are turned into
frozen dataclasses here, before any service touches the catalog. Anything
that gets past this module is well typed; anything that does not raises
ValidationError with no side effect.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from .errors import ValidationError
from .models.catalog import CHANGE_TYPES
from .models.sales import PAYMENT_METHODS, SALE_STATUSES

# Maximum price: $9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999
MAX_QUANTITY = 1_000_000

SALE_MUTABLE_FIELDS = {"status", "notes", "payment_method"}


@dataclass(frozen=True)
class SaleItemInput:
    product_id: int
    quantity: int
    variant_name: str | None = None


@dataclass(frozen=True)
class CustomerInput:
    name: str
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class VariantInput:
    name: str
    sku: str
    price_cents: int
    cost_cents: int
    stock: int = 0
    min_stock_level: int | None = None


def coerce_int(name: str, value: Any, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion.

    Rejects bools, floats, scientific notation and decimal strings rather than
    silently truncating them.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", {"field": name})
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer", {"field": name})
        if "e" in stripped.lower():
            raise ValidationError(
                f"{name} must be a plain integer (scientific notation not allowed)", {"field": name}
            )
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)", {"field": name})
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer", {"field": name}) from None
    elif isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal", {"field": name})
    else:
        raise ValidationError(f"{name} must be an integer", {"field": name})

    if minimum is not None and result < minimum:
        raise ValidationError(f"{name} must be >= {minimum}", {"field": name, "value": result})
    if maximum is not None and result > maximum:
        raise ValidationError(f"{name} cannot exceed {maximum}", {"field": name, "value": result})
    return result


def coerce_cents(name: str, value: Any) -> int:
    return coerce_int(name, value, minimum=0, maximum=MAX_PRICE_CENTS)


def require_text(name: str, value: Any, *, max_length: int = 255) -> str:
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", {"field": name})
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{name} exceeds max length {max_length}", {"field": name})
    return text


def optional_text(name: str, value: Any, *, max_length: int = 255) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string", {"field": name})
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{name} exceeds max length {max_length}", {"field": name})
    return text or None


def require_choice(name: str, value: Any, choices: Iterable[str]) -> str:
    allowed = tuple(choices)
    if value not in allowed:
        raise ValidationError(
            f"Invalid {name} {value!r}. Must be one of: {', '.join(allowed)}",
            {"field": name, "allowed": list(allowed)},
        )
    return value


def validate_sale_status(value: Any) -> str:
    return require_choice("status", value, SALE_STATUSES)


def validate_payment_method(value: Any) -> str:
    return require_choice("payment_method", value, PAYMENT_METHODS)


def validate_change_type(value: Any) -> str:
    return require_choice("change_type", value, CHANGE_TYPES)


def parse_customer(raw: Any) -> CustomerInput:
    if isinstance(raw, str):
        raw = {"name": raw}
    if not isinstance(raw, dict):
        raise ValidationError("customer must be an object with a name", {"field": "customer"})
    return CustomerInput(
        name=require_text("customer.name", raw.get("name")),
        email=optional_text("customer.email", raw.get("email")),
        phone=optional_text("customer.phone", raw.get("phone"), max_length=64),
    )


def parse_sale_item(raw: Any, index: int) -> SaleItemInput:
    if isinstance(raw, SaleItemInput):
        raw = {"product_id": raw.product_id, "quantity": raw.quantity, "variant_name": raw.variant_name}
    if not isinstance(raw, dict):
        raise ValidationError(f"Item at index {index} must be an object", {"index": index})

    unknown = set(raw) - {"product_id", "quantity", "variant_name"}
    if unknown:
        raise ValidationError(
            f"Item at index {index} has unknown fields: {', '.join(sorted(unknown))}",
            {"index": index, "fields": sorted(unknown)},
        )
    if raw.get("product_id") is None or raw.get("quantity") is None:
        raise ValidationError(f"Item at index {index} is missing required fields", {"index": index})

    return SaleItemInput(
        product_id=coerce_int(f"items[{index}].product_id", raw["product_id"], minimum=1),
        quantity=coerce_int(f"items[{index}].quantity", raw["quantity"], minimum=1, maximum=MAX_QUANTITY),
        variant_name=optional_text(f"items[{index}].variant_name", raw.get("variant_name"), max_length=120),
    )


def parse_sale_items(raw: Any) -> list[SaleItemInput]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ValidationError("A sale must have at least one item", {"field": "items"})
    return [parse_sale_item(item, i) for i, item in enumerate(raw)]


def parse_sale_patch(changes: Any) -> dict:
    """Restrict a sale update to the fields that stay mutable after creation."""
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("No changes supplied")

    forbidden = set(changes) - SALE_MUTABLE_FIELDS
    if forbidden:
        raise ValidationError(
            f"Field not allowed: {', '.join(sorted(forbidden))}. Sale items and amounts are immutable",
            {"fields": sorted(forbidden)},
        )

    patch: dict = {}
    if "status" in changes:
        patch["status"] = validate_sale_status(changes["status"])
    if "payment_method" in changes:
        patch["payment_method"] = validate_payment_method(changes["payment_method"])
    if "notes" in changes:
        patch["notes"] = optional_text("notes", changes["notes"], max_length=4000)
    return patch


def parse_variant(raw: Any, index: int) -> VariantInput:
    if not isinstance(raw, dict):
        raise ValidationError(f"Variant at index {index} must be an object", {"index": index})
    min_level = raw.get("min_stock_level")
    return VariantInput(
        name=require_text(f"variants[{index}].name", raw.get("name"), max_length=120),
        sku=require_text(f"variants[{index}].sku", raw.get("sku"), max_length=64),
        price_cents=coerce_cents(f"variants[{index}].price_cents", raw.get("price_cents")),
        cost_cents=coerce_cents(f"variants[{index}].cost_cents", raw.get("cost_cents")),
        stock=coerce_int(f"variants[{index}].stock", raw.get("stock", 0), minimum=0),
        min_stock_level=(
            coerce_int(f"variants[{index}].min_stock_level", min_level, minimum=0)
            if min_level is not None else None
        ),
    )


def parse_variants(raw: Any) -> list[VariantInput]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("variants must be a list", {"field": "variants"})
    variants = [parse_variant(v, i) for i, v in enumerate(raw)]

    names = [v.name for v in variants]
    if len(names) != len(set(names)):
        raise ValidationError("Variant names must be unique within a product", {"field": "variants"})
    skus = [v.sku for v in variants]
    if len(skus) != len(set(skus)):
        raise ValidationError("Variant SKUs must be unique", {"field": "variants"})
    return variants
