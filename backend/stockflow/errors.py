"""
Typed failures raised by the fulfillment engine.

Every error carries a human message and a ``details`` dict that callers can
hand back to clients as-is. Nothing in the ledger or the sale controller
swallows these; the caller decides the user-facing wording.
"""

from __future__ import annotations


class StockflowError(Exception):
    """Base for all domain errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class ValidationError(StockflowError, ValueError):
    """Malformed input. Raised before any side effect."""


class NotFoundError(StockflowError, LookupError):
    """A referenced product, variant or sale does not exist."""


class ProductNotFound(NotFoundError):
    def __init__(self, product_id):
        super().__init__(f"Product {product_id} not found", {"product_id": product_id})


class VariantNotFound(NotFoundError):
    def __init__(self, product_id, variant_name):
        super().__init__(
            f"Variant {variant_name!r} not found in product {product_id}",
            {"product_id": product_id, "variant_name": variant_name},
        )


class SaleNotFound(NotFoundError):
    def __init__(self, sale_id):
        super().__init__(f"Sale {sale_id} not found", {"sale_id": sale_id})


class ConflictError(StockflowError):
    """The request is well formed but conflicts with current state."""


class InsufficientStock(ConflictError):
    def __init__(self, product_id, variant_name, available: int, requested: int):
        label = f"{product_id}/{variant_name}" if variant_name else f"{product_id}"
        super().__init__(
            f"Insufficient stock for product {label}: available {available}, requested {requested}",
            {
                "product_id": product_id,
                "variant_name": variant_name,
                "available": available,
                "requested": requested,
            },
        )


class InvalidTransition(ConflictError):
    def __init__(self, sale_id, current: str, requested: str):
        super().__init__(
            f"Sale {sale_id} cannot move from {current} to {requested}",
            {"sale_id": sale_id, "current_status": current, "requested_status": requested},
        )


class ConcurrentModification(ConflictError):
    """A conditional write kept losing to concurrent writers past the retry bound."""
