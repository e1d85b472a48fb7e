"""
Sale totals, computed from line items only.

Items are anything exposing unit_price_cents, unit_cost_cents and quantity
(SaleItem rows or plain objects). Nothing here touches the database; the
sale controller uses these both to build a sale and to check that a stored
sale's denormalized totals still match its items.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable

TAX_CENTS = 0


@dataclass(frozen=True)
class SaleTotals:
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    total_cost_cents: int
    profit_cents: int

    def as_dict(self) -> dict:
        return asdict(self)


def line_total(item) -> int:
    return item.unit_price_cents * item.quantity


def line_cost(item) -> int:
    return item.unit_cost_cents * item.quantity


def subtotal(items: Iterable) -> int:
    return sum(line_total(item) for item in items)


def total_cost(items: Iterable) -> int:
    return sum(line_cost(item) for item in items)


def profit(items: Iterable) -> int:
    return sum((item.unit_price_cents - item.unit_cost_cents) * item.quantity for item in items)


def total(items: Iterable) -> int:
    # Tax is fixed at zero in this domain.
    return subtotal(items) + TAX_CENTS


def compute_totals(items: Iterable) -> SaleTotals:
    items = list(items)
    sub = subtotal(items)
    return SaleTotals(
        subtotal_cents=sub,
        tax_cents=TAX_CENTS,
        total_cents=sub + TAX_CENTS,
        total_cost_cents=total_cost(items),
        profit_cents=profit(items),
    )


def totals_mismatch(sale) -> dict:
    """
    Compare a sale's stored totals (and each line total) with a fresh
    computation. Returns {field: (stored, expected)}; empty means consistent.
    """
    expected = compute_totals(sale.items)
    mismatches = {}
    for field, value in expected.as_dict().items():
        stored = getattr(sale, field)
        if stored != value:
            mismatches[field] = (stored, value)
    for item in sale.items:
        if item.line_total_cents != line_total(item):
            mismatches[f"items[{item.position}].line_total_cents"] = (item.line_total_cents, line_total(item))
    return mismatches


def apply_totals(sale, totals: SaleTotals | None = None) -> SaleTotals:
    """Write computed totals (and line totals) onto a sale. Does not commit."""
    for item in sale.items:
        item.line_total_cents = line_total(item)
    totals = totals or compute_totals(sale.items)
    for field, value in totals.as_dict().items():
        setattr(sale, field, value)
    return totals
