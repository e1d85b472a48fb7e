# Overview: Stock ledger; the only writer of stock and StockHistory.

"""
Stock Ledger Invariants (authoritative)

- Every stock mutation is: read current -> compute -> conditional write
  (catalog_service.conditional_update_stock) + one StockHistory row, in one
  DB transaction. A lost compare-and-swap rolls back and retries with
  jittered backoff, at most STOCK_CAS_MAX_ATTEMPTS times, then surfaces
  ConcurrentModification.
- Stock never goes negative. A decrement that does not fit raises
  InsufficientStock and writes nothing. Clamping at zero exists only for
  positive corrective adjustments.
- StockHistory is append-only and new_stock = previous_stock + change holds
  for every row (also enforced by a DB check constraint).
- The (previous_status, new_status) pair of every committed change is handed
  to the alert emitter after commit, unless the caller collects it instead.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import OperationalError

from ..errors import ConcurrentModification, InsufficientStock, ValidationError
from ..extensions import db
from ..models import Product, StockHistory
from ..models.catalog import CHANGE_ADJUSTMENT, CHANGE_RESTOCK, stock_status
from ..time_utils import utcnow
from ..validation import coerce_int, optional_text, validate_change_type
from . import catalog_service
from .concurrency import CasConflict, run_with_retry


@dataclass(frozen=True)
class StockChange:
    """Committed outcome of one ledger call."""

    product_id: int
    variant_name: str | None
    previous_stock: int
    new_stock: int
    change: int
    change_type: str
    previous_status: str
    new_status: str
    history_id: int | None

    @property
    def crossed_threshold(self) -> bool:
        return self.previous_status != self.new_status

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_name": self.variant_name,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "change": self.change,
            "type": self.change_type,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "history_id": self.history_id,
        }


def _validate_delta(delta) -> int:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer", {"field": "delta"})
    if delta == 0:
        raise ValidationError("delta must be non-zero", {"field": "delta"})
    return delta


def _cas_settings() -> tuple[int, float]:
    return (
        max(1, int(current_app.config.get("STOCK_CAS_MAX_ATTEMPTS", 3))),
        float(current_app.config.get("STOCK_CAS_BACKOFF_BASE", 0.02)),
    )


def _write_change(
    *,
    product_id: int,
    variant_name: str | None,
    compute_delta,
    change_type: str,
    notes: str | None,
    sale_ref: str | None,
    corrective: bool,
) -> StockChange:
    """
    One CAS attempt. compute_delta(previous_stock) -> int lets AdjustStock
    derive its delta from the value actually being swapped.
    """
    snapshot = catalog_service.read_stock(product_id, variant_name)
    previous = snapshot.stock
    delta = compute_delta(previous)

    if delta == 0:
        return StockChange(
            product_id=product_id,
            variant_name=variant_name,
            previous_stock=previous,
            new_stock=previous,
            change=0,
            change_type=change_type,
            previous_status=snapshot.status,
            new_status=snapshot.status,
            history_id=None,
        )

    new_stock = previous + delta
    if new_stock < 0:
        if corrective and delta > 0:
            new_stock = 0
        else:
            raise InsufficientStock(product_id, variant_name, available=previous, requested=-delta)

    if not catalog_service.conditional_update_stock(product_id, variant_name, previous, new_stock):
        raise CasConflict(f"stock for product {product_id} changed under us")

    entry = StockHistory(
        product_id=product_id,
        variant_name=variant_name,
        previous_stock=previous,
        new_stock=new_stock,
        change=new_stock - previous,
        type=change_type,
        notes=notes,
        sale_ref=sale_ref,
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.commit()

    return StockChange(
        product_id=product_id,
        variant_name=variant_name,
        previous_stock=previous,
        new_stock=new_stock,
        change=new_stock - previous,
        change_type=change_type,
        previous_status=snapshot.status,
        new_status=stock_status(new_stock, snapshot.min_stock_level),
        history_id=entry.id,
    )


def _apply(
    *,
    product_id: int,
    variant_name: str | None,
    compute_delta,
    change_type: str,
    notes: str | None,
    sale_ref: str | None,
    corrective: bool,
    notify: bool,
) -> StockChange:
    # Resolve before any write so unknown references fail with no side effect.
    catalog_service.resolve_stock_holder(product_id, variant_name)

    attempts, backoff_base = _cas_settings()

    def _op():
        try:
            return _write_change(
                product_id=product_id,
                variant_name=variant_name,
                compute_delta=compute_delta,
                change_type=change_type,
                notes=notes,
                sale_ref=sale_ref,
                corrective=corrective,
            )
        except Exception:
            db.session.rollback()
            raise

    try:
        change = run_with_retry(
            _op,
            attempts=attempts,
            backoff_base=backoff_base,
            retry_on=(CasConflict, OperationalError),
        )
    except (CasConflict, OperationalError) as exc:
        current_app.logger.warning(
            "Stock write for product %s/%s gave up after %d attempts: %s",
            product_id, variant_name, attempts, exc,
        )
        raise ConcurrentModification(
            f"Stock for product {product_id} is being modified concurrently; try again",
            {"product_id": product_id, "variant_name": variant_name, "attempts": attempts},
        ) from exc

    if change.history_id is not None:
        current_app.logger.debug(
            "Ledger %s product=%s variant=%s %d -> %d (%+d)",
            change.change_type, product_id, variant_name,
            change.previous_stock, change.new_stock, change.change,
        )
        if notify:
            from . import alert_service
            alert_service.on_stock_transition(change)
    return change


def apply_stock_change(
    product_id: int,
    variant_name: str | None,
    delta: int,
    change_type: str,
    notes: str | None = None,
    *,
    sale_ref: str | None = None,
    corrective: bool = False,
    notify: bool = True,
) -> StockChange:
    """
    Atomically apply a signed stock delta and record it.

    Raises ValidationError, ProductNotFound, VariantNotFound,
    InsufficientStock or ConcurrentModification. On any of these nothing has
    been written.
    """
    delta = _validate_delta(delta)
    change_type = validate_change_type(change_type)
    if corrective and (change_type != CHANGE_ADJUSTMENT or delta <= 0):
        raise ValidationError("corrective clamping applies only to positive Adjustment changes")

    return _apply(
        product_id=product_id,
        variant_name=variant_name,
        compute_delta=lambda _previous: delta,
        change_type=change_type,
        notes=optional_text("notes", notes),
        sale_ref=sale_ref,
        corrective=corrective,
        notify=notify,
    )


def restock_product(product_id: int, variant_name: str | None, quantity, notes: str | None = None) -> Product:
    """Add received units. quantity must be a positive integer."""
    quantity = coerce_int("quantity", quantity, minimum=1)
    apply_stock_change(
        product_id,
        variant_name,
        quantity,
        CHANGE_RESTOCK,
        notes or f"Restocked {quantity} units",
    )
    return catalog_service.refresh_product(product_id)


def adjust_stock(product_id: int, variant_name: str | None, new_absolute_stock, reason: str | None = None) -> Product:
    """
    Set stock to an absolute counted value.

    The delta is derived from the stock value the CAS actually swaps, so a
    concurrent sale between read and write is never overwritten. Setting the
    current value is a no-op and writes no history.
    """
    target = coerce_int("new_absolute_stock", new_absolute_stock, minimum=0)
    _apply(
        product_id=product_id,
        variant_name=variant_name,
        compute_delta=lambda previous: target - previous,
        change_type=CHANGE_ADJUSTMENT,
        notes=optional_text("reason", reason) or f"Stock adjusted to {target}",
        sale_ref=None,
        corrective=False,
        notify=True,
    )
    return catalog_service.refresh_product(product_id)


def list_stock_history(
    *,
    product_id: int | None = None,
    change_type: str | None = None,
    sale_ref: str | None = None,
    limit: int = 100,
) -> list[StockHistory]:
    query = db.session.query(StockHistory)
    if product_id is not None:
        query = query.filter(StockHistory.product_id == product_id)
    if change_type is not None:
        query = query.filter(StockHistory.type == validate_change_type(change_type))
    if sale_ref is not None:
        query = query.filter(StockHistory.sale_ref == sale_ref)
    return query.order_by(StockHistory.created_at.desc(), StockHistory.id.desc()).limit(limit).all()


def replay_stock(product_id: int) -> dict:
    """
    Rebuild a product's stock from its history, starting at zero.

    Returns the replayed totals next to the stored ones, plus any row whose
    previous_stock does not continue from the row before it.
    """
    product = catalog_service.refresh_product(product_id)
    entries = (
        db.session.query(StockHistory)
        .filter(StockHistory.product_id == product_id)
        .order_by(StockHistory.id.asc())
        .all()
    )

    running: dict[str | None, int] = defaultdict(int)
    breaks = []
    for entry in entries:
        key = entry.variant_name
        if entry.previous_stock != running[key] or entry.new_stock != entry.previous_stock + entry.change:
            breaks.append({"history_id": entry.id, "variant_name": key, "expected_previous": running[key]})
        running[key] += entry.change

    variants = {
        v.name: {"stored": v.stock, "replayed": running.get(v.name, 0)}
        for v in product.variants
    }
    return {
        "product_id": product_id,
        "stored": product.stock,
        "replayed": sum(running.values()),
        "variants": variants,
        "entries": len(entries),
        "breaks": breaks,
    }


def verify_ledger(product_id: int | None = None) -> list[dict]:
    """Replay every (or one) product; return only the inconsistent reports."""
    if product_id is not None:
        product_ids = [product_id]
    else:
        product_ids = [row[0] for row in db.session.query(Product.id).order_by(Product.id.asc())]

    problems = []
    for pid in product_ids:
        report = replay_stock(pid)
        variant_drift = any(v["stored"] != v["replayed"] for v in report["variants"].values())
        if report["stored"] != report["replayed"] or variant_drift or report["breaks"]:
            problems.append(report)
    return problems
