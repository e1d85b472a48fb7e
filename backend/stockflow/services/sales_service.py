"""
Sale Lifecycle Controller

Owns Sale.status and decides which ledger calls a sale needs. It never
writes stock itself; every stock effect is a stock_ledger call.

STATE MACHINE:
    Pending <-> Completed
    Pending  -> Cancelled
    Completed -> Cancelled
    Cancelled is terminal.

STOCK EFFECTS:
- Creation decrements every item (type Sale) whatever the initial status.
  Items are applied one ledger call at a time; if one fails, the ones already
  applied are reversed (+quantity, type Adjustment) before the original error
  is re-raised, and the sale is never persisted.
- Pending -> Completed has no stock effect while the sale still holds its
  decrement (stock_committed).
- Completed -> Pending, Completed -> Cancelled and Pending -> Cancelled
  restore every item (+quantity, type Adjustment) when the sale holds its
  decrement, and release it.
- Pending -> Completed on a sale whose decrement was released by a
  Completed -> Pending move decrements again, with the same all-or-nothing
  compensation as creation.

CONCURRENCY:
- Decrements (which can fail on stock) run before the status write; the
  status write is version-checked, and a lost race reverses the decrements.
- Restores (which cannot fail on stock) run after the version-checked status
  write, so two concurrent cancels can never both restore.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (
    ConcurrentModification,
    InvalidTransition,
    SaleNotFound,
    StockflowError,
    ValidationError,
)
from ..extensions import db
from ..models import Sale, SaleItem
from ..models.catalog import CHANGE_ADJUSTMENT, CHANGE_SALE
from ..models.sales import SALE_CANCELLED, SALE_COMPLETED, SALE_PENDING
from ..time_utils import coerce_datetime, utcnow
from ..validation import (
    coerce_int,
    optional_text,
    parse_customer,
    parse_sale_items,
    parse_sale_patch,
    validate_payment_method,
    validate_sale_status,
)
from . import alert_service, catalog_service, pricing, stock_ledger
from .concurrency import run_with_retry

ALLOWED_TRANSITIONS = {
    (SALE_PENDING, SALE_COMPLETED),
    (SALE_COMPLETED, SALE_PENDING),
    (SALE_PENDING, SALE_CANCELLED),
    (SALE_COMPLETED, SALE_CANCELLED),
}

_TRANSITION_EVENTS = {
    SALE_COMPLETED: alert_service.SALE_EVENT_COMPLETED,
    SALE_PENDING: alert_service.SALE_EVENT_REOPENED,
    SALE_CANCELLED: alert_service.SALE_EVENT_CANCELLED,
}


@dataclass(frozen=True)
class ResolvedLine:
    """A validated item with catalog snapshots taken before any stock moves."""

    product_id: int
    product_name: str
    variant_name: str | None
    sku: str
    quantity: int
    unit_price_cents: int
    unit_cost_cents: int


def _new_reference() -> str:
    return f"S-{uuid.uuid4().hex[:12].upper()}"


def _resolve_lines(item_inputs) -> list[ResolvedLine]:
    lines = []
    for item in item_inputs:
        holder = catalog_service.resolve_stock_holder(item.product_id, item.variant_name)
        product = holder.product if item.variant_name is not None else holder
        lines.append(
            ResolvedLine(
                product_id=product.id,
                product_name=product.name,
                variant_name=item.variant_name,
                sku=holder.sku,
                quantity=item.quantity,
                unit_price_cents=holder.price_cents,
                unit_cost_cents=holder.cost_cents,
            )
        )
    return lines


def _reverse(applied, *, reference: str, reason: str, sign: int) -> tuple[list[dict], list[dict]]:
    """
    Undo already applied ledger calls, newest first.

    sign is the direction of the reversal: +1 gives stock back after failed
    decrements, -1 takes it again after failed restores.
    """
    reversed_steps, failures = [], []
    for line in reversed(applied):
        step = {"product_id": line.product_id, "variant_name": line.variant_name, "quantity": line.quantity}
        try:
            stock_ledger.apply_stock_change(
                line.product_id,
                line.variant_name,
                sign * line.quantity,
                CHANGE_ADJUSTMENT,
                f"Compensation for sale {reference}: {reason}"[:255],
                sale_ref=reference,
                notify=False,
            )
            reversed_steps.append(step)
        except Exception as exc:
            current_app.logger.critical(
                "Compensation failed for sale %s on product %s/%s: %s",
                reference, line.product_id, line.variant_name, exc,
                exc_info=True,
            )
            failures.append({**step, "error": str(exc)})
    return reversed_steps, failures


def _attach_compensation(exc: Exception, reversed_steps: list[dict], failures: list[dict]) -> None:
    if isinstance(exc, StockflowError):
        exc.details["compensated"] = reversed_steps
        if failures:
            exc.details["compensation_failures"] = failures


def _lines_without(lines, steps: list[dict]) -> list[dict]:
    """Lines left over once each step has claimed one matching line."""
    remaining = [
        {"product_id": line.product_id, "variant_name": line.variant_name, "quantity": line.quantity}
        for line in lines
    ]
    for step in steps:
        key = {k: step[k] for k in ("product_id", "variant_name", "quantity")}
        if key in remaining:
            remaining.remove(key)
    return remaining


def _apply_all(
    lines,
    *,
    sign: int,
    change_type: str,
    reference: str,
    note: str,
    unreversed: list | None = None,
) -> list:
    """
    Apply one ledger call per line. All-or-nothing: on failure the calls
    already made are reversed and the original error re-raised.

    Reversals that themselves fail are appended to ``unreversed`` when the
    caller passes a list; those lines keep the effect of this call.

    Returns the StockChange list so alerts can be emitted once the caller has
    committed its own state.
    """
    applied, changes = [], []
    for index, line in enumerate(lines):
        try:
            change = stock_ledger.apply_stock_change(
                line.product_id,
                line.variant_name,
                sign * line.quantity,
                change_type,
                note,
                sale_ref=reference,
                notify=False,
            )
        except Exception as exc:
            if applied:
                current_app.logger.warning(
                    "Sale %s: item %d failed (%s); reversing %d applied item(s)",
                    reference, index, type(exc).__name__, len(applied),
                )
            reversed_steps, failures = _reverse(applied, reference=reference, reason=str(exc), sign=-sign)
            _attach_compensation(exc, reversed_steps, failures)
            if unreversed is not None:
                unreversed.extend(failures)
            if isinstance(exc, StockflowError):
                exc.details.setdefault("failed_item_index", index)
            raise
        applied.append(line)
        changes.append(change)
    return changes


def _report_stock_changes(changes) -> None:
    for change in changes:
        alert_service.on_stock_transition(change)


def create_sale(
    customer,
    items,
    payment_method: str = "cash",
    notes: str | None = None,
    status: str = SALE_PENDING,
    sale_date=None,
) -> Sale:
    """
    Create a sale and take its items out of stock.

    Raises ValidationError, ProductNotFound, VariantNotFound before touching
    stock; InsufficientStock or ConcurrentModification after reversing any
    partial effect. A failed creation leaves no sale and no net stock change.
    """
    customer_in = parse_customer(customer)
    item_inputs = parse_sale_items(items)
    payment_method = validate_payment_method(payment_method)
    status = validate_sale_status(status)
    if status == SALE_CANCELLED:
        raise ValidationError("A sale cannot be created as Cancelled", {"field": "status"})
    notes = optional_text("notes", notes, max_length=4000)
    try:
        sale_date = coerce_datetime(sale_date) or utcnow()
    except (TypeError, ValueError) as exc:
        raise ValidationError("date must be an ISO-8601 datetime", {"field": "date"}) from exc

    lines = _resolve_lines(item_inputs)
    reference = _new_reference()

    changes = _apply_all(
        lines,
        sign=-1,
        change_type=CHANGE_SALE,
        reference=reference,
        note=f"Sale {reference} to {customer_in.name}"[:255],
    )

    now = utcnow()
    sale = Sale(
        reference=reference,
        customer_name=customer_in.name,
        customer_email=customer_in.email,
        customer_phone=customer_in.phone,
        sale_date=sale_date,
        payment_method=payment_method,
        notes=notes,
        status=status,
        stock_committed=True,
        completed_at=now if status == SALE_COMPLETED else None,
    )
    for position, line in enumerate(lines):
        sale.items.append(
            SaleItem(
                position=position,
                product_id=line.product_id,
                product_name=line.product_name,
                variant_name=line.variant_name,
                sku=line.sku,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                unit_cost_cents=line.unit_cost_cents,
            )
        )
    pricing.apply_totals(sale)

    try:
        db.session.add(sale)
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        current_app.logger.error("Sale %s could not be saved; reversing its stock", reference)
        reversed_steps, failures = _reverse(lines, reference=reference, reason="sale not saved", sign=+1)
        _attach_compensation(exc, reversed_steps, failures)
        raise

    current_app.logger.info(
        "Created sale %s (%s) with %d item(s), total %d cents", sale.id, reference, len(lines), sale.total_cents
    )
    _report_stock_changes(changes)
    alert_service.on_sale_event(sale, alert_service.SALE_EVENT_CREATED)
    return sale


def _load_sale(sale_id) -> Sale:
    sale_id = coerce_int("sale_id", sale_id, minimum=1)
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise SaleNotFound(sale_id)
    return sale


def _verify_totals(sale: Sale, *, repair: bool) -> dict:
    mismatch = pricing.totals_mismatch(sale)
    if mismatch:
        current_app.logger.warning("Sale %s stored totals disagree with its items: %s", sale.id, mismatch)
        if repair:
            pricing.apply_totals(sale)
    return mismatch


def get_sale(sale_id) -> Sale:
    """Load a sale, repairing stored totals that drifted from its items."""
    def _op():
        sale = _load_sale(sale_id)
        if _verify_totals(sale, repair=True):
            db.session.commit()
        return sale

    return run_with_retry(_op)


def _lines_of(sale: Sale) -> list[ResolvedLine]:
    return [
        ResolvedLine(
            product_id=item.product_id,
            product_name=item.product_name,
            variant_name=item.variant_name,
            sku=item.sku,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            unit_cost_cents=item.unit_cost_cents,
        )
        for item in sale.items
    ]


def _apply_patch_fields(sale: Sale, patch: dict) -> None:
    if "notes" in patch:
        sale.notes = patch["notes"]
    if "payment_method" in patch:
        sale.payment_method = patch["payment_method"]


def _set_status(sale: Sale, new_status: str, reason: str | None) -> None:
    now = utcnow()
    sale.status = new_status
    if new_status == SALE_COMPLETED:
        sale.completed_at = now
    elif new_status == SALE_PENDING:
        sale.completed_at = None
    elif new_status == SALE_CANCELLED:
        sale.cancelled_at = now
        sale.cancel_reason = reason


def _transition(sale_id, new_status: str, patch: dict, reason: str | None) -> tuple[Sale, list, str | None]:
    """
    One attempt at moving a sale to new_status. Returns the sale, the stock
    changes made, and the previous status (None when nothing moved).
    """
    sale = _load_sale(sale_id)
    current = sale.status

    if current == SALE_CANCELLED:
        raise InvalidTransition(sale.id, current, new_status)

    if new_status == current:
        _apply_patch_fields(sale, patch)
        _verify_totals(sale, repair=True)
        db.session.commit()
        return sale, [], None

    if (current, new_status) not in ALLOWED_TRANSITIONS:
        raise InvalidTransition(sale.id, current, new_status)

    lines = _lines_of(sale)
    reference = sale.reference

    needs_decrement = new_status == SALE_COMPLETED and not sale.stock_committed
    needs_restore = new_status in (SALE_PENDING, SALE_CANCELLED) and sale.stock_committed

    changes = []
    if needs_decrement:
        changes = _apply_all(
            lines,
            sign=-1,
            change_type=CHANGE_SALE,
            reference=reference,
            note=f"Sale {reference} completed",
        )
        # The ledger commits; reload so the version check below uses the row we validated.
        sale = _load_sale(sale_id)
        if sale.status != current or sale.stock_committed:
            _reverse(lines, reference=reference, reason="sale changed concurrently", sign=+1)
            raise StaleDataError(f"sale {sale_id} changed while completing")

    _set_status(sale, new_status, reason)
    _apply_patch_fields(sale, patch)
    if needs_decrement:
        sale.stock_committed = True
    if needs_restore:
        sale.stock_committed = False
    _verify_totals(sale, repair=True)

    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        if needs_decrement:
            _reverse(lines, reference=reference, reason="sale changed concurrently", sign=+1)
        raise

    if needs_restore:
        note = f"Sale {reference} {'cancelled' if new_status == SALE_CANCELLED else 'reopened'}"
        if reason:
            note = f"{note}: {reason}"
        restored = []
        try:
            changes = _apply_all(
                lines,
                sign=+1,
                change_type=CHANGE_ADJUSTMENT,
                reference=reference,
                note=note[:255],
                unreversed=restored,
            )
        except Exception as exc:
            if restored:
                # Part of the stock is back on the shelf, so the sale no longer
                # holds its decrement; it stays released in its new status.
                unrestored = _lines_without(lines, restored)
                current_app.logger.critical(
                    "Sale %s: stock partially restored; %d item(s) were not returned to stock: %s",
                    sale_id, len(unrestored), unrestored,
                )
                if isinstance(exc, StockflowError):
                    exc.details["unrestored_items"] = unrestored
                raise
            # Put the sale back the way it was; its stock is still held.
            current_app.logger.error("Sale %s: restoring stock failed; reverting status to %s", sale_id, current)
            sale = _load_sale(sale_id)
            sale.status = current
            sale.stock_committed = True
            if new_status == SALE_CANCELLED:
                sale.cancelled_at = None
                sale.cancel_reason = None
            db.session.commit()
            raise

    return sale, changes, current


def _edit_fields(sale_id, patch: dict) -> tuple[Sale, list, None]:
    """Notes and payment method stay editable in every status, Cancelled included."""
    sale = _load_sale(sale_id)
    _apply_patch_fields(sale, patch)
    _verify_totals(sale, repair=True)
    db.session.commit()
    return sale, [], None


def _update(sale_id, new_status: str | None, patch: dict, reason: str | None) -> Sale:
    def _op():
        if new_status is None:
            return _edit_fields(sale_id, patch)
        return _transition(sale_id, new_status, patch, reason)

    try:
        sale, changes, previous = run_with_retry(_op, retry_on=(StaleDataError,))
    except StaleDataError as exc:
        raise ConcurrentModification(
            f"Sale {sale_id} is being modified concurrently; try again", {"sale_id": sale_id}
        ) from exc

    if previous is not None:
        current_app.logger.info("Sale %s moved %s -> %s", sale.id, previous, sale.status)
        _report_stock_changes(changes)
        alert_service.on_sale_event(sale, _TRANSITION_EVENTS[sale.status])
    return sale


def update_sale_status(sale_id, new_status, reason: str | None = None) -> Sale:
    """
    Move a sale through its lifecycle, applying the stock effect of the move.

    Raises SaleNotFound, ValidationError (unknown status), InvalidTransition
    (anything out of Cancelled), InsufficientStock (re-completing a sale whose
    stock was released) or ConcurrentModification.
    """
    new_status = validate_sale_status(new_status)
    return _update(sale_id, new_status, {}, optional_text("reason", reason))


def update_sale(sale_id, changes: dict) -> Sale:
    """Apply a partial update limited to status, notes and payment_method."""
    patch = parse_sale_patch(changes)
    return _update(sale_id, patch.get("status"), patch, None)


def cancel_sale(sale_id, reason: str | None = None) -> Sale:
    """Sales are never deleted; deleting one cancels it."""
    return update_sale_status(sale_id, SALE_CANCELLED, reason)


def list_sales(
    *,
    status: str | None = None,
    customer: str | None = None,
    start=None,
    end=None,
    limit: int = 100,
) -> list[Sale]:
    query = db.session.query(Sale)
    if status is not None:
        query = query.filter(Sale.status == validate_sale_status(status))
    if customer:
        query = query.filter(Sale.customer_name.ilike(f"%{customer}%"))
    try:
        start_dt, end_dt = coerce_datetime(start), coerce_datetime(end)
    except (TypeError, ValueError) as exc:
        raise ValidationError("start/end must be ISO-8601 datetimes") from exc
    if start_dt is not None:
        query = query.filter(Sale.sale_date >= start_dt)
    if end_dt is not None:
        query = query.filter(Sale.sale_date <= end_dt)
    limit = coerce_int("limit", limit, minimum=1, maximum=1000)
    return query.order_by(Sale.sale_date.desc(), Sale.id.desc()).limit(limit).all()


def reconcile_sales() -> list[int]:
    """Recompute every sale's denormalized totals; return the ids repaired."""
    repaired = []
    for sale in db.session.query(Sale).order_by(Sale.id.asc()).all():
        if pricing.totals_mismatch(sale):
            repaired.append(sale.id)
    for sale_id in repaired:
        get_sale(sale_id)
    if repaired:
        current_app.logger.warning("Repaired totals on %d sale(s): %s", len(repaired), repaired)
    return repaired
