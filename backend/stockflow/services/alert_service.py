# Overview: Alert emitter; turns ledger outcomes and sale events into Notification rows.

"""
Alert Emitter Rules (authoritative)

- Edge-triggered: LowStock fires only on In Stock -> Low Stock; OutOfStock
  fires only on In Stock / Low Stock -> Out of Stock. Selling more while
  already under the threshold, or restocking towards In Stock, emits nothing.
- One Sale notification per sale creation, describing the status the sale
  was created with.
- Fire-and-forget: emitters run after the triggering change has committed.
  A failed notification write is retried a bounded number of times, then
  logged and dropped. It never propagates and never undoes stock or sale
  changes.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Notification, Product
from ..models.catalog import STATUS_IN_STOCK, STATUS_LOW_STOCK, STATUS_OUT_OF_STOCK
from ..models.notifications import (
    NOTIFICATION_TYPES,
    NOTIFY_LOW_STOCK,
    NOTIFY_OUT_OF_STOCK,
    NOTIFY_PRICE_CHANGE,
    NOTIFY_SALE,
)
from ..validation import coerce_int, require_choice

SALE_EVENT_CREATED = "created"
SALE_EVENT_COMPLETED = "completed"
SALE_EVENT_REOPENED = "reopened"
SALE_EVENT_CANCELLED = "cancelled"
SALE_EVENTS = (SALE_EVENT_CREATED, SALE_EVENT_COMPLETED, SALE_EVENT_REOPENED, SALE_EVENT_CANCELLED)


def _format_cents(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def _stock_label(product_name: str, variant_name: str | None) -> str:
    return f"{product_name} - {variant_name}" if variant_name else product_name


def alert_for_transition(previous_status: str, new_status: str) -> str | None:
    """Notification type for a status move, or None when it is not an alert."""
    if new_status == STATUS_LOW_STOCK and previous_status == STATUS_IN_STOCK:
        return NOTIFY_LOW_STOCK
    if new_status == STATUS_OUT_OF_STOCK and previous_status in (STATUS_IN_STOCK, STATUS_LOW_STOCK):
        return NOTIFY_OUT_OF_STOCK
    return None


def _persist(notification: Notification) -> None:
    db.session.add(notification)
    db.session.commit()


def _emit(**fields) -> Notification | None:
    if not current_app.config.get("ALERTS_ENABLED", True):
        return None

    attempts = max(1, int(current_app.config.get("NOTIFICATION_WRITE_ATTEMPTS", 2)))
    for attempt in range(1, attempts + 1):
        notification = Notification(**fields)
        try:
            _persist(notification)
            return notification
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to write %s notification (attempt %d/%d)", fields.get("type"), attempt, attempts
            )

    current_app.logger.error("Dropped %s notification: %s", fields.get("type"), fields.get("title"))
    return None


def _fire_and_forget(kind: str, build) -> Notification | None:
    """Run an emitter body; a failure anywhere in it is logged and dropped."""
    try:
        return build()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Dropped %s notification: emitter failed", kind)
        return None


def on_stock_transition(change) -> Notification | None:
    """React to a committed ledger change (stock_ledger.StockChange)."""
    alert_type = alert_for_transition(change.previous_status, change.new_status)
    if alert_type is None:
        return None
    return _fire_and_forget(alert_type, lambda: _stock_alert(change, alert_type))


def _stock_alert(change, alert_type: str) -> Notification | None:
    product = db.session.get(Product, change.product_id)
    label = _stock_label(product.name if product else f"Product {change.product_id}", change.variant_name)

    if alert_type == NOTIFY_LOW_STOCK:
        title = "Low Stock Alert"
        message = f"{label} is running low ({change.new_stock} remaining)"
    else:
        title = "Out of Stock Alert"
        message = f"{label} is out of stock"

    return _emit(
        type=alert_type,
        title=title,
        message=message,
        product_id=change.product_id,
        variant_name=change.variant_name,
    )


def on_sale_event(sale, event_kind: str) -> Notification | None:
    event_kind = require_choice("event_kind", event_kind, SALE_EVENTS)
    if event_kind != SALE_EVENT_CREATED:
        current_app.logger.info("Sale %s %s (status %s)", sale.id, event_kind, sale.status)
        return None

    return _fire_and_forget(NOTIFY_SALE, lambda: _emit(
        type=NOTIFY_SALE,
        title="New Sale Created",
        message=(
            f"A new {sale.status.lower()} sale of {_format_cents(sale.total_cents)} "
            f"for {sale.customer_name} has been created"
        ),
        sale_id=sale.id,
    ))


def on_price_change(product, variant_name: str | None, old_price_cents: int, new_price_cents: int) -> Notification | None:
    return _fire_and_forget(NOTIFY_PRICE_CHANGE, lambda: _emit(
        type=NOTIFY_PRICE_CHANGE,
        title="Price Changed",
        message=(
            f"{_stock_label(product.name, variant_name)} price changed from "
            f"{_format_cents(old_price_cents)} to {_format_cents(new_price_cents)}"
        ),
        product_id=product.id,
        variant_name=variant_name,
    ))


def list_notifications(*, type: str | None = None, read: bool | None = None, limit: int = 50) -> list[Notification]:
    query = db.session.query(Notification)
    if type is not None:
        query = query.filter(Notification.type == require_choice("type", type, NOTIFICATION_TYPES))
    if read is not None:
        query = query.filter(Notification.read.is_(bool(read)))
    limit = coerce_int("limit", limit, minimum=1, maximum=500)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count() -> int:
    return db.session.query(Notification).filter(Notification.read.is_(False)).count()


def mark_read(ids) -> int:
    """Mark the given notifications read. Returns how many changed."""
    ids = [coerce_int("ids[]", i, minimum=1) for i in (ids or [])]
    if not ids:
        return 0
    result = db.session.execute(
        update(Notification)
        .where(Notification.id.in_(ids), Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount


def mark_all_read() -> int:
    result = db.session.execute(
        update(Notification)
        .where(Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount
