from __future__ import annotations

from ..extensions import db
from stockflow.time_utils import to_utc_z

SALE_PENDING = "Pending"
SALE_COMPLETED = "Completed"
SALE_CANCELLED = "Cancelled"
SALE_STATUSES = (SALE_PENDING, SALE_COMPLETED, SALE_CANCELLED)

PAYMENT_METHODS = ("cash", "credit", "debit", "check", "other")


class Sale(db.Model):
    """
    Sale document.

    Items are frozen at creation. Only status, notes and payment_method move
    afterwards. Totals are a cache of pricing.compute_totals(items) and are
    re-verified whenever the sale is read or written.

    stock_committed is True while this sale holds a stock decrement for its
    items. It is what makes the status machine apply each decrement and each
    restore exactly once.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Assigned before any stock moves so ledger rows can point at the sale
    reference = db.Column(db.String(32), nullable=False, unique=True)

    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)

    sale_date = db.Column(db.DateTime(timezone=True), nullable=False)

    # Denormalized totals in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    profit_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SALE_PENDING, index=True)
    stock_committed = db.Column(db.Boolean, nullable=False, default=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        order_by="SaleItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} status={self.status!r} total_cents={self.total_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "customer": {
                "name": self.customer_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
            },
            "date": to_utc_z(self.sale_date),
            "items": [item.to_dict() for item in self.items],
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "total_cost_cents": self.total_cost_cents,
            "profit_cents": self.profit_cents,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "status": self.status,
            "stock_committed": self.stock_committed,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class SaleItem(db.Model):
    """Line on a sale; product name, sku, price and cost are snapshots."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    variant_name = db.Column(db.String(120), nullable=True)
    sku = db.Column(db.String(64), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "line_total_cents": self.line_total_cents,
        }
