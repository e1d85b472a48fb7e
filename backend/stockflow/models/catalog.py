from __future__ import annotations

from sqlalchemy import case

from ..extensions import db
from stockflow.time_utils import to_utc_z

STATUS_IN_STOCK = "In Stock"
STATUS_LOW_STOCK = "Low Stock"
STATUS_OUT_OF_STOCK = "Out of Stock"
STOCK_STATUSES = (STATUS_IN_STOCK, STATUS_LOW_STOCK, STATUS_OUT_OF_STOCK)

CHANGE_INITIAL = "Initial"
CHANGE_RESTOCK = "Restock"
CHANGE_SALE = "Sale"
CHANGE_ADJUSTMENT = "Adjustment"
CHANGE_TYPES = (CHANGE_INITIAL, CHANGE_RESTOCK, CHANGE_SALE, CHANGE_ADJUSTMENT)


def stock_status(stock: int, min_stock_level: int) -> str:
    """Threshold function; the only way a status value is ever produced."""
    if stock <= 0:
        return STATUS_OUT_OF_STOCK
    if stock <= min_stock_level:
        return STATUS_LOW_STOCK
    return STATUS_IN_STOCK


def stock_status_expr(stock_expr, min_level_expr):
    """SQL form of stock_status() so stock and status land in one UPDATE."""
    return case(
        (stock_expr <= 0, STATUS_OUT_OF_STOCK),
        (stock_expr <= min_level_expr, STATUS_LOW_STOCK),
        else_=STATUS_IN_STOCK,
    )


class Product(db.Model):
    """
    Catalog entry whose stock is owned by the stock ledger.

    STOCK DESIGN:
    - stock is never written by ORM attribute assignment after creation.
      All writes go through catalog_service.conditional_update_stock, which
      compares against the expected value inside the UPDATE itself.
    - With variants, stock is SUM(variant.stock), recomputed in the same
      transaction as the variant write.
    - status is derived from (stock, min_stock_level) by the same statement.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_nonnegative"),
        db.Index("ix_products_category_name", "category", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    category = db.Column(db.String(120), nullable=False, index=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock_level = db.Column(db.Integer, nullable=False, default=5)
    status = db.Column(db.String(16), nullable=False, default=STATUS_OUT_OF_STOCK, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    variants = db.relationship(
        "ProductVariant",
        back_populates="product",
        order_by="ProductVariant.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock} status={self.status!r}>"

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)

    def find_variant(self, name: str) -> "ProductVariant | None":
        for variant in self.variants:
            if variant.name == name:
                return variant
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "stock": self.stock,
            "min_stock_level": self.min_stock_level,
            "status": self.status,
            "variants": [v.to_dict() for v in self.variants],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductVariant(db.Model):
    """A sellable variant with its own independent stock."""
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("product_id", "name", name="uq_variants_product_name"),
        db.CheckConstraint("stock >= 0", name="ck_variants_stock_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    name = db.Column(db.String(120), nullable=False)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    price_cents = db.Column(db.Integer, nullable=False)
    cost_cents = db.Column(db.Integer, nullable=False)

    stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock_level = db.Column(db.Integer, nullable=False, default=5)
    status = db.Column(db.String(16), nullable=False, default=STATUS_OUT_OF_STOCK)

    product = db.relationship("Product", back_populates="variants")

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} product_id={self.product_id} name={self.name!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "stock": self.stock,
            "min_stock_level": self.min_stock_level,
            "status": self.status,
        }


class StockHistory(db.Model):
    """
    Append-only ledger entry; exactly one per stock mutation.

    For variant writes the entry records the variant's own stock, so summing
    change over a product's rows still reproduces the product aggregate.
    """
    __tablename__ = "stock_history"
    __table_args__ = (
        db.CheckConstraint("new_stock = previous_stock + change", name="ck_stock_history_arithmetic"),
        db.CheckConstraint("new_stock >= 0", name="ck_stock_history_nonnegative"),
        db.Index("ix_stock_history_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_name = db.Column(db.String(120), nullable=True)

    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)
    change = db.Column(db.Integer, nullable=False)

    type = db.Column(db.String(16), nullable=False, index=True)
    notes = db.Column(db.String(255), nullable=True)

    # Sale.reference of the sale that caused this entry (also set on compensations)
    sale_ref = db.Column(db.String(32), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_name": self.variant_name,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "change": self.change,
            "type": self.type,
            "notes": self.notes,
            "sale_ref": self.sale_ref,
            "created_at": to_utc_z(self.created_at),
        }


class PriceHistory(db.Model):
    __tablename__ = "price_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_name = db.Column(db.String(120), nullable=True)

    old_price_cents = db.Column(db.Integer, nullable=False)
    new_price_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_name": self.variant_name,
            "old_price_cents": self.old_price_cents,
            "new_price_cents": self.new_price_cents,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
