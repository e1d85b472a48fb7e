# Overview: Catalog store; product reads plus the single conditional stock write primitive.

"""
Catalog Store Invariants (authoritative)

- Product.stock / ProductVariant.stock are written ONLY by
  conditional_update_stock(), and only the stock ledger calls it.
- Every stock write is a compare-and-swap: UPDATE ... WHERE stock = :expected.
  A lost race matches zero rows and the caller re-reads; nothing is ever
  overwritten blindly.
- status is written by the same UPDATE via a CASE expression over the new
  stock and min_stock_level, so it can never disagree with stock.
- For products with variants, the product aggregate is recomputed as
  SUM(variant.stock) inside the same transaction as the variant write.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func, literal, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, ProductNotFound, ValidationError, VariantNotFound
from ..extensions import db
from ..models import PriceHistory, Product, ProductVariant
from ..models.catalog import CHANGE_INITIAL, STOCK_STATUSES, stock_status_expr
from ..validation import (
    coerce_cents,
    coerce_int,
    optional_text,
    parse_variants,
    require_choice,
    require_text,
)


@dataclass(frozen=True)
class StockSnapshot:
    stock: int
    status: str
    min_stock_level: int


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product


def get_variant(product: Product, variant_name: str) -> ProductVariant:
    variant = product.find_variant(variant_name)
    if variant is None:
        raise VariantNotFound(product.id, variant_name)
    return variant


def resolve_stock_holder(product_id: int, variant_name: str | None) -> Product | ProductVariant:
    """
    Return the row whose stock a change applies to.

    Products with variants carry an aggregate stock only, so a change against
    them must name a variant.
    """
    product = get_product(product_id)
    if variant_name is None:
        if product.has_variants:
            raise ValidationError(
                f"variant_name is required for product {product_id}, which has variants",
                {"product_id": product_id, "variants": [v.name for v in product.variants]},
            )
        return product
    return get_variant(product, variant_name)


def read_stock(product_id: int, variant_name: str | None) -> StockSnapshot:
    """Read stock straight from the database, bypassing the identity map."""
    if variant_name is None:
        stmt = select(Product.stock, Product.status, Product.min_stock_level).where(Product.id == product_id)
    else:
        stmt = select(ProductVariant.stock, ProductVariant.status, ProductVariant.min_stock_level).where(
            ProductVariant.product_id == product_id,
            ProductVariant.name == variant_name,
        )
    row = db.session.execute(stmt).one_or_none()
    if row is None:
        if variant_name is None:
            raise ProductNotFound(product_id)
        raise VariantNotFound(product_id, variant_name)
    return StockSnapshot(stock=row.stock, status=row.status, min_stock_level=row.min_stock_level)


def conditional_update_stock(
    product_id: int,
    variant_name: str | None,
    expected_stock: int,
    new_stock: int,
) -> bool:
    """
    Compare-and-swap on stock. Returns False when the row no longer holds
    expected_stock. Does not commit.
    """
    new_value = literal(new_stock)

    if variant_name is None:
        result = db.session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock == expected_stock)
            .values(
                stock=new_stock,
                status=stock_status_expr(new_value, Product.min_stock_level),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    result = db.session.execute(
        update(ProductVariant)
        .where(
            ProductVariant.product_id == product_id,
            ProductVariant.name == variant_name,
            ProductVariant.stock == expected_stock,
        )
        .values(
            stock=new_stock,
            status=stock_status_expr(new_value, ProductVariant.min_stock_level),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    aggregate = (
        select(func.coalesce(func.sum(ProductVariant.stock), 0))
        .where(ProductVariant.product_id == product_id)
        .scalar_subquery()
    )
    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(
            stock=aggregate,
            status=stock_status_expr(aggregate, Product.min_stock_level),
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    return True


def list_products(*, category: str | None = None, status: str | None = None) -> list[Product]:
    query = db.session.query(Product)
    if category:
        query = query.filter(Product.category == category)
    if status:
        query = query.filter(Product.status == require_choice("status", status, STOCK_STATUSES))
    return query.order_by(Product.name.asc(), Product.id.asc()).all()


def create_product(
    *,
    name,
    sku,
    category,
    price_cents,
    cost_cents,
    description: str = "",
    min_stock_level=None,
    stock=0,
    variants=None,
) -> Product:
    """
    Create a product and seed its stock through the ledger.

    Rows are inserted at stock 0; any starting quantity is then applied as an
    Initial ledger entry so replaying history from zero reproduces the stock.
    """
    from . import stock_ledger

    default_min = current_app.config.get("DEFAULT_MIN_STOCK_LEVEL", 5)
    variant_inputs = parse_variants(variants)
    seed_stock = coerce_int("stock", stock, minimum=0)
    if variant_inputs and seed_stock:
        raise ValidationError("stock must be seeded per variant for products with variants", {"field": "stock"})

    sku = require_text("sku", sku, max_length=64)
    all_skus = [sku] + [v.sku for v in variant_inputs]
    taken = db.session.query(Product.sku).filter(Product.sku.in_(all_skus)).all()
    taken += db.session.query(ProductVariant.sku).filter(ProductVariant.sku.in_(all_skus)).all()
    if taken:
        raise ConflictError("A product or variant with this SKU already exists", {"skus": sorted({t[0] for t in taken})})

    product = Product(
        name=require_text("name", name),
        sku=sku,
        category=require_text("category", category, max_length=120),
        description=optional_text("description", description, max_length=4000) or "",
        price_cents=coerce_cents("price_cents", price_cents),
        cost_cents=coerce_cents("cost_cents", cost_cents),
        min_stock_level=(
            coerce_int("min_stock_level", min_stock_level, minimum=0)
            if min_stock_level is not None else default_min
        ),
        stock=0,
    )
    for position, v in enumerate(variant_inputs):
        product.variants.append(
            ProductVariant(
                position=position,
                name=v.name,
                sku=v.sku,
                price_cents=v.price_cents,
                cost_cents=v.cost_cents,
                min_stock_level=v.min_stock_level if v.min_stock_level is not None else default_min,
                stock=0,
            )
        )

    db.session.add(product)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("A product or variant with this SKU already exists") from exc

    product_id = product.id
    if variant_inputs:
        for v in variant_inputs:
            if v.stock:
                stock_ledger.apply_stock_change(
                    product_id, v.name, v.stock, CHANGE_INITIAL, "Initial stock", notify=False
                )
    elif seed_stock:
        stock_ledger.apply_stock_change(
            product_id, None, seed_stock, CHANGE_INITIAL, "Initial stock", notify=False
        )

    current_app.logger.info("Created product %s (%s)", product_id, product.sku)
    return refresh_product(product_id)


def refresh_product(product_id: int) -> Product:
    """Reload a product after Core-level stock writes."""
    product = get_product(product_id)
    db.session.refresh(product)
    for variant in product.variants:
        db.session.refresh(variant)
    return product


PRODUCT_EDITABLE_FIELDS = ("name", "description", "category", "min_stock_level")


def update_product(product_id: int, changes: dict, variant_name: str | None = None) -> Product:
    """
    Edit a product's descriptive fields or low-stock threshold.

    Stock and prices are not editable here (ledger and update_pricing). A
    variant only accepts min_stock_level. A new threshold re-derives status
    in the same UPDATE that writes it; that move is not an alert.
    """
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("changes must be a non-empty object")
    allowed = ("min_stock_level",) if variant_name is not None else PRODUCT_EDITABLE_FIELDS
    unknown = sorted(set(changes) - set(allowed))
    if unknown:
        raise ValidationError(f"Only {', '.join(allowed)} can be edited", {"fields": unknown})

    product = get_product(product_id)
    if variant_name is not None:
        get_variant(product, variant_name)

    if "name" in changes:
        product.name = require_text("name", changes["name"])
    if "description" in changes:
        product.description = optional_text("description", changes["description"], max_length=4000) or ""
    if "category" in changes:
        product.category = require_text("category", changes["category"], max_length=120)

    if "min_stock_level" in changes:
        level = literal(coerce_int("min_stock_level", changes["min_stock_level"], minimum=0))
        if variant_name is None:
            stmt = (
                update(Product)
                .where(Product.id == product.id)
                .values(min_stock_level=level, status=stock_status_expr(Product.stock, level), updated_at=func.now())
            )
        else:
            stmt = (
                update(ProductVariant)
                .where(ProductVariant.product_id == product.id, ProductVariant.name == variant_name)
                .values(min_stock_level=level, status=stock_status_expr(ProductVariant.stock, level))
            )
        db.session.execute(stmt.execution_options(synchronize_session=False))

    db.session.commit()
    current_app.logger.info("Updated product %s: %s", product_id, sorted(changes))
    return refresh_product(product_id)


def update_pricing(
    product_id: int,
    variant_name: str | None = None,
    *,
    price_cents=None,
    cost_cents=None,
    reason: str | None = None,
) -> Product:
    """
    Change the list price and/or cost of a product or one of its variants.

    A price change is recorded in PriceHistory and raises a PriceChange
    notification. Stock is untouched.
    """
    from . import alert_service

    if price_cents is None and cost_cents is None:
        raise ValidationError("price_cents or cost_cents is required")

    product = get_product(product_id)
    target = get_variant(product, variant_name) if variant_name is not None else product

    old_price = target.price_cents
    new_price = coerce_cents("price_cents", price_cents) if price_cents is not None else old_price
    if cost_cents is not None:
        target.cost_cents = coerce_cents("cost_cents", cost_cents)

    price_changed = new_price != old_price
    if price_changed:
        target.price_cents = new_price
        db.session.add(
            PriceHistory(
                product_id=product.id,
                variant_name=variant_name,
                old_price_cents=old_price,
                new_price_cents=new_price,
                reason=optional_text("reason", reason),
            )
        )

    db.session.commit()

    if price_changed:
        alert_service.on_price_change(product, variant_name, old_price, new_price)
    return product


def list_price_history(product_id: int | None = None, limit: int = 100) -> list[PriceHistory]:
    query = db.session.query(PriceHistory)
    if product_id is not None:
        query = query.filter(PriceHistory.product_id == product_id)
    return query.order_by(PriceHistory.created_at.desc(), PriceHistory.id.desc()).limit(limit).all()
