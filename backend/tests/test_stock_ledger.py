"""Stock ledger: conditional writes, history invariants and replay."""

import pytest
from sqlalchemy import update

from stockflow.errors import ConcurrentModification, InsufficientStock, ProductNotFound, ValidationError, VariantNotFound
from stockflow.extensions import db
from stockflow.models import Product, ProductVariant, StockHistory
from stockflow.models.catalog import (
    CHANGE_ADJUSTMENT,
    CHANGE_INITIAL,
    CHANGE_RESTOCK,
    CHANGE_SALE,
    STATUS_IN_STOCK,
    STATUS_LOW_STOCK,
    STATUS_OUT_OF_STOCK,
    stock_status,
)
from stockflow.services import catalog_service, stock_ledger
from stockflow.services.concurrency import CasConflict


def _history(product_id):
    return (
        db.session.query(StockHistory)
        .filter_by(product_id=product_id)
        .order_by(StockHistory.id.asc())
        .all()
    )


class TestStockStatus:
    def test_threshold_function(self):
        """Status is a pure function of stock and min level."""
        assert stock_status(0, 5) == STATUS_OUT_OF_STOCK
        assert stock_status(1, 5) == STATUS_LOW_STOCK
        assert stock_status(5, 5) == STATUS_LOW_STOCK
        assert stock_status(6, 5) == STATUS_IN_STOCK
        assert stock_status(1, 0) == STATUS_IN_STOCK

    def test_status_matches_threshold_after_every_operation(self, make_product):
        """Stored status always equals the threshold function of stored stock."""
        product = make_product(stock=8, min_stock_level=5)
        steps = [
            lambda: stock_ledger.apply_stock_change(product.id, None, -2, CHANGE_SALE),
            lambda: stock_ledger.apply_stock_change(product.id, None, -1, CHANGE_SALE),
            lambda: stock_ledger.apply_stock_change(product.id, None, -5, CHANGE_SALE),
            lambda: stock_ledger.restock_product(product.id, None, 3),
            lambda: stock_ledger.adjust_stock(product.id, None, 12),
        ]
        for step in steps:
            step()
            fresh = catalog_service.refresh_product(product.id)
            assert fresh.status == stock_status(fresh.stock, fresh.min_stock_level)


class TestApplyStockChange:
    def test_decrement_records_history(self, make_product):
        """A successful change writes exactly one history row."""
        product = make_product(stock=10)
        change = stock_ledger.apply_stock_change(product.id, None, -3, CHANGE_SALE, "counter sale")

        assert (change.previous_stock, change.new_stock, change.change) == (10, 7, -3)
        rows = _history(product.id)
        assert [r.type for r in rows] == [CHANGE_INITIAL, CHANGE_SALE]
        last = rows[-1]
        assert (last.previous_stock, last.new_stock, last.change) == (10, 7, -3)
        assert last.notes == "counter sale"
        assert db.session.get(Product, product.id).stock == 7

    def test_insufficient_stock_writes_nothing(self, make_product):
        """Overdrawing raises and leaves stock and history untouched."""
        product = make_product(stock=2)
        before = len(_history(product.id))

        with pytest.raises(InsufficientStock) as excinfo:
            stock_ledger.apply_stock_change(product.id, None, -3, CHANGE_SALE)

        assert excinfo.value.details["available"] == 2
        assert excinfo.value.details["requested"] == 3
        assert catalog_service.refresh_product(product.id).stock == 2
        assert len(_history(product.id)) == before

    def test_decrement_to_exactly_zero(self, make_product):
        product = make_product(stock=3)
        change = stock_ledger.apply_stock_change(product.id, None, -3, CHANGE_SALE)
        assert change.new_stock == 0
        assert change.new_status == STATUS_OUT_OF_STOCK

    def test_rejects_zero_and_non_integer_delta(self, make_product):
        """Zero, bool and float deltas are validation errors."""
        product = make_product(stock=3)
        for bad in (0, True, 1.5, "2"):
            with pytest.raises(ValidationError):
                stock_ledger.apply_stock_change(product.id, None, bad, CHANGE_SALE)

    def test_rejects_unknown_change_type(self, make_product):
        product = make_product(stock=3)
        with pytest.raises(ValidationError):
            stock_ledger.apply_stock_change(product.id, None, 1, "Gift")

    def test_unknown_product(self, db_session):
        with pytest.raises(ProductNotFound):
            stock_ledger.apply_stock_change(9999, None, 1, CHANGE_RESTOCK)

    def test_corrective_only_for_positive_adjustments(self, make_product):
        product = make_product(stock=3)
        with pytest.raises(ValidationError):
            stock_ledger.apply_stock_change(product.id, None, -1, CHANGE_ADJUSTMENT, corrective=True)
        with pytest.raises(ValidationError):
            stock_ledger.apply_stock_change(product.id, None, 1, CHANGE_RESTOCK, corrective=True)

    def test_lost_cas_retries_then_succeeds(self, make_product, monkeypatch):
        """A single lost compare-and-swap is retried transparently."""
        product = make_product(stock=5)
        real = catalog_service.conditional_update_stock
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return False
            return real(*args, **kwargs)

        monkeypatch.setattr(catalog_service, "conditional_update_stock", flaky)
        change = stock_ledger.apply_stock_change(product.id, None, -1, CHANGE_SALE)

        assert calls["n"] == 2
        assert change.new_stock == 4
        assert len(_history(product.id)) == 2

    def test_persistent_cas_loss_surfaces_conflict(self, app, make_product, monkeypatch):
        """After the bounded retries the caller gets ConcurrentModification."""
        product = make_product(stock=5)
        monkeypatch.setattr(catalog_service, "conditional_update_stock", lambda *a, **k: False)
        monkeypatch.setitem(app.config, "STOCK_CAS_MAX_ATTEMPTS", 3)

        with pytest.raises(ConcurrentModification) as excinfo:
            stock_ledger.apply_stock_change(product.id, None, -1, CHANGE_SALE)

        assert isinstance(excinfo.value.__cause__, CasConflict)
        assert excinfo.value.details["attempts"] == 3
        assert catalog_service.refresh_product(product.id).stock == 5
        assert len(_history(product.id)) == 1


class TestVariants:
    def test_variant_change_recomputes_parent_aggregate(self, shirt):
        """Parent stock is the sum of variant stocks after a variant write."""
        assert shirt.stock == 14

        stock_ledger.apply_stock_change(shirt.id, "S", -3, CHANGE_SALE)
        product = catalog_service.refresh_product(shirt.id)

        assert product.find_variant("S").stock == 7
        assert product.stock == 11
        assert product.stock == sum(v.stock for v in product.variants)
        assert product.status == stock_status(product.stock, product.min_stock_level)

    def test_variant_status_tracks_its_own_threshold(self, shirt):
        stock_ledger.apply_stock_change(shirt.id, "M", -4, CHANGE_SALE)
        variant = db.session.query(ProductVariant).filter_by(product_id=shirt.id, name="M").one()
        assert variant.stock == 0
        assert variant.status == STATUS_OUT_OF_STOCK

    def test_variant_name_required_when_product_has_variants(self, shirt):
        with pytest.raises(ValidationError):
            stock_ledger.apply_stock_change(shirt.id, None, -1, CHANGE_SALE)

    def test_unknown_variant(self, shirt):
        with pytest.raises(VariantNotFound):
            stock_ledger.restock_product(shirt.id, "XXL", 2)


class TestRestockAndAdjust:
    def test_restock_adds_units(self, make_product):
        product = make_product(stock=2, min_stock_level=5)
        product = stock_ledger.restock_product(product.id, None, 10, "Truck delivery")
        assert product.stock == 12
        assert product.status == STATUS_IN_STOCK
        assert _history(product.id)[-1].type == CHANGE_RESTOCK

    def test_restock_rejects_non_positive_quantity(self, make_product):
        product = make_product(stock=2)
        for bad in (0, -1, "abc"):
            with pytest.raises(ValidationError):
                stock_ledger.restock_product(product.id, None, bad)

    def test_adjust_derives_delta_from_current_stock(self, make_product):
        product = make_product(stock=9)
        product = stock_ledger.adjust_stock(product.id, None, 4, "Cycle count")
        last = _history(product.id)[-1]
        assert product.stock == 4
        assert (last.type, last.change, last.notes) == (CHANGE_ADJUSTMENT, -5, "Cycle count")

    def test_adjust_to_same_value_is_noop(self, make_product):
        product = make_product(stock=9)
        before = len(_history(product.id))
        stock_ledger.adjust_stock(product.id, None, 9)
        assert len(_history(product.id)) == before

    def test_adjust_rejects_negative_target(self, make_product):
        product = make_product(stock=9)
        with pytest.raises(ValidationError):
            stock_ledger.adjust_stock(product.id, None, -1)


class TestReplay:
    def test_history_arithmetic_and_replay(self, make_product, shirt):
        """Every row satisfies new = previous + change; replay from zero matches stock."""
        product = make_product(stock=10)
        stock_ledger.apply_stock_change(product.id, None, -4, CHANGE_SALE)
        stock_ledger.restock_product(product.id, None, 6)
        stock_ledger.adjust_stock(product.id, None, 3)
        stock_ledger.apply_stock_change(shirt.id, "L", 5, CHANGE_RESTOCK)
        stock_ledger.apply_stock_change(shirt.id, "S", -2, CHANGE_SALE)

        for row in db.session.query(StockHistory).all():
            assert row.new_stock == row.previous_stock + row.change

        report = stock_ledger.replay_stock(product.id)
        assert report["stored"] == report["replayed"] == 3
        assert report["breaks"] == []

        variant_report = stock_ledger.replay_stock(shirt.id)
        assert variant_report["stored"] == variant_report["replayed"] == 17
        assert variant_report["variants"]["L"] == {"stored": 5, "replayed": 5}
        assert stock_ledger.verify_ledger() == []

    def test_verify_reports_drift(self, make_product):
        """A stock write that bypasses the ledger is detected."""
        product = make_product(stock=10)
        db.session.execute(
            update(Product).where(Product.id == product.id).values(stock=11)
        )
        db.session.commit()

        problems = stock_ledger.verify_ledger()
        assert [p["product_id"] for p in problems] == [product.id]
        assert problems[0]["stored"] == 11
        assert problems[0]["replayed"] == 10

    def test_list_history_filters(self, make_product):
        product = make_product(stock=10)
        stock_ledger.apply_stock_change(product.id, None, -1, CHANGE_SALE, sale_ref="S-TEST")
        stock_ledger.restock_product(product.id, None, 2)

        sales = stock_ledger.list_stock_history(product_id=product.id, change_type=CHANGE_SALE)
        assert [e.change for e in sales] == [-1]
        by_ref = stock_ledger.list_stock_history(sale_ref="S-TEST")
        assert [e.sale_ref for e in by_ref] == ["S-TEST"]
        newest_first = stock_ledger.list_stock_history(product_id=product.id)
        assert newest_first[0].type == CHANGE_RESTOCK
