"""Alert emitter: edge triggering, fire-and-forget writes and the read side."""

import logging

import pytest

from conftest import notifications_of
from stockflow.errors import ValidationError
from stockflow.models import Notification
from stockflow.models.catalog import (
    CHANGE_RESTOCK,
    CHANGE_SALE,
    STATUS_IN_STOCK,
    STATUS_LOW_STOCK,
    STATUS_OUT_OF_STOCK,
)
from stockflow.models.notifications import (
    NOTIFY_LOW_STOCK,
    NOTIFY_OUT_OF_STOCK,
    NOTIFY_PRICE_CHANGE,
    NOTIFY_SALE,
)
from stockflow.services import alert_service, catalog_service, sales_service, stock_ledger


class TestAlertForTransition:
    @pytest.mark.parametrize("previous,new,expected", [
        (STATUS_IN_STOCK, STATUS_LOW_STOCK, NOTIFY_LOW_STOCK),
        (STATUS_IN_STOCK, STATUS_OUT_OF_STOCK, NOTIFY_OUT_OF_STOCK),
        (STATUS_LOW_STOCK, STATUS_OUT_OF_STOCK, NOTIFY_OUT_OF_STOCK),
        (STATUS_LOW_STOCK, STATUS_LOW_STOCK, None),
        (STATUS_OUT_OF_STOCK, STATUS_OUT_OF_STOCK, None),
        (STATUS_OUT_OF_STOCK, STATUS_LOW_STOCK, None),
        (STATUS_LOW_STOCK, STATUS_IN_STOCK, None),
        (STATUS_OUT_OF_STOCK, STATUS_IN_STOCK, None),
        (STATUS_IN_STOCK, STATUS_IN_STOCK, None),
    ])
    def test_only_crossings_into_low_or_out_alert(self, previous, new, expected):
        assert alert_service.alert_for_transition(previous, new) == expected


class TestStockAlerts:
    def test_ledger_change_emits_on_crossing(self, make_product):
        product = make_product(stock=7, min_stock_level=5, name="Lamp")

        stock_ledger.apply_stock_change(product.id, None, -1, CHANGE_SALE)
        assert notifications_of(NOTIFY_LOW_STOCK) == []

        stock_ledger.apply_stock_change(product.id, None, -2, CHANGE_SALE)
        low = notifications_of(NOTIFY_LOW_STOCK)
        assert len(low) == 1
        assert low[0].title == "Low Stock Alert"
        assert low[0].message == "Lamp is running low (4 remaining)"

        stock_ledger.apply_stock_change(product.id, None, -4, CHANGE_SALE)
        out = notifications_of(NOTIFY_OUT_OF_STOCK)
        assert [n.message for n in out] == ["Lamp is out of stock"]

    def test_restock_never_alerts(self, make_product):
        product = make_product(stock=0, min_stock_level=5)
        stock_ledger.apply_stock_change(product.id, None, 2, CHANGE_RESTOCK)
        stock_ledger.apply_stock_change(product.id, None, 10, CHANGE_RESTOCK)
        assert notifications_of(NOTIFY_LOW_STOCK) == []
        assert notifications_of(NOTIFY_OUT_OF_STOCK) == []

    def test_variant_alert_names_the_variant(self, shirt):
        stock_ledger.apply_stock_change(shirt.id, "S", -6, CHANGE_SALE)
        low = notifications_of(NOTIFY_LOW_STOCK)
        assert len(low) == 1
        assert low[0].variant_name == "S"
        assert low[0].message == "Shirt - S is running low (4 remaining)"

    def test_notify_false_is_silent(self, make_product):
        product = make_product(stock=6, min_stock_level=5)
        change = stock_ledger.apply_stock_change(product.id, None, -6, CHANGE_SALE, notify=False)
        assert change.crossed_threshold
        assert notifications_of(NOTIFY_OUT_OF_STOCK) == []

    def test_alerts_can_be_disabled(self, app, make_product, monkeypatch):
        monkeypatch.setitem(app.config, "ALERTS_ENABLED", False)
        product = make_product(stock=6, min_stock_level=5)
        stock_ledger.apply_stock_change(product.id, None, -6, CHANGE_SALE)
        assert notifications_of(NOTIFY_OUT_OF_STOCK) == []


class TestSaleAlerts:
    def test_one_sale_notification_per_creation(self, make_product):
        product = make_product(stock=20, price_cents=2500)
        sale = sales_service.create_sale(
            {"name": "Dana", "email": "dana@example.com"},
            [{"product_id": product.id, "quantity": 2}],
            status="Completed",
        )
        sales_service.update_sale_status(sale.id, "Pending")
        sales_service.cancel_sale(sale.id)

        sale_notes = notifications_of(NOTIFY_SALE)
        assert len(sale_notes) == 1
        assert sale_notes[0].sale_id == sale.id
        assert sale_notes[0].title == "New Sale Created"
        assert sale_notes[0].message == "A new completed sale of $50.00 for Dana has been created"

    def test_unknown_event_kind(self, make_product):
        product = make_product(stock=5)
        sale = sales_service.create_sale("Eve", [{"product_id": product.id, "quantity": 1}])
        with pytest.raises(ValidationError):
            alert_service.on_sale_event(sale, "shipped")


class TestFireAndForget:
    def test_failed_write_never_undoes_the_sale(self, make_product, monkeypatch, caplog):
        """Every notification write fails; stock and sale still commit."""
        product = make_product(stock=6, min_stock_level=5)

        def broken(notification):
            raise RuntimeError("notifications table is locked")

        monkeypatch.setattr(alert_service, "_persist", broken)

        with caplog.at_level(logging.ERROR):
            sale = sales_service.create_sale("Frank", [{"product_id": product.id, "quantity": 2}])

        assert sale.id is not None
        assert catalog_service.refresh_product(product.id).stock == 4
        assert alert_service.list_notifications() == []
        assert "Dropped LowStock notification" in caplog.text
        assert "Dropped Sale notification" in caplog.text

    def test_failed_product_lookup_never_fails_the_sale(self, make_product, monkeypatch, caplog):
        """The alert cannot even name its product; the committed sale is still returned."""
        product = make_product(stock=10, min_stock_level=5)
        monkeypatch.setattr(alert_service, "Product", object)

        with caplog.at_level(logging.ERROR):
            sale = sales_service.create_sale("Gina", [{"product_id": product.id, "quantity": 6}])

        assert sale.id is not None
        assert sales_service.get_sale(sale.id).status == sale.status
        assert catalog_service.refresh_product(product.id).stock == 4
        assert notifications_of(NOTIFY_LOW_STOCK) == []
        assert len(notifications_of(NOTIFY_SALE)) == 1
        assert "Dropped LowStock notification: emitter failed" in caplog.text

    def test_write_is_retried(self, app, make_product, monkeypatch):
        monkeypatch.setitem(app.config, "NOTIFICATION_WRITE_ATTEMPTS", 2)
        real = alert_service._persist
        calls = {"n": 0}

        def flaky(notification):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("transient")
            real(notification)

        monkeypatch.setattr(alert_service, "_persist", flaky)
        product = make_product(stock=6, min_stock_level=5)
        stock_ledger.apply_stock_change(product.id, None, -6, CHANGE_SALE)

        assert calls["n"] == 2
        assert len(notifications_of(NOTIFY_OUT_OF_STOCK)) == 1


class TestPriceAlerts:
    def test_price_change_notifies_and_records_history(self, make_product):
        product = make_product(stock=5, price_cents=1000, name="Kettle")

        catalog_service.update_pricing(product.id, price_cents=1200, reason="Supplier increase")
        catalog_service.update_pricing(product.id, cost_cents=450)

        changes = notifications_of(NOTIFY_PRICE_CHANGE)
        assert [n.message for n in changes] == ["Kettle price changed from $10.00 to $12.00"]
        history = catalog_service.list_price_history(product.id)
        assert [(h.old_price_cents, h.new_price_cents) for h in history] == [(1000, 1200)]


class TestReadSide:
    def test_unread_count_and_mark_read(self, make_product):
        product = make_product(stock=6, min_stock_level=5)
        stock_ledger.apply_stock_change(product.id, None, -2, CHANGE_SALE)
        stock_ledger.apply_stock_change(product.id, None, -4, CHANGE_SALE)

        assert alert_service.unread_count() == 2
        newest = alert_service.list_notifications()[0]
        assert newest.type == NOTIFY_OUT_OF_STOCK

        assert alert_service.mark_read([newest.id]) == 1
        assert alert_service.mark_read([newest.id]) == 0
        assert alert_service.unread_count() == 1
        assert [n.type for n in alert_service.list_notifications(read=False)] == [NOTIFY_LOW_STOCK]

        assert alert_service.mark_all_read() == 1
        assert alert_service.unread_count() == 0

    def test_filter_by_type_validates(self, db_session):
        with pytest.raises(ValidationError):
            alert_service.list_notifications(type="Spam")

    def test_to_dict_uses_date_key(self, make_product):
        product = make_product(stock=6, min_stock_level=5)
        stock_ledger.apply_stock_change(product.id, None, -6, CHANGE_SALE)
        payload = alert_service.list_notifications()[0].to_dict()
        assert payload["date"].endswith("Z")
        assert payload["read"] is False
        assert isinstance(alert_service.list_notifications()[0], Notification)
