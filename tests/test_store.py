import copy

import pytest

from conftest import FixedClock
from produce_intake.domain import CartLine, CatalogProduct, DeliveryDetails, OrderStatus, PaymentMethod, PaymentStatus, Unit
from produce_intake.errors import DataConsistencyWarning, NotFoundError, ValidationError
from produce_intake.lifecycle import advance
from produce_intake.store import AccountStatusService, InMemoryCatalog, OrderStore

LINES = [CartLine("p1", 5, 4.50), CartLine("p2", 2, 1.20, Unit.EACH)]


def test_create_order_sets_pending_and_confirmed_at(order_store, clock):
    order = order_store.create_order("b1", LINES, 24.9)
    assert order.id.startswith("o-")
    assert order.status is OrderStatus.PENDING
    assert order.confirmed_at == clock.now
    assert order.placed_at == clock.now
    assert order_store.get_orders("b1") == [order]
    assert order_store.get_orders("b2") == []


def test_store_owns_the_instance_the_tracker_mutates(order_store, clock):
    order = order_store.create_order("b1", LINES, 24.9)
    advance(order, OrderStatus.CONFIRMED, clock.tick(minutes=1))
    assert order_store.get_order(order.id).status is OrderStatus.CONFIRMED


def test_unknown_order(order_store):
    with pytest.raises(NotFoundError):
        order_store.get_order("o-missing")


def test_orders_persist_and_reload(tmp_path):
    path = tmp_path / "orders.json"
    clock = FixedClock()
    store = OrderStore(path, clock=clock)
    order = store.create_order("b1", LINES, 24.9)
    order.payment_method = PaymentMethod.PAY_NOW
    order.delivery = DeliveryDetails("2026-03-03", "06:00", "Sam", "Dock 2")
    with pytest.warns(DataConsistencyWarning):
        advance(order, OrderStatus.DELIVERED, clock.tick(hours=3))
    store.save(order)

    reloaded = OrderStore(path).get_order(order.id)
    assert reloaded.status is OrderStatus.DELIVERED
    assert reloaded.delivered_at == clock.now
    assert reloaded.payment_method is PaymentMethod.PAY_NOW
    assert reloaded.delivery.contact_name == "Sam"
    assert reloaded.lines[1] == CartLine("p2", 2, 1.20, Unit.EACH)


def test_corrupt_orders_file_starts_empty(tmp_path):
    path = tmp_path / "orders.json"
    path.write_text("{not json", encoding="utf-8")
    assert OrderStore(path).get_orders("b1") == []


def test_discard_removes_order(order_store):
    order = order_store.create_order("b1", LINES, 24.9)
    order_store.discard(order.id)
    assert order_store.get_orders("b1") == []


def test_account_restricted_by_flag_or_overdue_order(order_store):
    accounts = AccountStatusService(order_store)
    assert accounts.has_outstanding_invoices("b1") is False
    accounts.restrict("b1")
    assert accounts.has_outstanding_invoices("b1") is True
    accounts.clear("b1")
    order = order_store.create_order("b1", LINES, 24.9)
    order.payment_status = PaymentStatus.OVERDUE
    assert accounts.has_outstanding_invoices("b1") is True


def test_catalog_add_product_is_validated():
    catalog = InMemoryCatalog([CatalogProduct(id="p1", name="Roma Tomatoes", default_price=4.5)])
    catalog.add_product(CatalogProduct(id="p9", name="Kale", default_price=2.0))
    assert [p.id for p in catalog.get_all_products()] == ["p1", "p9"]
    assert "p9" in catalog.snapshot()
    with pytest.raises(ValidationError):
        catalog.add_product(CatalogProduct(id="p9", name="Kale again"))
    assert len(catalog.get_all_products()) == 2


def test_failed_write_on_create_keeps_no_order(tmp_path):
    store = OrderStore(tmp_path / "missing_dir" / "orders.json", clock=FixedClock())
    with pytest.raises(OSError):
        store.create_order("b1", LINES, 24.9)
    assert store.get_orders("b1") == []


def test_restore_puts_back_an_earlier_copy(order_store, clock):
    order = order_store.create_order("b1", LINES, 24.9)
    before = copy.deepcopy(order)
    advance(order, OrderStatus.CONFIRMED, clock.tick(minutes=3))
    order_store.restore(before)
    assert order_store.get_order(order.id) is order
    assert order.status is OrderStatus.PENDING
    assert order.confirmed_at == before.confirmed_at
