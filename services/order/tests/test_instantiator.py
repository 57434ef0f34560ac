from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
import threading

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.errors import PersistenceError, ProductNotFoundError
from app.db.models import Inventory, Order, ScheduleItem
from app.recurrence import RecurrencePattern
from app.services.instantiator import OrderInstantiator
from app.services import schedules
from app.services.stock import ProductInfo, SqlProductStore, StockLine

from conftest import NOW, FakeProductStore, RecordingDispatcher, StaticDirectory


def broken_commit():
    raise OperationalError("INSERT", {}, Exception("disk full"))


@pytest.fixture
def instantiator(db, store, dispatcher):
    return OrderInstantiator(db, store, dispatcher, StaticDirectory())


def test_paused_schedule_is_a_no_op(db, make_schedule, instantiator, store):
    s = make_schedule(schedule_status="paused")
    assert instantiator.instantiate(s, NOW) is None
    assert db.query(Order).count() == 0
    assert store.stock == {101: 10, 102: 10}


def test_in_stock_schedule_produces_confirmed_order(db, make_schedule, instantiator, store):
    s = make_schedule(RecurrencePattern(days_of_week=[3]))
    order = instantiator.instantiate(s, NOW)

    assert order.status == "confirmed"
    assert order.order_number.startswith("AUTO-")
    assert order.schedule_id == s.id
    assert order.notes == "Auto-generated from recurring order"
    assert order.total_cents == 2000
    assert order.shipping_address == {"name": "Alice", "city": "Leeds"}
    assert [(i.product_id, i.qty) for i in order.items] == [(101, 2), (102, 1)]
    assert store.stock == {101: 8, 102: 9}

    # the instance takes the occurrence after the stored due date, the schedule moves one past that
    assert order.estimated_delivery == datetime(2025, 1, 15, 9, 0)
    assert s.next_delivery_at == datetime(2025, 1, 22, 9, 0)
    assert s.schedule_status == "active"
    assert s.claim_token is None


def test_short_stock_downgrades_to_pending(db, make_schedule, dispatcher):
    store = FakeProductStore({101: 1, 102: 10})
    order = OrderInstantiator(db, store, dispatcher, StaticDirectory()).instantiate(make_schedule(), NOW)

    assert order.status == "pending"
    assert order.notes.endswith("Some items may be out of stock: 101")
    assert store.stock == {101: 1, 102: 10}


def test_exhausted_schedule_is_ended_without_order(db, make_schedule, instantiator):
    s = make_schedule(RecurrencePattern(include_dates=[datetime(2025, 1, 1)]))
    assert instantiator.instantiate(s, NOW) is None
    assert (s.schedule_status, s.next_delivery_at) == ("ended", None)
    assert db.query(Order).count() == 0


def test_last_selected_date_ends_schedule_after_order(make_schedule, instantiator):
    s = make_schedule(RecurrencePattern(selected_dates=[datetime(2025, 1, 10, 9, 0)]))
    order = instantiator.instantiate(s, NOW)
    assert order.estimated_delivery == datetime(2025, 1, 10, 9, 0)
    assert (s.schedule_status, s.next_delivery_at) == ("ended", None)


def test_missing_due_date_uses_now(make_schedule, instantiator):
    s = make_schedule(RecurrencePattern(days_of_week=[5]), next_delivery_at=None)
    order = instantiator.instantiate(s, NOW)
    assert order.estimated_delivery == datetime(2025, 1, 10, 9, 0)


def test_confirmation_is_sent(make_schedule, instantiator, dispatcher):
    order = instantiator.instantiate(make_schedule(), NOW)
    address, summary = dispatcher.sent[0]
    assert address == "alice@example.com"
    assert summary["order_number"] == order.order_number
    assert summary["status"] == "confirmed"


def test_notification_failure_does_not_fail_instantiation(db, make_schedule, store, dispatcher):
    instantiator = OrderInstantiator(db, store, dispatcher, StaticDirectory(fail=True))
    assert instantiator.instantiate(make_schedule(), NOW) is not None
    assert dispatcher.sent == []
    assert db.query(Order).count() == 1


def test_failed_save_returns_reserved_stock(db, make_schedule, instantiator, store, monkeypatch):
    s = make_schedule()

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(PersistenceError):
        instantiator.instantiate(s, NOW)
    assert store.stock == {101: 10, 102: 10}
    assert [l.product_id for l in store.released] == [101, 102]


def test_sql_store_reserves_all_lines_or_none(db):
    db.add_all([Inventory(product_id=1, in_stock=5), Inventory(product_id=2, in_stock=1)])
    db.commit()
    products = SqlProductStore(db)

    assert products.reserve([StockLine(1, 2), StockLine(2, 3)]) is False
    assert (products.find_stock(1), products.find_stock(2)) == (5, 1)

    assert products.reserve([StockLine(1, 2), StockLine(2, 1)]) is True
    db.commit()
    assert (products.find_stock(1), products.find_stock(2)) == (3, 0)


def test_sql_store_missing_product_counts_as_empty(db):
    products = SqlProductStore(db)
    assert products.find_stock(404) == 0
    products.adjust_stock(404, 6)
    db.commit()
    assert products.find_stock(404) == 6


def test_local_inventory_rolls_back_with_failed_order(db, make_schedule, monkeypatch):
    db.add_all([Inventory(product_id=101, in_stock=4), Inventory(product_id=102, in_stock=4)])
    db.commit()
    s = make_schedule()
    instantiator = OrderInstantiator(db, SqlProductStore(db), RecordingDispatcher(), StaticDirectory())

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(PersistenceError):
        instantiator.instantiate(s, NOW)

    assert db.get(Inventory, 101).in_stock == 4
    assert db.query(Order).count() == 0


class GatedDispatcher(RecordingDispatcher):
    """Holds every send until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()
        self.done = threading.Event()

    def send(self, address, order_summary):
        self.gate.wait(5)
        super().send(address, order_summary)
        self.done.set()


def test_slow_notification_does_not_hold_up_the_order(db, make_schedule, store):
    dispatcher = GatedDispatcher()
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        instantiator = OrderInstantiator(db, store, dispatcher, StaticDirectory(), executor=executor)
        order = instantiator.instantiate(make_schedule(), NOW)

        assert order.status == "confirmed"
        assert dispatcher.sent == []

        dispatcher.gate.set()
        assert dispatcher.done.wait(5)
        assert dispatcher.sent[0][1]["order_number"] == order.order_number
    finally:
        dispatcher.gate.set()
        executor.shutdown(wait=True)


def test_shut_down_executor_only_skips_the_notification(db, make_schedule, store, dispatcher):
    executor = ThreadPoolExecutor(max_workers=1)
    executor.shutdown()
    order = OrderInstantiator(db, store, dispatcher, StaticDirectory(), executor=executor).instantiate(make_schedule(), NOW)
    assert order is not None
    assert dispatcher.sent == []


def test_replace_items_reprices_from_products(make_schedule):
    store = FakeProductStore(catalog={
        101: ProductInfo(101, "SKU-101", "Oat milk", 350),
        103: ProductInfo(103, "SKU-103", "Coffee beans", 1200),
    })
    s = make_schedule()
    s.discount_cents = 100

    schedules.replace_items(s, store, [(101, 2), (103, 1)], NOW)

    assert [(it.product_id, it.qty, it.unit_price_cents, it.line_total_cents) for it in s.items] == [
        (101, 2, 350, 700), (103, 1, 1200, 1200),
    ]
    assert s.items[1].title_snapshot == "Coffee beans"
    assert s.subtotal_cents == 1900
    assert s.total_cents == 1900 + 500 - 100


def test_replace_items_never_goes_below_zero(make_schedule):
    store = FakeProductStore(catalog={101: ProductInfo(101, "SKU-101", "Sample", 0)})
    s = make_schedule()
    s.discount_cents = 5000
    schedules.replace_items(s, store, [(101, 1)], NOW)
    assert s.total_cents == 0


def test_replace_items_rejects_unknown_products(make_schedule):
    store = FakeProductStore(catalog={101: ProductInfo(101, "SKU-101", "Oat milk", 350)})
    s = make_schedule()

    with pytest.raises(ProductNotFoundError) as err:
        schedules.replace_items(s, store, [(101, 1), (555, 1), (556, 2)], NOW)

    assert err.value.errors == ["555", "556"]
    assert [it.product_id for it in s.items] == [101, 102]
    assert s.total_cents == 2000


def test_zero_quantity_line_is_rejected_by_the_database(db, make_schedule):
    s = make_schedule()
    db.add(ScheduleItem(schedule_id=s.id, product_id=101, sku="SKU-101", qty=0,
                        unit_price_cents=500, line_total_cents=0, title_snapshot="Product 101"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_sql_store_describes_products(db):
    products = SqlProductStore(db)
    assert products.find_product(7) is None

    products.adjust_stock(7, 3)
    products.describe(7, sku="SKU-7", title="Tea", price_cents=450)
    db.commit()

    assert products.find_product(7) == ProductInfo(7, "SKU-7", "Tea", 450)
    assert products.find_stock(7) == 3
