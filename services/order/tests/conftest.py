import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("RECURRING_WORKER_ENABLED", "false")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("CRON_SECRET_TOKEN", "test-cron-token")

from concurrent.futures import Executor, Future
from datetime import datetime, timedelta
from typing import Dict, List

import jwt
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.errors import NotificationError
from app.db.models import RecurringSchedule, ScheduleItem
from app.db.session import Base
from app.recurrence import RecurrencePattern
from app.services import notifications
from app.services.notifications import NotificationDispatcher
from app.services.stock import ProductInfo, ProductStore

# 2025-01-08 is a Wednesday
NOW = datetime(2025, 1, 8, 9, 0)


class FakeProductStore(ProductStore):
    """In-memory stock that is not part of the database transaction."""

    def __init__(self, stock: Dict[int, int] = None, broken: List[int] = (), catalog: Dict[int, ProductInfo] = None):
        self.stock = dict(stock or {})
        self.catalog = dict(catalog or {})
        self.broken = set(broken)
        self.released = []

    def find_stock(self, product_id: int) -> int:
        if product_id in self.broken:
            raise RuntimeError(f"stock lookup failed for {product_id}")
        return self.stock.get(product_id, 0)

    def find_product(self, product_id: int):
        return self.catalog.get(product_id)

    def adjust_stock(self, product_id: int, delta: int) -> None:
        self.stock[product_id] = self.stock.get(product_id, 0) + delta

    def reserve(self, lines) -> bool:
        if any(self.stock.get(l.product_id, 0) < l.qty for l in lines):
            return False
        for l in lines:
            self.stock[l.product_id] -= l.qty
        return True

    def release(self, lines) -> None:
        self.released.extend(lines)
        super().release(lines)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent = []

    def send(self, address: str, order_summary: dict) -> None:
        self.sent.append((address, order_summary))


class StaticDirectory:
    def __init__(self, fail: bool = False):
        self.fail = fail

    def contact_address(self, customer_id: str, customer_email: str = ""):
        if self.fail:
            raise NotificationError("directory down")
        return customer_email or customer_id


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class FakeLock:
    def __init__(self, free: bool):
        self.free = free
        self.released = False

    def acquire(self, blocking=True):
        return self.free

    def release(self):
        self.released = True


class FakeRedis:
    def __init__(self, free: bool = True):
        self.last_lock = FakeLock(free)

    def lock(self, name, timeout=None, blocking=True):
        return self.last_lock


class DownLock:
    def acquire(self, blocking=True):
        raise RedisConnectionError("Error 111 connecting to redis:6379. Connection refused.")

    def release(self):
        raise AssertionError("release called on a lock that was never taken")


class DownRedis:
    def lock(self, name, timeout=None, blocking=True):
        return DownLock()


@pytest.fixture(autouse=True)
def inline_notifications(monkeypatch):
    monkeypatch.setattr(notifications, "_executor", InlineExecutor())


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def store():
    return FakeProductStore({101: 10, 102: 10})


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_schedule(db):
    counter = {"n": 0}

    def factory(pattern: RecurrencePattern = None, next_delivery_at=NOW, items=((101, 2), (102, 1)), **fields):
        counter["n"] += 1
        schedule = RecurringSchedule(
            order_number=f"REC-{counter['n']}",
            customer_id=fields.pop("customer_id", "alice@example.com"),
            customer_email=fields.pop("customer_email", "alice@example.com"),
            status="pending",
            is_recurring=fields.pop("is_recurring", True),
            schedule_status=fields.pop("schedule_status", "active"),
            next_delivery_at=next_delivery_at,
            shipping_address={"name": "Alice", "city": "Leeds"},
            subtotal_cents=1500,
            tax_cents=0,
            shipping_cents=500,
            discount_cents=0,
            total_cents=2000,
            currency="USD",
            payment_method="card",
            notes="",
            created_at=NOW - timedelta(days=30),
            updated_at=NOW - timedelta(days=30),
            items=[
                ScheduleItem(product_id=pid, sku=f"SKU-{pid}", qty=qty, unit_price_cents=500,
                             line_total_cents=500 * qty, title_snapshot=f"Product {pid}")
                for pid, qty in items
            ],
            **fields,
        )
        schedule.apply_pattern(pattern or RecurrencePattern(days_of_week=[3]))
        db.add(schedule)
        db.commit()
        return schedule

    return factory


def token_for(sub: str, role: str = "customer") -> str:
    return jwt.encode({"sub": sub, "role": role, "type": "access"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def customer_headers():
    return {"Authorization": f"Bearer {token_for('alice@example.com')}"}


@pytest.fixture
def other_headers():
    return {"Authorization": f"Bearer {token_for('bob@example.com')}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {token_for('ops@example.com', 'admin')}"}
