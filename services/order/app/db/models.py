from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, BigInteger, Boolean, JSON, CheckConstraint
from datetime import datetime
from enum import Enum
from typing import Optional
from app.db.session import Base
from app.recurrence.pattern import RecurrencePattern, parse_dates, format_dates

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"

class Order(Base):
    """One materialized delivery. Immutable snapshot once created."""
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    schedule_id: Mapped[Optional[int]] = mapped_column(ForeignKey("recurring_schedules.id", ondelete="SET NULL"), nullable=True, index=True)
    customer_id: Mapped[str] = mapped_column(String(255), index=True)
    user_email: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(16), default=OrderStatus.PENDING.value)
    shipping_address: Mapped[dict] = mapped_column(JSON, default=dict)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payment_method: Mapped[str] = mapped_column(String(32), default="")
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=lambda: datetime.utcnow())
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=lambda: datetime.utcnow())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    schedule = relationship("RecurringSchedule", back_populates="instances")

class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("qty >= 1", name="ck_order_items_qty_positive"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"))
    product_id: Mapped[int] = mapped_column(Integer)
    sku: Mapped[str] = mapped_column(String(64), default="")
    qty: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger)
    line_total_cents: Mapped[int] = mapped_column(BigInteger)
    title_snapshot: Mapped[str] = mapped_column(String(255))

    order = relationship("Order", back_populates="items")

class RecurringSchedule(Base):
    """The durable recurrence definition a delivery is materialized from."""
    __tablename__ = "recurring_schedules"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    customer_id: Mapped[str] = mapped_column(String(255), index=True)
    customer_email: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(16), default=OrderStatus.PENDING.value)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=True)
    schedule_status: Mapped[str] = mapped_column(String(16), default=ScheduleStatus.ACTIVE.value, index=True)
    next_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True, index=True)

    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    days_of_week: Mapped[list] = mapped_column(JSON, default=list)
    include_dates: Mapped[list] = mapped_column(JSON, default=list)  # ISO strings
    exclude_dates: Mapped[list] = mapped_column(JSON, default=list)
    selected_dates: Mapped[list] = mapped_column(JSON, default=list)
    recurrence_notes: Mapped[str] = mapped_column(String(1000), default="")

    shipping_address: Mapped[dict] = mapped_column(JSON, default=dict)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payment_method: Mapped[str] = mapped_column(String(32), default="")
    notes: Mapped[str] = mapped_column(Text, default="")

    # Single-writer claim held by a batch worker while it materializes a delivery
    claim_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=lambda: datetime.utcnow())
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=lambda: datetime.utcnow())

    items = relationship("ScheduleItem", back_populates="schedule", cascade="all, delete-orphan", order_by="ScheduleItem.id")
    instances = relationship("Order", back_populates="schedule")

    @property
    def pattern(self) -> RecurrencePattern:
        return RecurrencePattern(
            start_date=self.start_date,
            end_date=self.end_date,
            days_of_week=list(self.days_of_week or []),
            include_dates=parse_dates(self.include_dates),
            exclude_dates=parse_dates(self.exclude_dates),
            selected_dates=parse_dates(self.selected_dates),
            notes=self.recurrence_notes or None,
        )

    def apply_pattern(self, p: RecurrencePattern) -> None:
        self.start_date = p.start_date
        self.end_date = p.end_date
        self.days_of_week = list(p.days_of_week)
        self.include_dates = format_dates(p.include_dates)
        self.exclude_dates = format_dates(p.exclude_dates)
        self.selected_dates = format_dates(p.selected_dates)
        self.recurrence_notes = p.notes or ""

class ScheduleItem(Base):
    __tablename__ = "schedule_items"
    __table_args__ = (CheckConstraint("qty >= 1", name="ck_schedule_items_qty_positive"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("recurring_schedules.id", ondelete="CASCADE"))
    product_id: Mapped[int] = mapped_column(Integer)
    sku: Mapped[str] = mapped_column(String(64), default="")
    qty: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger)
    line_total_cents: Mapped[int] = mapped_column(BigInteger)
    title_snapshot: Mapped[str] = mapped_column(String(255))

    schedule = relationship("RecurringSchedule", back_populates="items")

class Inventory(Base):
    __tablename__ = "inventory"
    product_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    in_stock: Mapped[int] = mapped_column(Integer, default=0)
    # product fields the local store prices item edits with
    sku: Mapped[str] = mapped_column(String(64), default="")
    title: Mapped[str] = mapped_column(String(255), default="")
    price_cents: Mapped[int] = mapped_column(BigInteger, default=0)

class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    actor: Mapped[str] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(64))
    entity: Mapped[str] = mapped_column(String(64), default="recurring_schedule")
    entity_id: Mapped[str] = mapped_column(String(255), index=True)
    before: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    after: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=lambda: datetime.utcnow())
