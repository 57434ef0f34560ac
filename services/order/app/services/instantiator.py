from concurrent.futures import Executor
from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import PersistenceError
from app.core.utils import make_order_number
from app.db.models import Order, OrderItem, OrderStatus, RecurringSchedule, ScheduleStatus
from app.recurrence import next_delivery
from app.services import schedules
from app.services.notifications import CustomerDirectory, NotificationDispatcher, get_executor
from app.services.stock import ProductStore, StockLine

logger = logging.getLogger(__name__)


class OrderInstantiator:
    """Turns one due schedule into a concrete, stock-checked order."""

    def __init__(self, db: Session, products: ProductStore, notifier: NotificationDispatcher,
                 directory: Optional[CustomerDirectory] = None, executor: Optional[Executor] = None):
        self.db = db
        self.products = products
        self.notifier = notifier
        self.directory = directory or CustomerDirectory()
        self.executor = executor or get_executor()

    def instantiate(self, schedule: RecurringSchedule, now: datetime) -> Optional[Order]:
        if not schedule.is_recurring or schedule.schedule_status != ScheduleStatus.ACTIVE.value:
            return None

        pattern = schedule.pattern
        delivery = next_delivery(pattern, schedule.next_delivery_at or now)
        if delivery is None:
            schedules.end(schedule, now)
            self._release_claim(schedule)
            self._commit()
            logger.info("Schedule %s has no deliveries left and was ended", schedule.id)
            return None

        short = [it.product_id for it in schedule.items if self.products.find_stock(it.product_id) < it.qty]
        lines = [StockLine(it.product_id, it.qty) for it in schedule.items]
        reserved = False
        if not short:
            reserved = self.products.reserve(lines)
            if not reserved:
                short = [l.product_id for l in lines]

        try:
            order = self._build_instance(schedule, delivery, now, confirmed=reserved, short=short)
            following = next_delivery(pattern, delivery)
            schedule.next_delivery_at = following
            schedule.schedule_status = (ScheduleStatus.ACTIVE if following else ScheduleStatus.ENDED).value
            schedule.updated_at = now
            self._release_claim(schedule)
            self.db.add(order)
            self._commit()
        except Exception:
            if reserved and not self.products.transactional:
                logger.warning("Returning reserved stock for schedule %s after failed save", schedule.id)
                self.products.release(lines)
            raise
        self.db.refresh(order)

        logger.info("Schedule %s produced order %s (%s)", schedule.id, order.order_number, order.status)
        self._notify(schedule, order)
        return order

    def _build_instance(self, schedule: RecurringSchedule, delivery: datetime, now: datetime, confirmed: bool, short: List[int]) -> Order:
        if short:
            notes = "Auto-generated from recurring order. Some items may be out of stock: " + ", ".join(str(p) for p in short)
        else:
            notes = "Auto-generated from recurring order"
        return Order(
            order_number=make_order_number("AUTO", now),
            schedule_id=schedule.id,
            customer_id=schedule.customer_id,
            user_email=schedule.customer_email or "",
            status=(OrderStatus.CONFIRMED if confirmed else OrderStatus.PENDING).value,
            shipping_address=dict(schedule.shipping_address or {}),
            billing_address=dict(schedule.billing_address) if schedule.billing_address else None,
            subtotal_cents=schedule.subtotal_cents,
            tax_cents=schedule.tax_cents,
            shipping_cents=schedule.shipping_cents,
            discount_cents=schedule.discount_cents,
            total_cents=schedule.total_cents,
            currency=schedule.currency,
            payment_method=schedule.payment_method,
            estimated_delivery=delivery,
            notes=notes,
            created_at=now,
            updated_at=now,
            items=[
                OrderItem(
                    product_id=it.product_id,
                    sku=it.sku,
                    qty=it.qty,
                    unit_price_cents=it.unit_price_cents,
                    line_total_cents=it.line_total_cents,
                    title_snapshot=it.title_snapshot,
                )
                for it in schedule.items
            ],
        )

    def _release_claim(self, schedule: RecurringSchedule) -> None:
        schedule.claim_token = None
        schedule.claimed_at = None

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Could not save recurring order: {exc}") from exc

    def _notify(self, schedule: RecurringSchedule, order: Order) -> None:
        # read everything here; ORM objects stay on this thread
        summary = {
            "order_id": order.id,
            "order_number": order.order_number,
            "schedule_id": schedule.id,
            "amount_cents": order.total_cents,
            "currency": order.currency,
            "status": order.status,
        }
        try:
            self.executor.submit(self._deliver, schedule.customer_id, schedule.customer_email, summary)
        except RuntimeError:
            logger.warning("Notification executor is shut down, order %s not announced", order.order_number)

    def _deliver(self, customer_id: str, customer_email: str, summary: dict) -> None:
        try:
            address = self.directory.contact_address(customer_id, customer_email)
            if not address:
                logger.info("No contact address for customer %s, order %s not announced", customer_id, summary["order_number"])
                return
            self.notifier.send(address, summary)
        except Exception:
            logger.warning("Recurring order notification failed for order %s", summary["order_number"], exc_info=True)
