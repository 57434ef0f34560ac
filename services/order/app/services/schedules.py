"""Schedule lifecycle: ``active``, ``paused`` and ``ended``.

The functions mutate a loaded ``RecurringSchedule`` in place; callers own the
session and commit. ``now`` is always passed in so every transition is
reproducible in tests.
"""
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.errors import ConflictError, ProductNotFoundError, RecurrenceValidationError
from app.core.utils import make_order_number
from app.db.models import OrderStatus, RecurringSchedule, ScheduleItem, ScheduleStatus
from app.recurrence import merge, next_delivery, validate
from app.services.stock import ProductStore

SKIP_INTERVAL = timedelta(days=7)

CUSTOMER_ACTIONS = ("pause", "resume", "end")
ADMIN_ACTIONS = CUSTOMER_ACTIONS + ("force_next_delivery", "skip_next_delivery", "duplicate")


def _touch(schedule: RecurringSchedule, now: datetime) -> None:
    schedule.updated_at = now


def pause(schedule: RecurringSchedule, now: datetime) -> None:
    schedule.schedule_status = ScheduleStatus.PAUSED.value
    _touch(schedule, now)


def resume(schedule: RecurringSchedule, now: datetime) -> bool:
    """Reactivate from ``paused`` or ``ended``. Returns False when nothing is left to deliver."""
    upcoming = next_delivery(schedule.pattern, now)
    schedule.next_delivery_at = upcoming
    schedule.schedule_status = (ScheduleStatus.ACTIVE if upcoming else ScheduleStatus.ENDED).value
    _touch(schedule, now)
    return upcoming is not None


def end(schedule: RecurringSchedule, now: datetime) -> None:
    schedule.schedule_status = ScheduleStatus.ENDED.value
    schedule.next_delivery_at = None
    _touch(schedule, now)


def force_next_delivery(schedule: RecurringSchedule, when: Optional[datetime], now: datetime) -> None:
    # Taken verbatim: no calculator run, no consistency check against the pattern.
    if when is None:
        raise ConflictError("nextDeliveryAt is required for force_next_delivery action")
    schedule.next_delivery_at = when
    _touch(schedule, now)


def skip_next_delivery(schedule: RecurringSchedule, now: datetime) -> None:
    # Fixed weekly step; include/exclude dates are not consulted.
    if not schedule.next_delivery_at or not schedule.days_of_week:
        raise ConflictError("Cannot skip delivery without proper recurrence pattern")
    schedule.next_delivery_at = schedule.next_delivery_at + SKIP_INTERVAL
    _touch(schedule, now)


def edit(
    schedule: RecurringSchedule,
    now: datetime,
    recurrence: Optional[Mapping[str, Any]] = None,
    next_delivery_at: Optional[datetime] = None,
    schedule_status: Optional[str] = None,
) -> None:
    """Apply a customer or admin edit of the recurrence and schedule fields.

    ``recurrence`` holds only the keys the caller supplied; they overwrite the
    stored values one by one and the merged pattern must validate. When the
    recurrence changes without an explicit ``next_delivery_at`` the next date
    is recomputed from ``now``; an exhausted pattern ends the schedule no matter
    which status was requested.
    """
    if schedule_status is not None:
        schedule.schedule_status = ScheduleStatus(schedule_status).value
    if next_delivery_at is not None:
        schedule.next_delivery_at = next_delivery_at

    if recurrence:
        merged = merge(schedule.pattern, recurrence)
        result = validate(merged, now)
        if not result.valid:
            raise RecurrenceValidationError(result.errors)
        schedule.apply_pattern(merged)
        if next_delivery_at is None:
            upcoming = next_delivery(merged, now)
            schedule.next_delivery_at = upcoming
            if upcoming is None:
                schedule.schedule_status = ScheduleStatus.ENDED.value
            elif schedule_status is None:
                schedule.schedule_status = ScheduleStatus.ACTIVE.value
    elif schedule_status == ScheduleStatus.ACTIVE.value and next_delivery_at is None and schedule.next_delivery_at is None:
        upcoming = next_delivery(schedule.pattern, now)
        schedule.next_delivery_at = upcoming
        if upcoming is None:
            schedule.schedule_status = ScheduleStatus.ENDED.value

    if schedule.schedule_status == ScheduleStatus.ENDED.value:
        schedule.next_delivery_at = None
    _touch(schedule, now)


def replace_items(schedule: RecurringSchedule, products: ProductStore, lines: Iterable[Tuple[int, int]], now: datetime) -> None:
    """Swap the schedule lines for ``(product_id, qty)`` pairs priced from current product data.

    Every product must exist before anything changes. Tax, shipping and
    discount are kept; subtotal and total are recomputed from the new lines.
    """
    lines = list(lines)
    found = {pid: products.find_product(pid) for pid, _ in lines}
    missing = [pid for pid, info in found.items() if info is None]
    if missing:
        raise ProductNotFoundError(missing)

    items = []
    for pid, qty in lines:
        info = found[pid]
        items.append(ScheduleItem(
            product_id=pid,
            sku=info.sku,
            qty=qty,
            unit_price_cents=info.price_cents,
            line_total_cents=info.price_cents * qty,
            title_snapshot=info.title,
        ))
    schedule.items = items
    schedule.subtotal_cents = sum(it.line_total_cents for it in items)
    schedule.total_cents = max(
        0, schedule.subtotal_cents + schedule.tax_cents + schedule.shipping_cents - schedule.discount_cents
    )
    _touch(schedule, now)


def duplicate(db: Session, schedule: RecurringSchedule, now: datetime) -> RecurringSchedule:
    """Copy a schedule into a fresh pending one. Consumes no delivery of the source."""
    copy = RecurringSchedule(
        order_number=make_order_number("DUP", now),
        customer_id=schedule.customer_id,
        customer_email=schedule.customer_email,
        status=OrderStatus.PENDING.value,
        is_recurring=True,
        schedule_status=ScheduleStatus.ACTIVE.value,
        next_delivery_at=schedule.next_delivery_at,
        shipping_address=dict(schedule.shipping_address or {}),
        billing_address=dict(schedule.billing_address) if schedule.billing_address else None,
        subtotal_cents=schedule.subtotal_cents,
        tax_cents=schedule.tax_cents,
        shipping_cents=schedule.shipping_cents,
        discount_cents=schedule.discount_cents,
        total_cents=schedule.total_cents,
        currency=schedule.currency,
        payment_method=schedule.payment_method,
        notes=schedule.notes,
        created_at=now,
        updated_at=now,
    )
    copy.apply_pattern(schedule.pattern)
    copy.items = [
        ScheduleItem(
            product_id=it.product_id,
            sku=it.sku,
            qty=it.qty,
            unit_price_cents=it.unit_price_cents,
            line_total_cents=it.line_total_cents,
            title_snapshot=it.title_snapshot,
        )
        for it in schedule.items
    ]
    db.add(copy)
    return copy


def apply_action(schedule: RecurringSchedule, action: str, now: datetime, next_delivery_at: Optional[datetime] = None) -> str:
    """Run one of the in-place PATCH actions and return the operator message."""
    if action == "pause":
        pause(schedule, now)
        return "Recurring order paused successfully"
    if action == "resume":
        if resume(schedule, now):
            return "Recurring order resumed successfully"
        return "Cannot resume: no future delivery dates in recurrence. Please update start/end dates or schedule."
    if action == "end":
        end(schedule, now)
        return "Recurring order ended successfully"
    if action == "force_next_delivery":
        force_next_delivery(schedule, next_delivery_at, now)
        return "Next delivery date updated successfully"
    if action == "skip_next_delivery":
        skip_next_delivery(schedule, now)
        return "Next delivery skipped successfully"
    raise ConflictError(f"Unsupported action: {action}")
