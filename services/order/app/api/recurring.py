from datetime import datetime
from typing import Literal, Optional
import math

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_now, get_products
from app.core.auth import ensure_owner_or_admin, get_current_identity, is_admin
from app.core.errors import ConflictError, NotFoundError, RecurrenceValidationError
from app.core.utils import make_order_number
from app.db import models
from app.recurrence import RecurrencePattern, merge, next_delivery, validate
from app.schemas import CreateRecurring, CustomerAction, Pagination, ScheduleList, ScheduleOut, ScheduleResponse, UpdateRecurring
from app.services import audit, schedules
from app.services.stock import ProductStore

router = APIRouter()

SORT_COLUMNS = {
    "created_at": models.RecurringSchedule.created_at,
    "next_delivery_at": models.RecurringSchedule.next_delivery_at,
    "updated_at": models.RecurringSchedule.updated_at,
    "order_number": models.RecurringSchedule.order_number,
}

def load_schedule(db: Session, schedule_id: int) -> models.RecurringSchedule:
    obj = db.get(models.RecurringSchedule, schedule_id)
    if not obj:
        raise NotFoundError("Recurring order not found")
    if not obj.is_recurring:
        raise ConflictError("Order is not a recurring order")
    return obj

def paginate(db: Session, stmt, page: int, limit: int, sort_by: str, sort_order: str):
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    col = SORT_COLUMNS[sort_by]
    stmt = stmt.order_by(col.asc() if sort_order == "asc" else col.desc())
    rows = db.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    total_pages = math.ceil(total / limit) if total else 0
    return rows, Pagination(page=page, limit=limit, total=total, total_pages=total_pages, has_next=page < total_pages, has_prev=page > 1)

def respond(obj: models.RecurringSchedule, message: str) -> ScheduleResponse:
    return ScheduleResponse(data=ScheduleOut.model_validate(obj), message=message)

@router.get("/v1/recurring", response_model=ScheduleList)
def list_my_schedules(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[Literal["active", "paused", "ended"]] = None,
    sort_by: Literal["created_at", "next_delivery_at", "updated_at"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    stmt = select(models.RecurringSchedule).where(
        models.RecurringSchedule.customer_id == str(identity.get("sub")),
        models.RecurringSchedule.is_recurring.is_(True),
    )
    if status:
        stmt = stmt.where(models.RecurringSchedule.schedule_status == status)
    rows, pagination = paginate(db, stmt, page, limit, sort_by, sort_order)
    return ScheduleList(orders=[ScheduleOut.model_validate(r) for r in rows], pagination=pagination)

@router.post("/v1/recurring", response_model=ScheduleResponse, status_code=201)
def create_schedule(payload: CreateRecurring, identity: dict = Depends(get_current_identity),
                    db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    source = db.get(models.Order, payload.source_order_id)
    if not source:
        raise NotFoundError("Source order not found")
    ensure_owner_or_admin(source.customer_id, identity)

    pattern = merge(RecurrencePattern(), payload.recurrence.changes())
    result = validate(pattern, now)
    if not result.valid:
        raise RecurrenceValidationError(result.errors)

    upcoming = payload.next_delivery_at or next_delivery(pattern, now)
    status = payload.schedule_status if upcoming else "ended"
    subject = str(identity.get("sub"))
    obj = models.RecurringSchedule(
        order_number=make_order_number("REC", now),
        customer_id=source.customer_id,
        customer_email=source.user_email or (subject if "@" in subject else ""),
        status=models.OrderStatus.PENDING.value,
        is_recurring=payload.is_recurring,
        schedule_status=status,
        next_delivery_at=upcoming if status != "ended" else None,
        shipping_address=dict(source.shipping_address or {}),
        billing_address=dict(source.billing_address) if source.billing_address else None,
        subtotal_cents=source.subtotal_cents,
        tax_cents=source.tax_cents,
        shipping_cents=source.shipping_cents,
        discount_cents=source.discount_cents,
        total_cents=source.total_cents,
        currency=source.currency,
        payment_method=source.payment_method,
        notes=source.notes or "",
        created_at=now,
        updated_at=now,
        items=[
            models.ScheduleItem(
                product_id=it.product_id,
                sku=it.sku,
                qty=it.qty,
                unit_price_cents=it.unit_price_cents,
                line_total_cents=it.line_total_cents,
                title_snapshot=it.title_snapshot,
            )
            for it in source.items
        ],
    )
    obj.apply_pattern(pattern)
    db.add(obj); db.flush()
    audit.record(db, subject, "create", obj.id, None, audit.snapshot(obj))
    db.commit(); db.refresh(obj)
    return respond(obj, "Recurring order created successfully")

@router.get("/v1/recurring/{schedule_id}", response_model=ScheduleOut)
def get_schedule(schedule_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    obj = load_schedule(db, schedule_id)
    ensure_owner_or_admin(obj.customer_id, identity)
    return ScheduleOut.model_validate(obj)

@router.put("/v1/recurring/{schedule_id}", response_model=ScheduleResponse)
def update_schedule(schedule_id: int, payload: UpdateRecurring, identity: dict = Depends(get_current_identity),
                    db: Session = Depends(get_db), now: datetime = Depends(get_now),
                    products: ProductStore = Depends(get_products)):
    obj = load_schedule(db, schedule_id)
    ensure_owner_or_admin(obj.customer_id, identity)
    before = audit.snapshot(obj)

    if payload.is_recurring is not None:
        obj.is_recurring = payload.is_recurring
    if payload.shipping_address is not None:
        obj.shipping_address = payload.shipping_address.model_dump(exclude_none=True)
    if payload.notes is not None:
        obj.notes = payload.notes
    if payload.items is not None:
        schedules.replace_items(obj, products, [(it.product_id, it.qty) for it in payload.items], now)
    schedules.edit(
        obj, now,
        recurrence=payload.recurrence.changes() if payload.recurrence else None,
        next_delivery_at=payload.next_delivery_at,
        schedule_status=payload.schedule_status,
    )
    audit.record(db, str(identity.get("sub")), "update", obj.id, before, audit.snapshot(obj))
    db.commit(); db.refresh(obj)
    return respond(obj, "Recurring order updated successfully")

@router.delete("/v1/recurring/{schedule_id}")
def delete_schedule(schedule_id: int, identity: dict = Depends(get_current_identity),
                    db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    obj = load_schedule(db, schedule_id)
    ensure_owner_or_admin(obj.customer_id, identity)
    before = audit.snapshot(obj)
    actor = str(identity.get("sub"))

    if not is_admin(identity):
        # customers can only stop a schedule, never remove it
        schedules.end(obj, now)
        audit.record(db, actor, "end", obj.id, before, audit.snapshot(obj))
        db.commit(); db.refresh(obj)
        return respond(obj, "Recurring order schedule ended successfully")

    db.delete(obj)
    audit.record(db, actor, "delete", schedule_id, before, None)
    db.commit()
    return {"success": True, "message": "Recurring order deleted successfully"}

@router.patch("/v1/recurring/{schedule_id}", response_model=ScheduleResponse)
def schedule_action(schedule_id: int, payload: CustomerAction, identity: dict = Depends(get_current_identity),
                    db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    obj = load_schedule(db, schedule_id)
    ensure_owner_or_admin(obj.customer_id, identity)
    before = audit.snapshot(obj)
    message = schedules.apply_action(obj, payload.action, now)
    audit.record(db, str(identity.get("sub")), payload.action, obj.id, before, audit.snapshot(obj))
    db.commit(); db.refresh(obj)
    return respond(obj, message)
