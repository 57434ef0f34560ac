from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from redis import Redis
from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_instantiator, get_now, get_products, get_redis
from app.api.recurring import load_schedule, paginate, respond
from app.core.auth import require_admin
from app.core.errors import NotFoundError
from app.db import models
from app.recurrence.pattern import as_naive_utc
from app.scheduler.worker import run_locked
from app.schemas import (AdminAction, AdminUpdateRecurring, BatchResultOut, BulkAction, OrderSummary,
                         ScheduleDetail, ScheduleList, ScheduleOut, ScheduleResponse)
from app.services import audit, schedules
from app.services.batch import BatchProcessor
from app.services.instantiator import OrderInstantiator
from app.services.stock import ProductStore

router = APIRouter()

RELATED_LIMIT = 5
UPCOMING_LIMIT = 10

def recurring_analytics(db: Session) -> dict:
    S = models.RecurringSchedule
    row = db.execute(
        select(
            func.count(S.id),
            func.sum(case((S.schedule_status == "active", 1), else_=0)),
            func.sum(case((S.schedule_status == "paused", 1), else_=0)),
            func.sum(case((S.schedule_status == "ended", 1), else_=0)),
            func.sum(S.total_cents),
            func.avg(S.total_cents),
        ).where(S.is_recurring.is_(True))
    ).one()
    return {
        "total": int(row[0] or 0),
        "active": int(row[1] or 0),
        "paused": int(row[2] or 0),
        "ended": int(row[3] or 0),
        "total_value_cents": int(row[4] or 0),
        "avg_order_value_cents": round(float(row[5] or 0), 2),
    }

@router.get("/v1/admin/recurring", response_model=ScheduleList)
def list_schedules(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[Literal["active", "paused", "ended"]] = None,
    customer_id: Optional[str] = None,
    order_status: Optional[Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]] = None,
    sort_by: Literal["created_at", "next_delivery_at", "updated_at", "order_number"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    S = models.RecurringSchedule
    stmt = select(S).where(S.is_recurring.is_(True))
    if status: stmt = stmt.where(S.schedule_status == status)
    if customer_id: stmt = stmt.where(S.customer_id == customer_id)
    if order_status: stmt = stmt.where(S.status == order_status)
    if date_from: stmt = stmt.where(S.created_at >= as_naive_utc(date_from))
    if date_to: stmt = stmt.where(S.created_at <= as_naive_utc(date_to))
    if search:
        like = f"%{search.lower()}%"
        stmt = stmt.where(or_(func.lower(S.order_number).like(like), func.lower(S.notes).like(like), func.lower(S.customer_email).like(like)))
    rows, pagination = paginate(db, stmt, page, limit, sort_by, sort_order)
    return ScheduleList(orders=[ScheduleOut.model_validate(r) for r in rows], pagination=pagination, analytics=recurring_analytics(db))

@router.get("/v1/admin/recurring/stats")
def schedule_stats(_=Depends(require_admin), db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    S = models.RecurringSchedule
    upcoming = db.execute(
        select(S).where(S.is_recurring.is_(True), S.schedule_status == "active", S.next_delivery_at >= now)
        .order_by(S.next_delivery_at).limit(UPCOMING_LIMIT)
    ).scalars().all()
    return {
        **recurring_analytics(db),
        "next_deliveries": [
            {"id": s.id, "order_number": s.order_number, "customer_id": s.customer_id,
             "next_delivery_at": s.next_delivery_at, "total_cents": s.total_cents}
            for s in upcoming
        ],
    }

@router.post("/v1/admin/recurring/process", response_model=BatchResultOut)
def process_now(_=Depends(require_admin), db: Session = Depends(get_db), now: datetime = Depends(get_now),
                instantiator: OrderInstantiator = Depends(get_instantiator), redis: Redis = Depends(get_redis)):
    result = run_locked(BatchProcessor(db, instantiator), now, redis)
    if result is None:
        raise HTTPException(status_code=409, detail="A recurring order run is already in progress")
    return BatchResultOut(
        processed=result.processed, created=result.created, errors=result.errors, timestamp=now,
        message=f"Manually processed {result.processed} recurring orders, created {result.created} new orders",
    )

@router.post("/v1/admin/recurring/bulk")
def bulk_action(payload: BulkAction, identity: dict = Depends(require_admin),
                db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    S = models.RecurringSchedule
    rows = db.execute(select(S).where(S.id.in_(payload.ids), S.is_recurring.is_(True))).scalars().all()
    if len(rows) != len(set(payload.ids)):
        raise NotFoundError("Some orders were not found or are not recurring orders")
    for obj in rows:
        before = audit.snapshot(obj)
        if payload.action == "delete":
            db.delete(obj)
            audit.record(db, str(identity.get("sub")), "bulk_delete", obj.id, before, None)
            continue
        schedules.apply_action(obj, payload.action, now)
        audit.record(db, str(identity.get("sub")), f"bulk_{payload.action}", obj.id, before, audit.snapshot(obj))
    db.commit()
    return {"success": True, "message": f"Bulk {payload.action} completed successfully", "affected": len(rows)}

@router.get("/v1/admin/recurring/{schedule_id}", response_model=ScheduleDetail)
def get_schedule(schedule_id: int, _=Depends(require_admin), db: Session = Depends(get_db)):
    obj = load_schedule(db, schedule_id)
    related = db.execute(
        select(models.Order).where(models.Order.schedule_id == obj.id)
        .order_by(models.Order.created_at.desc(), models.Order.id.desc()).limit(RELATED_LIMIT)
    ).scalars().all()
    return ScheduleDetail(order=ScheduleOut.model_validate(obj), related_orders=[OrderSummary.model_validate(o) for o in related])

@router.put("/v1/admin/recurring/{schedule_id}", response_model=ScheduleResponse)
def update_schedule(schedule_id: int, payload: AdminUpdateRecurring, identity: dict = Depends(require_admin),
                    db: Session = Depends(get_db), now: datetime = Depends(get_now),
                    products: ProductStore = Depends(get_products)):
    obj = load_schedule(db, schedule_id)
    before = audit.snapshot(obj)

    # explicit money fields below still win over the recomputed totals
    if payload.items is not None:
        schedules.replace_items(obj, products, [(it.product_id, it.qty) for it in payload.items], now)

    for field in ("status", "customer_id", "customer_email", "notes", "is_recurring",
                  "subtotal_cents", "tax_cents", "shipping_cents", "discount_cents", "total_cents"):
        value = getattr(payload, field)
        if value is not None:
            setattr(obj, field, value)
    # partial addresses are merged onto the stored ones
    if payload.shipping_address is not None:
        obj.shipping_address = {**(obj.shipping_address or {}), **payload.shipping_address.model_dump(exclude_none=True)}
    if payload.billing_address is not None:
        obj.billing_address = {**(obj.billing_address or {}), **payload.billing_address.model_dump(exclude_none=True)}

    schedules.edit(
        obj, now,
        recurrence=payload.recurrence.changes() if payload.recurrence else None,
        next_delivery_at=payload.next_delivery_at,
        schedule_status=payload.schedule_status,
    )
    audit.record(db, str(identity.get("sub")), "update", obj.id, before, audit.snapshot(obj))
    db.commit(); db.refresh(obj)
    return respond(obj, "Recurring order updated successfully")

@router.delete("/v1/admin/recurring/{schedule_id}")
def delete_schedule(schedule_id: int, identity: dict = Depends(require_admin), db: Session = Depends(get_db)):
    obj = load_schedule(db, schedule_id)
    audit.record(db, str(identity.get("sub")), "delete", schedule_id, audit.snapshot(obj), None)
    db.delete(obj); db.commit()
    return {"success": True, "message": "Recurring order deleted successfully"}

@router.patch("/v1/admin/recurring/{schedule_id}", response_model=ScheduleResponse)
def admin_action(schedule_id: int, payload: AdminAction, identity: dict = Depends(require_admin),
                 db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    obj = load_schedule(db, schedule_id)
    before = audit.snapshot(obj)
    actor = str(identity.get("sub"))

    if payload.action == "duplicate":
        copy = schedules.duplicate(db, obj, now)
        db.flush()
        audit.record(db, actor, "duplicate", obj.id, before, audit.snapshot(copy))
        db.commit(); db.refresh(copy)
        return respond(copy, "Recurring order duplicated successfully")

    message = schedules.apply_action(obj, payload.action, now, next_delivery_at=payload.next_delivery_at)
    audit.record(db, actor, payload.action, obj.id, before, audit.snapshot(obj))
    db.commit(); db.refresh(obj)
    return respond(obj, message)
