from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from app.db.models import AuditLog, RecurringSchedule

def snapshot(s: RecurringSchedule) -> dict:
    """JSON-safe copy of the fields an operator can change."""
    def iso(v: Optional[datetime]): return v.isoformat() if v else None
    return {
        "id": s.id,
        "order_number": s.order_number,
        "customer_id": s.customer_id,
        "status": s.status,
        "is_recurring": s.is_recurring,
        "schedule_status": s.schedule_status,
        "next_delivery_at": iso(s.next_delivery_at),
        "recurrence": {
            "start_date": iso(s.start_date),
            "end_date": iso(s.end_date),
            "days_of_week": list(s.days_of_week or []),
            "include_dates": list(s.include_dates or []),
            "exclude_dates": list(s.exclude_dates or []),
            "selected_dates": list(s.selected_dates or []),
            "notes": s.recurrence_notes,
        },
        "shipping_address": s.shipping_address,
        "billing_address": s.billing_address,
        "items": [{"product_id": it.product_id, "qty": it.qty, "unit_price_cents": it.unit_price_cents} for it in s.items],
        "subtotal_cents": s.subtotal_cents,
        "total_cents": s.total_cents,
        "notes": s.notes,
    }

def record(db: Session, actor: str, action: str, entity_id, before: Optional[dict], after: Optional[dict]) -> AuditLog:
    """Stage an audit row; it is committed with the caller's change."""
    entry = AuditLog(actor=actor, action=action, entity_id=str(entity_id), before=before, after=after)
    db.add(entry)
    return entry
