from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.api.deps import get_db
from app.core.auth import ensure_owner_or_admin, get_current_identity
from app.core.errors import NotFoundError
from app.db import models
from app.schemas import OrderOut

router = APIRouter()

@router.get("/v1/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    obj = db.get(models.Order, order_id)
    if not obj:
        raise NotFoundError("Order not found")
    ensure_owner_or_admin(obj.customer_id, identity)
    return obj
