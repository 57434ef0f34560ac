from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from app.api.deps import get_db, get_products
from app.core.auth import admin_or_internal
from app.services.stock import ProductStore, SqlProductStore

router = APIRouter()

class Item(BaseModel):
    product_id: int
    qty: int = Field(gt=0)
    # product fields kept by the local store; the catalog owns its own
    sku: Optional[str] = Field(default=None, max_length=64)
    title: Optional[str] = Field(default=None, max_length=255)
    price_cents: Optional[int] = Field(default=None, ge=0)

class ItemsReq(BaseModel):
    items: List[Item] = Field(min_length=1)

@router.get("/v1/inventory/{product_id}")
def get_stock(product_id: int, products: ProductStore = Depends(get_products), _=Depends(admin_or_internal)):
    return {"product_id": product_id, "in_stock": products.find_stock(product_id)}

@router.post("/v1/inventory/restock")
def restock(req: ItemsReq, db: Session = Depends(get_db), products: ProductStore = Depends(get_products),
            _=Depends(admin_or_internal)):
    for it in req.items:
        products.adjust_stock(it.product_id, it.qty)
        if isinstance(products, SqlProductStore):
            products.describe(it.product_id, sku=it.sku, title=it.title, price_cents=it.price_cents)
    db.commit()
    return {"status": "restocked", "items": [{"product_id": it.product_id, "in_stock": products.find_stock(it.product_id)} for it in req.items]}
