from fastapi import Depends
from redis import Redis
from sqlalchemy.orm import Session
from app.db.session import SessionLocal
from app.core.utils import now_utc
from app.scheduler.worker import redis_client
from app.services.instantiator import OrderInstantiator
from app.services.notifications import get_dispatcher
from app.services.stock import ProductStore, get_product_store

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_now():
    return now_utc()

def get_redis() -> Redis:
    return redis_client()

def get_products(db: Session = Depends(get_db)) -> ProductStore:
    return get_product_store(db)

def get_instantiator(db: Session = Depends(get_db), products: ProductStore = Depends(get_products)) -> OrderInstantiator:
    return OrderInstantiator(db, products, get_dispatcher())
