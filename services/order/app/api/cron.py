from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from redis import Redis
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_instantiator, get_now, get_redis
from app.core.config import settings
from app.scheduler.worker import run_locked
from app.schemas import BatchResultOut
from app.services.batch import BatchProcessor
from app.services.instantiator import OrderInstantiator

logger = logging.getLogger(__name__)

router = APIRouter()

def cron_secret(auth: Optional[str] = Header(default=None, alias="Authorization")):
    expected = settings.CRON_SECRET_TOKEN
    if not expected or auth != f"Bearer {expected}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True

@router.get("/v1/cron/recurring-orders", response_model=BatchResultOut)
def run_recurring_orders(_=Depends(cron_secret), db: Session = Depends(get_db), now: datetime = Depends(get_now),
                         instantiator: OrderInstantiator = Depends(get_instantiator), redis: Redis = Depends(get_redis)):
    result = run_locked(BatchProcessor(db, instantiator), now, redis)
    if result is None:
        logger.info("Cron tick skipped, another run holds the lock")
        return BatchResultOut(processed=0, created=0, errors=[], timestamp=now,
                              message="Another recurring order run is in progress")
    return BatchResultOut(
        processed=result.processed, created=result.created, errors=result.errors, timestamp=now,
        message=f"Processed {result.processed} recurring orders, created {result.created} new orders",
    )
