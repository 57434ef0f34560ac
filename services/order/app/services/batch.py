from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
import logging
import secrets

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import RecurringSchedule, ScheduleStatus
from app.services.instantiator import OrderInstantiator
from app.services.notifications import get_dispatcher
from app.services.stock import get_product_store

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    processed: int = 0
    created: int = 0
    errors: List[str] = field(default_factory=list)


class BatchProcessor:
    """Materializes every schedule in the due window, one at a time.

    A schedule is claimed with a conditional update before it is worked on, so
    two overlapping runs cannot fire the same delivery. A failure is recorded
    against its schedule and the run moves on; the schedule stays due.
    """

    def __init__(self, db: Session, instantiator: OrderInstantiator, claim_lease_seconds: int = settings.CLAIM_LEASE_SECONDS):
        self.db = db
        self.instantiator = instantiator
        self.claim_lease = timedelta(seconds=claim_lease_seconds)

    def due_schedules(self, now: datetime):
        stmt = (
            select(RecurringSchedule.id, RecurringSchedule.next_delivery_at)
            .where(
                RecurringSchedule.is_recurring.is_(True),
                RecurringSchedule.schedule_status == ScheduleStatus.ACTIVE.value,
                RecurringSchedule.next_delivery_at <= now,
            )
            .order_by(RecurringSchedule.next_delivery_at, RecurringSchedule.id)
        )
        return self.db.execute(stmt).all()

    def claim(self, schedule_id: int, seen: datetime, now: datetime) -> Optional[RecurringSchedule]:
        token = secrets.token_hex(8)
        res = self.db.execute(
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule_id,
                RecurringSchedule.schedule_status == ScheduleStatus.ACTIVE.value,
                RecurringSchedule.next_delivery_at == seen,
                or_(RecurringSchedule.claimed_at.is_(None), RecurringSchedule.claimed_at < now - self.claim_lease),
            )
            .values(claim_token=token, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if res.rowcount != 1:
            return None
        schedule = self.db.get(RecurringSchedule, schedule_id)
        if schedule is None or schedule.claim_token != token:
            return None
        return schedule

    def release(self, schedule_id: int) -> None:
        self.db.execute(
            update(RecurringSchedule)
            .where(RecurringSchedule.id == schedule_id)
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def process_due_schedules(self, now: datetime) -> BatchResult:
        result = BatchResult()
        try:
            due = self.due_schedules(now)
        except Exception as exc:
            logger.exception("Could not load due recurring schedules")
            result.errors.append(f"General error: {exc}")
            return result

        for schedule_id, seen in due:
            result.processed += 1
            try:
                schedule = self.claim(schedule_id, seen, now)
                if schedule is None:
                    logger.info("Schedule %s is claimed by another run, skipping", schedule_id)
                    continue
                if self.instantiator.instantiate(schedule, now) is not None:
                    result.created += 1
            except Exception as exc:
                logger.exception("Recurring schedule %s failed", schedule_id)
                result.errors.append(f"{schedule_id}: {exc}")
                self.db.rollback()
                try:
                    self.release(schedule_id)
                except Exception:
                    # An expired lease frees it on a later tick.
                    logger.exception("Could not release claim on schedule %s", schedule_id)
                    self.db.rollback()

        logger.info("Recurring run at %s: processed=%d created=%d errors=%d", now.isoformat(), result.processed, result.created, len(result.errors))
        return result


def build_batch(db: Session) -> BatchProcessor:
    instantiator = OrderInstantiator(db, get_product_store(db), get_dispatcher())
    return BatchProcessor(db, instantiator)
