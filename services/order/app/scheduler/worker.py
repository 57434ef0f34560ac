"""Periodic recurring-order run.

A daemon thread wakes every ``RECURRING_INTERVAL_SECONDS`` and processes the
due window under a Redis lock, so only one replica runs a batch at a time.
When Redis is unreachable the batch still runs; the per-schedule claims keep
replicas from delivering the same schedule twice.
"""
from datetime import datetime
from typing import Optional
import logging
import threading

from redis import Redis
from redis.exceptions import LockError, RedisError

from app.core.config import settings
from app.core.utils import now_utc
from app.db.session import SessionLocal
from app.services.batch import BatchProcessor, BatchResult, build_batch

logger = logging.getLogger(__name__)

_stop = threading.Event()
_thread = None

def redis_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)

def run_locked(batch: BatchProcessor, now: datetime, redis: Redis) -> Optional[BatchResult]:
    """Run one batch if no other run holds the lock. Returns None when skipped."""
    lock = redis.lock(settings.RECURRING_LOCK_KEY, timeout=settings.RECURRING_LOCK_TIMEOUT, blocking=False)
    try:
        acquired = lock.acquire(blocking=False)
    except RedisError as exc:
        logger.warning("Recurring run lock unavailable (%s), relying on schedule claims", exc)
        return batch.process_due_schedules(now)
    if not acquired:
        logger.info("Recurring run skipped: another run holds %s", settings.RECURRING_LOCK_KEY)
        return None
    try:
        return batch.process_due_schedules(now)
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning("Recurring run lock expired before release")
        except RedisError as exc:
            logger.warning("Could not release recurring run lock: %s", exc)

def run_once() -> Optional[BatchResult]:
    db = SessionLocal()
    try:
        return run_locked(build_batch(db), now_utc(), redis_client())
    finally:
        db.close()

def _run():
    while not _stop.is_set():
        try:
            run_once()
        except Exception:
            logger.exception("Recurring order tick failed")
        _stop.wait(settings.RECURRING_INTERVAL_SECONDS)

def start():
    global _thread
    if _thread and _thread.is_alive():
        return
    _stop.clear()
    _thread = threading.Thread(target=_run, name="recurring-orders", daemon=True)
    _thread.start()

def stop(timeout: float = 30.0):
    global _thread
    _stop.set()
    if _thread and _thread.is_alive() and _thread is not threading.current_thread():
        _thread.join(timeout)
        if _thread.is_alive():
            logger.warning("Recurring order worker still running after %ss", timeout)
            return
    _thread = None
