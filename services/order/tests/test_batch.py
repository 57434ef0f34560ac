from datetime import timedelta

from redis.exceptions import ConnectionError as RedisConnectionError

from app.db.models import Order, RecurringSchedule
from app.recurrence import RecurrencePattern
from app.scheduler.worker import run_locked
from app.services.batch import BatchProcessor
from app.services.instantiator import OrderInstantiator

from conftest import NOW, DownRedis, FakeProductStore, FakeRedis, RecordingDispatcher, StaticDirectory


def build(db, store):
    return BatchProcessor(db, OrderInstantiator(db, store, RecordingDispatcher(), StaticDirectory()), claim_lease_seconds=900)


def test_one_failing_schedule_does_not_abort_the_run(db, make_schedule):
    store = FakeProductStore({101: 50, 102: 50, 201: 50}, broken=[201])
    first = make_schedule(next_delivery_at=NOW - timedelta(hours=3))
    second = make_schedule(next_delivery_at=NOW - timedelta(hours=2), items=[(201, 1)])
    third = make_schedule(next_delivery_at=NOW - timedelta(hours=1))

    result = build(db, store).process_due_schedules(NOW)

    assert (result.processed, result.created) == (3, 2)
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"{second.id}: ")

    # the failed schedule stays due for the next tick
    failed = db.get(RecurringSchedule, second.id)
    assert failed.next_delivery_at == NOW - timedelta(hours=2)
    assert failed.claim_token is None and failed.claimed_at is None
    assert {o.schedule_id for o in db.query(Order)} == {first.id, third.id}


def test_only_active_due_recurring_schedules_are_examined(db, make_schedule, store):
    make_schedule(next_delivery_at=NOW + timedelta(minutes=1))
    make_schedule(schedule_status="paused")
    make_schedule(is_recurring=False)
    make_schedule(next_delivery_at=None)
    due = make_schedule(next_delivery_at=NOW)

    result = build(db, store).process_due_schedules(NOW)

    assert (result.processed, result.created, result.errors) == (1, 1, [])
    assert db.query(Order).one().schedule_id == due.id


def test_exhausted_schedule_counts_as_processed_not_created(db, make_schedule, store):
    s = make_schedule(RecurrencePattern(include_dates=[NOW - timedelta(days=1)]), next_delivery_at=NOW - timedelta(days=1))

    result = build(db, store).process_due_schedules(NOW)

    assert (result.processed, result.created) == (1, 0)
    assert db.get(RecurringSchedule, s.id).schedule_status == "ended"


def test_schedule_claimed_by_another_run_is_skipped(db, make_schedule, store):
    make_schedule(claim_token="someone-else", claimed_at=NOW - timedelta(minutes=5))

    result = build(db, store).process_due_schedules(NOW)

    assert (result.processed, result.created, result.errors) == (1, 0, [])
    assert db.query(Order).count() == 0


def test_stale_claim_is_taken_over(db, make_schedule, store):
    make_schedule(claim_token="crashed-worker", claimed_at=NOW - timedelta(hours=1))
    assert build(db, store).process_due_schedules(NOW).created == 1


def test_claim_fails_when_due_date_moved(db, make_schedule, store):
    s = make_schedule()
    batch = build(db, store)
    assert batch.claim(s.id, NOW - timedelta(days=7), NOW) is None
    assert batch.claim(s.id, NOW, NOW).claim_token is not None
    assert batch.claim(s.id, NOW, NOW) is None


def test_second_run_does_not_fire_again(db, make_schedule, store):
    make_schedule()
    batch = build(db, store)
    assert batch.process_due_schedules(NOW).created == 1
    assert batch.process_due_schedules(NOW).processed == 0
    assert db.query(Order).count() == 1


def test_run_locked_skips_when_lock_is_held(db, make_schedule, store):
    make_schedule()
    assert run_locked(build(db, store), NOW, FakeRedis(free=False)) is None
    assert db.query(Order).count() == 0


def test_run_locked_releases_lock(db, make_schedule, store):
    make_schedule()
    redis = FakeRedis()
    result = run_locked(build(db, store), NOW, redis)
    assert result.created == 1
    assert redis.last_lock.released


def test_run_locked_falls_back_to_claims_when_redis_is_down(db, make_schedule, store):
    s = make_schedule()
    result = run_locked(build(db, store), NOW, DownRedis())
    assert result.created == 1
    assert db.get(RecurringSchedule, s.id).claim_token is None


def test_run_locked_survives_failed_release(db, make_schedule, store):
    make_schedule()
    redis = FakeRedis()

    def broken_release():
        raise RedisConnectionError("connection reset")

    redis.last_lock.release = broken_release
    assert run_locked(build(db, store), NOW, redis).created == 1
