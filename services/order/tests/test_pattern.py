from datetime import datetime, timedelta

from app.db.models import RecurringSchedule
from app.recurrence import RecurrencePattern, merge, validate
from app.recurrence.pattern import parse_dates

from conftest import NOW


def test_pattern_without_any_schedule_is_rejected():
    result = validate(RecurrencePattern(start_date=NOW), NOW)
    assert not result.valid
    assert result.errors == ["Must specify at least one recurrence pattern (daysOfWeek, includeDates, or selectedDates)"]


def test_start_must_precede_end():
    p = RecurrencePattern(days_of_week=[1], start_date=NOW, end_date=NOW)
    assert "Start date must be before end date" in validate(p, NOW).errors


def test_weekday_out_of_range():
    p = RecurrencePattern(days_of_week=[0, 7])
    assert validate(p, NOW).errors == ["Days of week must be between 0 (Sunday) and 6 (Saturday)"]


def test_selected_dates_must_be_in_the_future():
    p = RecurrencePattern(selected_dates=[NOW, NOW + timedelta(days=2)])
    assert validate(p, NOW).errors == ["Selected dates must be in the future"]


def test_notes_length_limit():
    p = RecurrencePattern(days_of_week=[2], notes="x" * 1001)
    assert not validate(p, NOW).valid
    assert validate(RecurrencePattern(days_of_week=[2], notes="x" * 1000), NOW).valid


def test_collects_every_violation():
    p = RecurrencePattern(start_date=NOW, end_date=NOW - timedelta(days=1))
    assert len(validate(p, NOW).errors) == 2


def test_merge_overwrites_only_supplied_keys():
    existing = RecurrencePattern(days_of_week=[1, 3], exclude_dates=[NOW], notes="ring bell")
    merged = merge(existing, {"days_of_week": [5], "notes": None, "unknown": 1})
    assert merged.days_of_week == [5]
    assert merged.exclude_dates == [NOW]
    assert merged.notes == "ring bell"
    assert existing.days_of_week == [1, 3]


def test_parse_dates_accepts_zulu_and_offsets():
    assert parse_dates(["2025-01-10T09:00:00Z", "2025-01-10T10:00:00+01:00"]) == [datetime(2025, 1, 10, 9, 0)] * 2


def test_validation_verdict_survives_persistence(db, make_schedule):
    pattern = RecurrencePattern(
        start_date=NOW, end_date=NOW + timedelta(days=60), days_of_week=[1, 4],
        include_dates=[NOW + timedelta(days=3)], exclude_dates=[NOW + timedelta(days=6)], notes="porch",
    )
    schedule = make_schedule(pattern)
    db.expire_all()

    reloaded = db.get(RecurringSchedule, schedule.id).pattern
    assert reloaded == pattern
    assert validate(reloaded, NOW).valid == validate(pattern, NOW).valid
