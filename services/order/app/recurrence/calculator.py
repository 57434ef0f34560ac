"""Next delivery date for a recurrence pattern.

The strategies are evaluated in priority order, not as a union:
selected dates, then weekdays, then one-off include dates.
"""
from datetime import datetime, timedelta
from typing import Iterable, Optional

from app.recurrence.pattern import RecurrencePattern

SCAN_DAYS = 7


def js_weekday(d: datetime) -> int:
    # 0 = Sunday .. 6 = Saturday
    return (d.weekday() + 1) % 7


def _earliest_after(dates: Iterable[datetime], as_of: datetime) -> Optional[datetime]:
    future = sorted(d for d in dates if d > as_of)
    return future[0] if future else None


def next_delivery(pattern: RecurrencePattern, as_of: datetime) -> Optional[datetime]:
    if pattern.end_date and as_of > pattern.end_date:
        return None

    if pattern.selected_dates:
        return _earliest_after(pattern.selected_dates, as_of)

    if pattern.days_of_week:
        excluded = {d.date() for d in pattern.exclude_dates}
        for offset in range(1, SCAN_DAYS + 1):
            candidate = as_of + timedelta(days=offset)
            if js_weekday(candidate) not in pattern.days_of_week:
                continue
            if candidate.date() in excluded:
                continue
            if pattern.start_date and candidate < pattern.start_date:
                continue
            if pattern.end_date and candidate > pattern.end_date:
                continue
            return candidate
        # An exhausted weekly scan falls through to the include dates.

    if pattern.include_dates:
        found = _earliest_after(pattern.include_dates, as_of)
        if found:
            return found

    return None
