"""Declarative recurrence rules and their structural validation.

All datetimes handled here are naive UTC, the same convention the order
tables use for ``created_at``/``updated_at``.
"""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional

MAX_NOTES_LENGTH = 1000


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_dates(values: Optional[Iterable[Any]]) -> List[datetime]:
    out = []
    for v in values or []:
        if isinstance(v, str):
            v = datetime.fromisoformat(v.replace("Z", "+00:00"))
        out.append(as_naive_utc(v))
    return out


def format_dates(values: Iterable[datetime]) -> List[str]:
    return [as_naive_utc(v).isoformat() for v in values]


@dataclass(frozen=True)
class RecurrencePattern:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    days_of_week: List[int] = field(default_factory=list)
    include_dates: List[datetime] = field(default_factory=list)
    exclude_dates: List[datetime] = field(default_factory=list)
    selected_dates: List[datetime] = field(default_factory=list)
    notes: Optional[str] = None

    def has_schedule(self) -> bool:
        return bool(self.days_of_week or self.include_dates or self.selected_dates)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str]


def validate(pattern: RecurrencePattern, now: datetime) -> ValidationResult:
    """Check the structural rules of a recurrence pattern.

    Selected dates must lie strictly after ``now``, so a pattern that was valid
    when it was stored can fail once those dates have passed.
    """
    errors = []
    if not pattern.has_schedule():
        errors.append("Must specify at least one recurrence pattern (daysOfWeek, includeDates, or selectedDates)")
    if pattern.start_date and pattern.end_date and pattern.start_date >= pattern.end_date:
        errors.append("Start date must be before end date")
    if any(d < 0 or d > 6 for d in pattern.days_of_week):
        errors.append("Days of week must be between 0 (Sunday) and 6 (Saturday)")
    if any(d <= now for d in pattern.selected_dates):
        errors.append("Selected dates must be in the future")
    if pattern.notes and len(pattern.notes) > MAX_NOTES_LENGTH:
        errors.append(f"Notes must be at most {MAX_NOTES_LENGTH} characters")
    return ValidationResult(valid=not errors, errors=errors)


def merge(existing: RecurrencePattern, changes: Mapping[str, Any]) -> RecurrencePattern:
    """Overwrite only the keys present in ``changes``; ``None`` values are ignored."""
    known = {f.name for f in fields(RecurrencePattern)}
    supplied = {k: v for k, v in changes.items() if k in known and v is not None}
    return replace(existing, **supplied)
