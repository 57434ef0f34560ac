from app.recurrence.pattern import RecurrencePattern, ValidationResult, validate, merge
from app.recurrence.calculator import next_delivery

__all__ = ["RecurrencePattern", "ValidationResult", "validate", "merge", "next_delivery"]
