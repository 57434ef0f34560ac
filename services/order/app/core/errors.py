"""Domain errors raised by the recurring-order services.

Routes do not catch these; the handlers registered in ``app.main`` turn them
into JSON responses.
"""
from typing import List


class OrderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class RecurrenceValidationError(OrderServiceError):
    status_code = 400

    def __init__(self, errors: List[str]):
        super().__init__("Invalid recurrence pattern")
        self.errors = list(errors)


class NotFoundError(OrderServiceError):
    status_code = 404


class AccessDeniedError(OrderServiceError):
    status_code = 403


class ConflictError(OrderServiceError):
    status_code = 400


class PersistenceError(OrderServiceError):
    status_code = 503


class NotificationError(OrderServiceError):
    pass


class ProductNotFoundError(OrderServiceError):
    status_code = 400

    def __init__(self, missing: List[int]):
        super().__init__("Some products not found")
        self.errors = [str(pid) for pid in missing]
