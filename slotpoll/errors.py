# errors.py
from __future__ import annotations


class SchedulingError(Exception):
    """Base class for every error raised by the scheduling core.

    ``code`` is the stable identifier carried in ``CommandResult.error``.
    """

    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(SchedulingError):
    code = "validation_error"


class InvalidInput(ValidationError):
    code = "invalid_input"


class Unauthorized(SchedulingError):
    code = "unauthorized"


class NotFound(SchedulingError):
    code = "not_found"


class Forbidden(SchedulingError):
    code = "forbidden"


class InvalidState(SchedulingError):
    code = "invalid_state"


class NoAvailability(SchedulingError):
    code = "no_availability"


class OutOfOrderEvent(SchedulingError):
    # Consistency-repair signal between feed and aggregator; never reaches a caller.
    code = "out_of_order_event"


class StoreUnavailable(SchedulingError):
    code = "store_unavailable"
