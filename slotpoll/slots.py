# slots.py
from __future__ import annotations
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from dateutil.parser import isoparse

from .config import DEFAULT_SLOT_MINUTES
from .errors import InvalidInput
from .models import DailyWindow

MINUTES_PER_DAY = 1440
_KEY_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class SlotCodec:
    """Slot keys are the UTC start instant as ``YYYY-MM-DDTHH:MM:SSZ``.

    That string form sorts chronologically, but ordering decisions go
    through :meth:`instant` anyway.
    """

    def __init__(self, slot_minutes: int = DEFAULT_SLOT_MINUTES, strict: bool = True):
        if slot_minutes <= 0 or MINUTES_PER_DAY % slot_minutes:
            raise ValueError(f"slot granularity must divide a day evenly, got {slot_minutes}")
        self.slot_minutes = slot_minutes
        self.strict = strict

    def encode(self, day: date, minute_of_day: int) -> str:
        if isinstance(minute_of_day, bool) or not isinstance(minute_of_day, int):
            raise InvalidInput(f"minute of day must be an integer, got {minute_of_day!r}")
        if not 0 <= minute_of_day < MINUTES_PER_DAY:
            raise InvalidInput(f"minute of day {minute_of_day} outside [0, {MINUTES_PER_DAY})")
        if self.strict and minute_of_day % self.slot_minutes:
            raise InvalidInput(f"minute of day {minute_of_day} is not aligned to {self.slot_minutes}-minute slots")
        start = datetime.combine(day, time(0, 0), tzinfo=timezone.utc) + timedelta(minutes=minute_of_day)
        return start.strftime(_KEY_FORMAT)

    def decode(self, slot_key: str) -> Tuple[date, int]:
        at = self.instant(slot_key)
        return at.date(), at.hour * 60 + at.minute

    def instant(self, slot_key: str) -> datetime:
        if not isinstance(slot_key, str):
            raise InvalidInput(f"slot key must be a string, got {type(slot_key).__name__}")
        try:
            at = isoparse(slot_key)
        except (ValueError, OverflowError):
            raise InvalidInput(f"not an ISO-8601 instant: {slot_key!r}")
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        return at.astimezone(timezone.utc)

    def normalize(self, value: str) -> str:
        """Return the canonical key for ``value`` or raise ``InvalidInput``."""
        at = self.instant(value)
        if at.second or at.microsecond:
            raise InvalidInput(f"slot {value!r} does not start on a whole minute")
        return self.encode(at.date(), at.hour * 60 + at.minute)

    def window_filter(self, slot_key: str, daily_window: Optional[DailyWindow]) -> bool:
        if daily_window is None:
            return True
        _, minute = self.decode(slot_key)
        return daily_window.start <= minute < daily_window.end

    def in_date_range(self, slot_key: str, start_date: Optional[date], end_date: Optional[date]) -> bool:
        day, _ = self.decode(slot_key)
        if start_date is not None and day < start_date:
            return False
        if end_date is not None and day > end_date:
            return False
        return True
