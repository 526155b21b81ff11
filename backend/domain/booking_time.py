"""
Booking time values and deadline arithmetic.

`orders.booking_time` arrives in several shapes:

    "morning" / "afternoon" / "evening"   → NamedSlot (label only, no instant)
    "08:00-10:00", "8:00 AM-8:30 AM"      → TimeRange (deadline = start)
    "14:30", "2:30 PM"                    → FixedTime

parse_booking_time() resolves the raw string once; everything downstream
works with the typed value. Named slots never produce a deadline.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from domain.enums import BookingSlot, Urgency
from domain.errors import ValidationError

_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])?\s*$")


@dataclass(frozen=True)
class NamedSlot:
    slot: BookingSlot


@dataclass(frozen=True)
class TimeRange:
    start: time
    end: time


@dataclass(frozen=True)
class FixedTime:
    at: time


BookingTime = Union[NamedSlot, TimeRange, FixedTime]


def _parse_clock(raw: str) -> time:
    match = _CLOCK_RE.match(raw)
    if not match:
        raise ValidationError(f"Unrecognised clock time {raw!r}", field="booking_time")

    hours = int(match.group(1))
    minutes = int(match.group(2))
    period = (match.group(3) or "").upper()

    if period:
        if not 1 <= hours <= 12:
            raise ValidationError(f"Hour out of range in {raw!r}", field="booking_time")
        if period == "PM" and hours < 12:
            hours += 12
        elif period == "AM" and hours == 12:
            hours = 0

    if hours > 23 or minutes > 59:
        raise ValidationError(f"Clock time out of range: {raw!r}", field="booking_time")
    return time(hours, minutes)


def parse_booking_time(raw: str) -> BookingTime:
    """
    Resolve a raw booking_time string into its typed form.

    Raises:
        ValidationError: empty or unparseable input
    """
    value = (raw or "").strip()
    if not value:
        raise ValidationError("Booking time is required", field="booking_time")

    lowered = value.lower()
    if lowered in {s.value for s in BookingSlot}:
        return NamedSlot(BookingSlot(lowered))

    if "-" in value:
        start_raw, _, end_raw = value.partition("-")
        return TimeRange(start=_parse_clock(start_raw), end=_parse_clock(end_raw))

    return FixedTime(at=_parse_clock(value))


def booking_instant(booking_date: Optional[date], booking_time: Optional[BookingTime]) -> Optional[datetime]:
    """Single instant a booking starts at, or None when it has no fixed instant."""
    if booking_date is None or booking_time is None:
        return None
    if isinstance(booking_time, TimeRange):
        return datetime.combine(booking_date, booking_time.start)
    if isinstance(booking_time, FixedTime):
        return datetime.combine(booking_date, booking_time.at)
    return None


def time_until_booking(
    booking_date: Optional[date],
    booking_time: Optional[BookingTime],
    now: datetime,
) -> Optional[timedelta]:
    """Signed duration from `now` until the booking instant (negative once passed)."""
    instant = booking_instant(booking_date, booking_time)
    if instant is None:
        return None
    return instant - now


def classify_urgency(remaining: Optional[timedelta], due_soon_minutes: int = 60) -> Urgency:
    if remaining is None:
        return Urgency.UNSCHEDULED
    if remaining <= timedelta(0):
        return Urgency.OVERDUE
    if remaining < timedelta(minutes=due_soon_minutes):
        return Urgency.DUE_SOON
    return Urgency.DUE_LATER
