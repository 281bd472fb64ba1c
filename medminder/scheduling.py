"""
Calendar arithmetic for recurring schedules.

Schedules store a wall-clock ``"HH:MM"`` and a ``"1,2,...,7"`` weekday list
(1 is Monday). An occurrence is that wall-clock time on one calendar date,
resolved in the system's local timezone to epoch seconds. Everything here is
pure; malformed input raises :class:`InvalidTimeSpec` and callers decide how
to degrade.
"""
import re
from datetime import date, datetime
from typing import FrozenSet, Tuple, Union

from .errors import InvalidTimeSpec

REMINDER_LEAD_SECONDS = 5 * 60
OVERDUE_GRACE_SECONDS = 10 * 60
REMINDER_EXPIRY_SECONDS = 24 * 60 * 60

# sorts after every real "HH:MM"
NO_SCHEDULE_SENTINEL = "99:99"

_INT_RE = re.compile(r"[+-]?\d+")


def _int_part(part: str, whole: str) -> int:
    if not _INT_RE.fullmatch(part):
        raise InvalidTimeSpec(f"not an integer: {part!r} in {whole!r}")
    return int(part)


def parse_date(value: str) -> date:
    parts = (value or "").split("-")
    if len(parts) != 3:
        raise InvalidTimeSpec(f"Invalid date format: {value!r}")
    y, m, d = (_int_part(p, value) for p in parts)
    try:
        return date(y, m, d)
    except ValueError as e:
        raise InvalidTimeSpec(f"Invalid date: {value!r} ({e})") from e


def parse_time(value: str) -> Tuple[int, int]:
    parts = (value or "").split(":")
    if len(parts) != 2:
        raise InvalidTimeSpec(f"Invalid time format: {value!r}")
    h, m = (_int_part(p, value) for p in parts)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise InvalidTimeSpec(f"Invalid time: {value!r}")
    return h, m


def parse_days_of_week(value: str) -> FrozenSet[int]:
    days = set()
    for part in (value or "").split(","):
        part = part.strip()
        day = _int_part(part, value)
        if not 1 <= day <= 7:
            raise InvalidTimeSpec(f"day out of range: {day} in {value!r}")
        days.add(day)
    return frozenset(days)


def date_string(d: Union[date, datetime]) -> str:
    if isinstance(d, datetime):
        d = d.date()
    return d.isoformat()


def epoch_seconds(dt: datetime) -> int:
    # naive datetimes are local wall-clock time
    return int(dt.timestamp())


def day_of_week_index(d: Union[date, datetime, str]) -> int:
    if isinstance(d, str):
        d = parse_date(d)
    return d.isoweekday()


def is_due_on(days_of_week: str, d: Union[date, datetime, str]) -> bool:
    return day_of_week_index(d) in parse_days_of_week(days_of_week)


def resolve_occurrence(time: str, calendar_date: str) -> int:
    """Epoch seconds of ``time`` on ``calendar_date`` in local time."""
    d = parse_date(calendar_date)
    h, m = parse_time(time)
    return epoch_seconds(datetime(d.year, d.month, d.day, h, m))


def reminder_instant(scheduled: int, now: int) -> int:
    at = scheduled - REMINDER_LEAD_SECONDS
    return now if at < now else at


def is_overdue(scheduled: int, now: int) -> bool:
    return now >= scheduled + OVERDUE_GRACE_SECONDS


def is_expired(reminder_time: int, now: int) -> bool:
    return reminder_time <= now - REMINDER_EXPIRY_SECONDS
