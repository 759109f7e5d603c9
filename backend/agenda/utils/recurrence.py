import calendar
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from agenda.models.enums import RecurrenceUnit


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole calendar months, clamping the day to the month's end.

    Jan 31 + 1 month -> Feb 28/29, Jan 31 + 2 months -> Mar 31.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance(anchor: datetime, unit: RecurrenceUnit, steps: int, tz: str) -> datetime:
    """Return ``anchor`` moved forward ``steps`` recurrence units.

    The arithmetic happens on the wall clock of ``tz`` so a 10:00 session stays
    at 10:00 across DST changes; the result is returned in UTC.
    """
    if steps < 0:
        raise ValueError("steps must be >= 0")
    local = anchor.astimezone(ZoneInfo(tz)).replace(tzinfo=None)
    if unit == RecurrenceUnit.WEEKLY:
        shifted = local + timedelta(days=7 * steps)
    elif unit == RecurrenceUnit.MONTHLY:
        shifted = add_months(local, steps)
    else:
        raise ValueError(f"Unsupported recurrence unit: {unit}")
    return shifted.replace(tzinfo=ZoneInfo(tz)).astimezone(timezone.utc)


def link_run_at(anchor: datetime, unit: RecurrenceUnit, position: int, tz: str) -> datetime:
    """Run time of chain ``position``; the origin appointment is position 1."""
    if position < 1:
        raise ValueError("chain positions start at 1")
    return advance(anchor, unit, position - 1, tz)
