import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


YMD_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class Timeframe(str, Enum):
    all = "all"
    day = "day"
    week = "week"
    month = "month"


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def as_query(self) -> dict[str, str]:
        # date.isoformat() uses the date's own components, never a UTC shift.
        return {"from": self.start.isoformat(), "to": self.end.isoformat()}


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def parse_ymd(value: str) -> date:
    if not isinstance(value, str) or not YMD_PATTERN.match(value):
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from exc


def week_start(reference: date) -> date:
    # isoweekday(): Monday=1 .. Sunday=7
    return reference - timedelta(days=reference.isoweekday() - 1)


def month_end(reference: date) -> date:
    first = reference.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def resolve_range(
    timeframe: str,
    reference: Optional[date] = None,
) -> Optional[DateRange]:
    """Map a timeframe and reference date to inclusive date boundaries.

    ``all`` yields ``None`` so callers skip date filtering entirely. The
    reference date defaults to today in the configured local timezone.
    """
    timeframe = Timeframe(timeframe)
    if timeframe is Timeframe.all:
        return None
    reference = reference or local_today()
    if timeframe is Timeframe.day:
        return DateRange(reference, reference)
    if timeframe is Timeframe.week:
        start = week_start(reference)
        return DateRange(start, start + timedelta(days=6))
    return DateRange(reference.replace(day=1), month_end(reference))


def range_from_query(
    start: Optional[str], end: Optional[str]
) -> Optional[DateRange]:
    if not start and not end:
        return None
    if not start or not end:
        raise ValueError("Both 'from' and 'to' must be provided together")
    start_date = parse_ymd(start)
    end_date = parse_ymd(end)
    if start_date > end_date:
        raise ValueError("'from' must not be after 'to'")
    return DateRange(start_date, end_date)
