"""Dashboard date range parsing.

WHAT: Turns `startDate` / `endDate` query values into a naive-UTC window.
WHY: Dashboards send calendar dates in the site's timezone; queries run
     against naive-UTC timestamp columns.
REFERENCES:
  - services/aggregation.py: Every stats/metrics query uses the window
  - services/timeseries.py: Zone lookup and local-date helpers

Rules:
  - "YYYY-MM-DD" is the site-local midnight that starts that day
  - An ISO datetime ("2024-03-01T10:00:00Z") is taken literally; naive
    datetimes are read as UTC
  - An end date covers its whole local day (next local midnight - 1 ms)
  - Only a start: 7 days from it. Only an end: the 7 local days ending there.
    Neither: the last 7 local days including today
  - Ranges longer than max_days are clamped by moving the start forward
  - Ends in the future are clamped to now
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional

from ..exceptions import ValidationError
from ..utils.clock import isoformat_utc, to_naive_utc, utcnow
from .timeseries import get_zone, to_local

ONE_MS = timedelta(milliseconds=1)
DEFAULT_WINDOW_DAYS = 7


@dataclass(frozen=True)
class DateRange:
    """Inclusive [start, end] in naive UTC."""

    start: datetime
    end: datetime

    def to_response(self) -> dict:
        return {"start": isoformat_utc(self.start), "end": isoformat_utc(self.end)}


def local_midnight(day: date, zone: tzinfo) -> datetime:
    """Naive-UTC instant of local 00:00 on `day`."""
    return to_naive_utc(datetime.combine(day, time.min, tzinfo=zone))


def local_end_of_day(day: date, zone: tzinfo) -> datetime:
    return local_midnight(day + timedelta(days=1), zone) - ONE_MS


def _parse_bound(value: str):
    """Return a `date` for calendar dates or a naive-UTC `datetime`."""
    raw = value.strip()
    try:
        if "T" not in raw:
            return date.fromisoformat(raw)
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(raw))
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")


def _start_instant(bound, zone: tzinfo) -> datetime:
    if isinstance(bound, datetime):
        return bound
    return local_midnight(bound, zone)


def _end_instant(bound, zone: tzinfo) -> datetime:
    if isinstance(bound, datetime):
        return bound
    return local_end_of_day(bound, zone)


def _local_day(bound, zone: tzinfo) -> date:
    if isinstance(bound, datetime):
        return to_local(bound, zone).date()
    return bound


def parse_date_range(
    start_date: Optional[str],
    end_date: Optional[str],
    timezone: str = "UTC",
    max_days: int = 365,
    now: Optional[datetime] = None,
) -> DateRange:
    """
    Examples (timezone="UTC", now=2024-03-10 12:00):
        ("2024-03-01", "2024-03-07") -> 2024-03-01 00:00 .. 2024-03-07 23:59:59.999
        (None, None)                 -> 2024-03-04 00:00 .. 2024-03-10 12:00

    Raises:
        ValidationError: A bound is not a valid date or ISO datetime
    """
    zone = get_zone(timezone)
    now = now or utcnow()

    start_bound = _parse_bound(start_date) if start_date else None
    end_bound = _parse_bound(end_date) if end_date else None

    if start_bound is not None and end_bound is not None:
        start = _start_instant(start_bound, zone)
        end = _end_instant(end_bound, zone)
    elif start_bound is not None:
        start = _start_instant(start_bound, zone)
        first_day = _local_day(start_bound, zone)
        end = local_end_of_day(first_day + timedelta(days=DEFAULT_WINDOW_DAYS - 1), zone)
    elif end_bound is not None:
        end = _end_instant(end_bound, zone)
        last_day = _local_day(end_bound, zone)
        start = local_midnight(last_day - timedelta(days=DEFAULT_WINDOW_DAYS - 1), zone)
    else:
        today = to_local(now, zone).date()
        start = local_midnight(today - timedelta(days=DEFAULT_WINDOW_DAYS - 1), zone)
        end = local_end_of_day(today, zone)

    if end - start > timedelta(days=max_days):
        start = end - timedelta(days=max_days)
    if end > now:
        end = now
    if start > end:
        raise ValidationError("startDate must be before endDate")

    return DateRange(start=start, end=end)
