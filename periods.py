from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone, as a naive datetime.

    Transaction dates are stored naive, so "now" is compared in the same frame.
    """
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def month_period(reference: date) -> Period:
    first = date(reference.year, reference.month, 1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    last = next_month - date.resolution
    return Period(
        f"{first.year:04d}-{first.month:02d}",
        datetime.combine(first, time.min),
        datetime.combine(last, time.max),
    )


def resolve_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    if not value:
        return month_period(today or local_now())
    try:
        year_str, month_str = value.split("-")
        reference = date(int(year_str), int(month_str), 1)
    except ValueError as exc:
        raise ValueError("month must be formatted as YYYY-MM") from exc
    return month_period(reference)
