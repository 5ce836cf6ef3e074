import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

MIN_YEAR = 1970
MAX_YEAR = 3000


@dataclass(frozen=True)
class MonthPeriod:
    """A calendar month as the half-open interval [start, next_start)."""

    year: int
    month: int

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def next_start(self) -> date:
        return add_months(self.start, 1)

    @property
    def days(self) -> int:
        return calendar.monthrange(self.year, self.month)[1]


def resolve_month(month: object, year: object) -> MonthPeriod:
    if isinstance(month, bool) or isinstance(year, bool):
        raise ValueError("Invalid month or year parameter")
    if not isinstance(month, int) or not isinstance(year, int):
        raise ValueError("Invalid month or year parameter")
    if month < 1 or month > 12:
        raise ValueError("Month must be between 1 and 12")
    if year < MIN_YEAR or year > MAX_YEAR:
        raise ValueError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}")
    return MonthPeriod(year, month)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def local_today(today: Optional[date] = None) -> date:
    if today is not None:
        return today
    return datetime.now(ZoneInfo(get_settings().timezone)).date()
