import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class MonthWindow:
    """Calendar month as a half-open date range ``[start, end_exclusive)``."""

    month: str
    year: int
    month_number: int
    start: date
    end_exclusive: date
    last_day: int

    @property
    def end(self) -> date:
        return self.end_exclusive - date.resolution

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end_exclusive

    def on_day(self, day: int) -> date:
        return date(self.year, self.month_number, clamp_day(day, self.last_day))

    def days(self) -> Iterator[date]:
        current = self.start
        while current < self.end_exclusive:
            yield current
            current += timedelta(days=1)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def last_day_of_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def clamp_day(day: int, last_day: int) -> int:
    return min(max(day, 1), last_day)


def parse_month(month: str) -> tuple[int, int]:
    match = _MONTH_RE.match(month or "")
    if not match:
        raise ValueError("Month must be YYYY-MM")
    year, month_number = int(match.group(1)), int(match.group(2))
    # December of 9999 has no representable exclusive end.
    if not 1 <= month_number <= 12 or not 1 <= year <= 9998:
        raise ValueError("Month must be YYYY-MM")
    return year, month_number


def month_bounds(month: str) -> MonthWindow:
    year, month_number = parse_month(month)
    start = date(year, month_number, 1)
    if month_number == 12:
        end_exclusive = date(year + 1, 1, 1)
    else:
        end_exclusive = date(year, month_number + 1, 1)
    return MonthWindow(
        month=f"{year:04d}-{month_number:02d}",
        year=year,
        month_number=month_number,
        start=start,
        end_exclusive=end_exclusive,
        last_day=(end_exclusive - start).days,
    )


def current_month(today: Optional[date] = None) -> str:
    today = today or local_today()
    return f"{today.year:04d}-{today.month:02d}"


def parse_date(value: str) -> date:
    if not _DATE_RE.match(value or ""):
        raise ValueError("Date must be YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("Date must be YYYY-MM-DD") from exc
