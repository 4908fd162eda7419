from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Optional

from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def previous(self) -> "Period":
        """The period of equal length ending the day before this one starts."""
        end = self.start - timedelta(days=1)
        return Period(f"previous_{self.slug}", end - timedelta(days=self.days - 1), end)


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    return add_months(month_start(d), 1) - timedelta(days=1)


def add_months(d: date, count: int) -> date:
    total = d.year * 12 + (d.month - 1) + count
    year, month = divmod(total, 12)
    month += 1
    day = min(d.day, _days_in_month(year, month))
    return date(year, month, day)


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (date(year, month + 1, 1) - date(year, month, 1)).days


def iter_months(start: date, end: date) -> Iterator[date]:
    current = month_start(start)
    while current <= end:
        yield current
        current = add_months(current, 1)


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def resolve_period(
    period: Optional[str],
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "month":
        return Period("month", month_start(today), today)
    if period == "week":
        return Period("week", today - timedelta(days=today.weekday()), today)
    if period == "quarter":
        first_month = ((today.month - 1) // 3) * 3 + 1
        return Period("quarter", date(today.year, first_month, 1), today)
    if period == "year":
        return Period("year", date(today.year, 1, 1), today)
    if period == "last_month":
        last_month_end = month_start(today) - timedelta(days=1)
        return Period("last_month", month_start(last_month_end), last_month_end)
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "custom":
        if not start or not end:
            raise ValidationError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValidationError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    raise ValidationError(f"Unsupported period: {period}")
