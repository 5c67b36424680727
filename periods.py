from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from errors import InvalidArgument
from models import BudgetPeriod

MAX_WINDOW_DAYS = 365


class AnalyticsPeriod(str, Enum):
    week = "week"
    month = "month"
    year = "year"
    custom = "custom"


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def days(self) -> int:
        """Number of calendar days in the window, both ends included."""
        return (self.end - self.start).days + 1


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    """Shift by calendar months, clamping the day to the target month's end."""
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    last_day = month_end(date(year, month, 1)).day
    return date(year, month, min(d.day, last_day))


def add_years(d: date, count: int) -> date:
    return add_months(d, count * 12)


def week_start(d: date) -> date:
    return d - timedelta(days=d.weekday())


def budget_end_date(start: date, period: BudgetPeriod) -> date:
    if period == BudgetPeriod.weekly:
        return start + timedelta(days=7)
    if period == BudgetPeriod.monthly:
        return add_months(start, 1)
    if period == BudgetPeriod.yearly:
        return add_years(start, 1)
    raise InvalidArgument(f"Invalid budget period: {period}")


def validate_window(start: date, end: date, *, today: Optional[date] = None) -> None:
    today = today or utc_today()
    if start > end:
        raise InvalidArgument("Start date must be before end date")
    if start > today:
        raise InvalidArgument("Start date cannot be in the future")
    if (end - start).days > MAX_WINDOW_DAYS:
        raise InvalidArgument(
            f"Date range cannot exceed {MAX_WINDOW_DAYS} days",
            details={"days": (end - start).days},
        )


def period_window(period: AnalyticsPeriod, reference: date) -> Period:
    if period == AnalyticsPeriod.week:
        start = week_start(reference)
        return Period(period.value, start, start + timedelta(days=6))
    if period == AnalyticsPeriod.month:
        return Period(period.value, month_start(reference), month_end(reference))
    if period == AnalyticsPeriod.year:
        return Period(
            period.value,
            date(reference.year, 1, 1),
            date(reference.year, 12, 31),
        )
    raise InvalidArgument(f"Period {period.value} needs an explicit date range")


def resolve_period(
    period: AnalyticsPeriod,
    reference: Optional[date] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or utc_today()
    if period == AnalyticsPeriod.custom:
        if not start or not end:
            raise InvalidArgument("Custom period requires start and end dates")
        validate_window(start, end, today=today)
        return Period(period.value, start, end)
    return period_window(period, reference or today)


def trend_interval(
    period: AnalyticsPeriod, intervals_ago: int, *, today: Optional[date] = None
) -> tuple[Period, str]:
    today = today or utc_today()
    if period == AnalyticsPeriod.week:
        window = period_window(period, today - timedelta(weeks=intervals_ago))
    elif period == AnalyticsPeriod.month:
        window = period_window(period, add_months(month_start(today), -intervals_ago))
    elif period == AnalyticsPeriod.year:
        window = period_window(period, date(today.year - intervals_ago, 1, 1))
    else:
        raise InvalidArgument("Trends support week, month or year periods")
    if period == AnalyticsPeriod.year:
        label = f"{window.start.year:04d}"
    else:
        label = window.start.strftime("%b %Y")
    return window, label
