from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationError
from recurrence import add_months, days_in_month, local_today


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: Optional[date]


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_period(month: str) -> Period:
    """Inclusive date range covering a ``YYYY-MM`` month."""
    try:
        year_text, month_text = month.split("-")
        year, month_number = int(year_text), int(month_text)
        start = date(year, month_number, 1)
    except ValueError as exc:
        raise ValidationError(f"Invalid month: {month}") from exc
    return Period(month, start, date(year, month_number, days_in_month(year, month_number)))


def _parse(value: Optional[str], label: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {label} date: {value}") from exc


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    """Turn a named period (or explicit bounds) into a date range.

    ``all`` and an absent period are unbounded unless ``start``/``end`` narrow them.
    """
    today = today or local_today()
    if period == "this_month":
        return month_period(month_key(today))
    if period == "last_month":
        return month_period(month_key(add_months(today.replace(day=1), -1)))
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period not in (None, "", "all", "custom"):
        raise ValidationError(f"Unknown period: {period}")

    start_date = _parse(start, "start")
    end_date = _parse(end, "end")
    if period == "custom" and (not start_date or not end_date):
        raise ValidationError("Custom period requires start and end dates")
    if start_date and end_date and start_date > end_date:
        raise ValidationError("Start date must be before end date")
    return Period(period or "all", start_date, end_date)
