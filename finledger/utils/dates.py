"""Calendar helpers for interest accrual and renewals."""
import calendar
from datetime import datetime


def first_of_next_month(value: datetime) -> datetime:
    """Midnight on the first day of the month after ``value``."""
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return value.replace(month=value.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def add_years(value: datetime, years: int) -> datetime:
    """Same date ``years`` later; Feb 29 falls back to Feb 28."""
    year = value.year + years
    day = min(value.day, calendar.monthrange(year, value.month)[1])
    return value.replace(year=year, day=day)
