"""
Billing period arithmetic.
"""

import calendar
from datetime import date
from typing import Tuple


def add_months(day: date, months: int = 1) -> date:
    """Same day-of-month ``months`` later, clamped to the month's last day."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def first_period(today: date) -> Tuple[date, date]:
    """A fresh ledger's period: today up to the same day next month."""
    return today, add_months(today, 1)


def advance_period(period_end: date, today: date) -> Tuple[date, date]:
    """Roll a period forward until it ends after ``today``.

    The new period starts where the old one ended, so missed runs of
    the scheduler skip whole periods rather than shifting the cycle.
    """
    start = period_end
    end = add_months(start, 1)
    while end <= today:
        start, end = end, add_months(end, 1)
    return start, end
