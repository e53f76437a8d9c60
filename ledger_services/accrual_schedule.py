"""
ledger_services.accrual_schedule -- pure due-ness evaluation for accrual rules.

Responsibility:
    Decide whether a scheduled rule fires on a given as-of date.  No I/O,
    no clock: callers pass the date.

Rules:
    DAILY    always due.
    WEEKLY   due when the weekday matches the start date's weekday
             (Monday when the rule has no start date).
    MONTHLY  due when the day-of-month matches the start date's day
             (the 1st when absent), clamped to the month's last day so an
             anchor of 31 fires on Feb 28/29, Apr 30, ...
    PERIOD_END / ON_DEMAND are never "due" here; they run through
    run_period_end_accruals or run_one.
"""

import calendar
from datetime import date

from ledger_services._accrual_types import AccrualFrequency

_MONDAY = 0


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def is_due(
    frequency: AccrualFrequency | str,
    start_date: date | None,
    as_of: date,
) -> bool:
    """True when a rule with ``frequency`` anchored at ``start_date`` fires on ``as_of``."""
    frequency = AccrualFrequency(frequency)

    if frequency == AccrualFrequency.DAILY:
        return True

    if frequency == AccrualFrequency.WEEKLY:
        anchor = start_date.weekday() if start_date else _MONDAY
        return as_of.weekday() == anchor

    if frequency == AccrualFrequency.MONTHLY:
        anchor_day = start_date.day if start_date else 1
        due_day = min(anchor_day, last_day_of_month(as_of.year, as_of.month))
        return as_of.day == due_day

    return False


def within_bounds(
    start_date: date | None, end_date: date | None, as_of: date
) -> str | None:
    """Skip reason when ``as_of`` falls outside the rule's bounds, else None."""
    if start_date is not None and as_of < start_date:
        return "Before rule start_date"
    if end_date is not None and as_of > end_date:
        return "After rule end_date"
    return None
