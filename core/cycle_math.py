"""
cycle_math.py
--------------
Calendar arithmetic for billing cycles.

Every due date in the system is produced here, so generation, confirmation,
backfill and projection all agree on where a cycle boundary falls.

Month-end rule: month and year steps use pandas DateOffset, which clamps to
the last day of the target month (Jan 31 + 1 month = Feb 28/29). Boundaries
are always produced by stepping from the previous boundary, so a schedule
that started on the 31st settles on the clamped day after February.

Unknown or blank cycles fall back to monthly. This is a documented default,
not an error.
"""

from datetime import date, datetime
from typing import Iterator

import pandas as pd

from core.models import BillingCycle


DEFAULT_CYCLE = BillingCycle.MONTHLY

_OFFSETS = {
    BillingCycle.DAILY: pd.DateOffset(days=1),
    BillingCycle.WEEKLY: pd.DateOffset(weeks=1),
    BillingCycle.MONTHLY: pd.DateOffset(months=1),
    BillingCycle.YEARLY: pd.DateOffset(years=1),
}


def normalize_cycle(cycle: str | None) -> str:
    """Lower-cases a cycle name and maps anything unknown to monthly."""
    if not cycle:
        return DEFAULT_CYCLE
    key = str(cycle).strip().lower()
    return key if key in _OFFSETS else DEFAULT_CYCLE


def advance(when: date, cycle: str | None) -> date:
    """
    Returns the next cycle boundary after `when`.

    Accepts date or datetime and returns the same type.
    """
    shifted = pd.Timestamp(when) + _OFFSETS[normalize_cycle(cycle)]
    if isinstance(when, datetime):
        return shifted.to_pydatetime()
    return shifted.date()


def add_months(when: date, months: int) -> date:
    """Calendar month shift with the same clamping rule as `advance`."""
    return (pd.Timestamp(when) + pd.DateOffset(months=months)).date()


def iter_boundaries(start: date, cycle: str | None, before: date) -> Iterator[date]:
    """Yields start and every following boundary strictly before `before`."""
    current = start
    while current < before:
        yield current
        current = advance(current, cycle)


def first_boundary_on_or_after(start: date, cycle: str | None, target: date) -> date:
    """Walks the schedule from `start` to the first boundary >= target."""
    current = start
    while current < target:
        current = advance(current, cycle)
    return current
