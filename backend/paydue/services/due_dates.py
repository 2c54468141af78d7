"""Due-date arithmetic for recurring schedules.

Every occurrence is measured from the anchor date, never chained from the
previous occurrence, so a schedule anchored on the 31st keeps landing on the
31st in months that have one and on the last day of the month otherwise.
"""
from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterator

from .calendar import ensure_utc, start_of_local_day

DEFAULT_GRACE = timedelta(hours=1)


class OccurrenceUnit(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


_UNIT_DAYS = {OccurrenceUnit.day: 1, OccurrenceUnit.week: 7}
_UNIT_MONTHS = {OccurrenceUnit.month: 1, OccurrenceUnit.year: 12}


def _add_months(base: date, months: int) -> date:
    total_month = (base.month - 1) + months
    year = base.year + total_month // 12
    month = (total_month % 12) + 1
    day = min(base.day, monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def add_occurrences(anchor: date, unit: OccurrenceUnit | str, count: int) -> date:
    unit = OccurrenceUnit(unit)
    if unit in _UNIT_DAYS:
        return anchor + timedelta(days=_UNIT_DAYS[unit] * count)
    return _add_months(anchor, _UNIT_MONTHS[unit] * count)


def _validate(interval: int) -> None:
    if interval < 1:
        raise ValueError("interval must be >= 1")


def compute_next_due_date(anchor: date, unit: OccurrenceUnit | str, interval: int, after: date) -> date:
    """Smallest ``anchor + k * interval * unit`` strictly after ``after`` (k >= 0)."""
    _validate(interval)
    unit = OccurrenceUnit(unit)
    if after < anchor:
        raise ValueError("after must be on or after the anchor date")

    if unit in _UNIT_DAYS:
        step_days = _UNIT_DAYS[unit] * interval
        k = (after - anchor).days // step_days + 1
        return anchor + timedelta(days=k * step_days)

    step_months = _UNIT_MONTHS[unit] * interval
    months_apart = (after.year - anchor.year) * 12 + (after.month - anchor.month)
    k = months_apart // step_months
    candidate = _add_months(anchor, k * step_months)
    while candidate <= after:
        k += 1
        candidate = _add_months(anchor, k * step_months)
    return candidate


def first_due_on_or_after(anchor: date, unit: OccurrenceUnit | str, interval: int, day: date) -> date:
    if day <= anchor:
        return anchor
    return compute_next_due_date(anchor, unit, interval, day - timedelta(days=1))


def iter_occurrences(
    anchor: date, unit: OccurrenceUnit | str, interval: int, start: date | None = None
) -> Iterator[date]:
    current = anchor if start is None else first_due_on_or_after(anchor, unit, interval, start)
    while True:
        yield current
        current = compute_next_due_date(anchor, unit, interval, current)


def occurrences_between(
    anchor: date, unit: OccurrenceUnit | str, interval: int, start: date, end: date
) -> list[date]:
    """Occurrences in the inclusive range ``[start, end]``."""
    _validate(interval)
    result: list[date] = []
    if end < start:
        return result
    for occurrence in iter_occurrences(anchor, unit, interval, start):
        if occurrence > end:
            break
        result.append(occurrence)
    return result


def due_instant(next_due_date: date, tz_name: str) -> datetime:
    return start_of_local_day(next_due_date, tz_name)


def is_due(next_due_date: date, tz_name: str, reference: datetime, grace: timedelta = DEFAULT_GRACE) -> bool:
    reference = ensure_utc(reference)
    instant = due_instant(next_due_date, tz_name)
    # Closed at both ends: a date is due from the very instant its local day starts.
    return reference - grace <= instant <= reference


def is_overdue(next_due_date: date, tz_name: str, reference: datetime, grace: timedelta = DEFAULT_GRACE) -> bool:
    return due_instant(next_due_date, tz_name) < ensure_utc(reference) - grace


def is_actionable(next_due_date: date, tz_name: str, reference: datetime, grace: timedelta = DEFAULT_GRACE) -> bool:
    return is_due(next_due_date, tz_name, reference, grace) or is_overdue(next_due_date, tz_name, reference, grace)
