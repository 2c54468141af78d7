"""Conversions between UTC instants and owner-local calendar dates."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import TYPE_CHECKING
from uuid import UUID

import pytz

from ..errors import ScheduleValidationError

if TYPE_CHECKING:
    from ..persistence import Persistence


def resolve_timezone(name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError as exc:
        raise ScheduleValidationError(f"unknown timezone: {name}", field="timezone") from exc


def ensure_utc(instant: datetime) -> datetime:
    # Naive datetimes are treated as UTC, like the rest of the stored timestamps.
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def local_date(instant: datetime, tz_name: str) -> date:
    return ensure_utc(instant).astimezone(resolve_timezone(tz_name)).date()


def local_today(tz_name: str, now: datetime | None = None) -> date:
    return local_date(now or datetime.now(timezone.utc), tz_name)


def start_of_local_day(day: date, tz_name: str) -> datetime:
    """UTC instant at which ``day`` begins in ``tz_name``.

    Midnight that falls inside a DST gap is shifted forward by normalize()
    instead of raising.
    """
    tz = resolve_timezone(tz_name)
    local_midnight = tz.normalize(tz.localize(datetime.combine(day, time.min), is_dst=False))
    return local_midnight.astimezone(timezone.utc)


@dataclass(frozen=True)
class DueWindow:
    """Half-open UTC range ``[start, end)`` examined by one aggregation pass."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end <= self.start:
            raise ValueError("window end must be after window start")

    @classmethod
    def ending_at(cls, now: datetime, size: timedelta) -> "DueWindow":
        end = ensure_utc(now)
        return cls(start=end - size, end=end)

    @property
    def size(self) -> timedelta:
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= ensure_utc(instant) < self.end


def local_dates_in_window(window: DueWindow, tz_name: str) -> tuple[date, date]:
    """First and last owner-local calendar dates touched by ``window``."""
    last_instant = window.end - timedelta(microseconds=1)
    return local_date(window.start, tz_name), local_date(last_instant, tz_name)


class TimezoneProvider:
    def __init__(self, persistence: "Persistence", default_timezone: str) -> None:
        resolve_timezone(default_timezone)
        self._persistence = persistence
        self._default = default_timezone

    def timezone_for(self, owner_id: UUID) -> str:
        return self._persistence.get_owner_timezone(owner_id) or self._default
