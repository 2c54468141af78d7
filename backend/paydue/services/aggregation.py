from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from ..errors import AggregationError, StorageError
from ..persistence import Persistence
from .calendar import DueWindow, TimezoneProvider
from .due_dates import due_instant
from .lifecycle import Schedule

logger = logging.getLogger(__name__)


@dataclass
class DueAggregation:
    window: DueWindow
    schedule_ids: dict[UUID, list[UUID]] = field(default_factory=dict)

    @property
    def counts(self) -> dict[UUID, int]:
        return {owner: len(ids) for owner, ids in self.schedule_ids.items()}

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.schedule_ids.values())

    def __bool__(self) -> bool:
        return bool(self.schedule_ids)


class DueAggregator:
    """Counts, per owner, the active schedules that need a reminder for a window.

    A schedule counts when its due instant (owner-local midnight) falls before
    the window end and no earlier pass has already notified for that due date.
    Overdue schedules that were never notified are therefore still counted.
    """

    def __init__(self, persistence: Persistence, timezones: TimezoneProvider) -> None:
        self.persistence = persistence
        self.timezones = timezones

    def aggregate_due(self, window: DueWindow) -> DueAggregation:
        try:
            rows = self.persistence.load_active_schedules_due_before(window.end)
        except StorageError as exc:
            raise AggregationError(f"could not load due schedules: {exc.message}") from exc

        result = DueAggregation(window=window)
        tz_cache: dict[UUID, str] = {}
        for row in rows:
            schedule = Schedule.from_row(row)
            if not schedule.is_active:
                continue
            if schedule.owner_id not in tz_cache:
                try:
                    tz_cache[schedule.owner_id] = self.timezones.timezone_for(schedule.owner_id)
                except StorageError as exc:
                    raise AggregationError(f"could not resolve owner timezone: {exc.message}") from exc
            instant = due_instant(schedule.next_due_date, tz_cache[schedule.owner_id])
            if instant >= window.end:
                continue
            watermark = schedule.last_notified_window_end
            if watermark is not None and watermark > instant:
                continue
            result.schedule_ids.setdefault(schedule.owner_id, []).append(schedule.id)

        logger.info(
            "aggregated %d due schedules for %d owners in window %s - %s",
            result.total,
            len(result.schedule_ids),
            window.start.isoformat(),
            window.end.isoformat(),
        )
        return result
