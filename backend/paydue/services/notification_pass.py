from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ..errors import ScheduleValidationError
from .aggregation import DueAggregator
from .calendar import DueWindow, ensure_utc
from .dispatcher import DispatchResult, NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    window: DueWindow
    due_owners: int
    dispatch: DispatchResult

    @property
    def notifications_sent(self) -> bool:
        return self.dispatch.notifications_sent

    @property
    def no_tokens(self) -> bool:
        return self.dispatch.skipped_reason == "no_tokens"


class DueNotificationPass:
    """Aggregate the window ending at ``now`` and dispatch reminders for it.

    Meant to be triggered hourly by an external scheduler. Re-running it for
    the same or an overlapping window does not notify an owner twice, because
    the dispatcher advances the watermark of every schedule it reported.
    Passes can be replayed for past windows but never run ahead of the clock.
    """

    def __init__(self, aggregator: DueAggregator, dispatcher: NotificationDispatcher, window_size: timedelta) -> None:
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self.window_size = window_size

    async def run(self, now: datetime | None = None) -> PassResult:
        clock = datetime.now(timezone.utc)
        now = ensure_utc(now) if now is not None else clock
        if now > clock:
            raise ScheduleValidationError("pass time must not be in the future", field="now")
        window = DueWindow.ending_at(now, self.window_size)
        # AggregationError propagates: nothing was sent and the schedules stay due.
        aggregation = self.aggregator.aggregate_due(window)
        dispatch = await self.dispatcher.dispatch(aggregation.counts, window)
        logger.info(
            "due notification pass at %s: %d owners due, notifications sent=%s",
            now.isoformat(),
            len(aggregation.counts),
            dispatch.notifications_sent,
        )
        return PassResult(window=window, due_owners=len(aggregation.counts), dispatch=dispatch)
