"""State machine for recurring transactions.

Every user write is a compare-and-set against the version that was read, so
two callers racing on the same schedule cannot both advance it.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID, uuid4

from ..errors import ConcurrentModificationError, ForbiddenError, NotDueYetError, NotFoundError
from ..persistence import Persistence
from ..schemas import RecurringTransactionInput
from .calendar import TimezoneProvider, ensure_utc, local_today
from .due_dates import (
    DEFAULT_GRACE,
    OccurrenceUnit,
    add_occurrences,
    compute_next_due_date,
    due_instant,
    is_actionable,
    occurrences_between,
)

logger = logging.getLogger(__name__)


@dataclass
class Schedule:
    id: UUID
    owner_id: UUID
    occurrence_unit: OccurrenceUnit
    interval: int
    anchor_date: date
    next_due_date: date
    amount: Decimal
    type: str
    category: str
    payment_mode: str
    category2: str | None = None
    category3: str | None = None
    description: str | None = None
    status: str = "active"
    last_notified_window_end: datetime | None = None
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Schedule":
        watermark = row.get("last_notified_window_end")
        return cls(
            id=row["id"] if isinstance(row["id"], UUID) else UUID(str(row["id"])),
            owner_id=row["owner_id"] if isinstance(row["owner_id"], UUID) else UUID(str(row["owner_id"])),
            occurrence_unit=OccurrenceUnit(row["occurrence_unit"]),
            interval=int(row["interval"]),
            anchor_date=row["anchor_date"],
            next_due_date=row["next_due_date"],
            amount=Decimal(row["amount"]),
            type=row["type"],
            category=row["category"],
            payment_mode=row["payment_mode"],
            category2=row.get("category2"),
            category3=row.get("category3"),
            description=row.get("description"),
            status=row.get("status", "active"),
            last_notified_window_end=ensure_utc(watermark) if watermark is not None else None,
            version=int(row.get("version", 0)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["occurrence_unit"] = self.occurrence_unit.value
        return row

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def payload_template(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "type": self.type,
            "category": self.category,
            "category2": self.category2,
            "category3": self.category3,
            "payment_mode": self.payment_mode,
            "description": self.description,
        }


class RecurringLifecycle:
    def __init__(
        self,
        persistence: Persistence,
        timezones: TimezoneProvider,
        grace: timedelta = DEFAULT_GRACE,
        upcoming_days: int = 3,
    ) -> None:
        self.persistence = persistence
        self.timezones = timezones
        self.grace = grace
        self.upcoming_days = upcoming_days

    @staticmethod
    def _now(now: datetime | None) -> datetime:
        return ensure_utc(now) if now is not None else datetime.now(timezone.utc)

    def _load_owned(self, owner_id: UUID, schedule_id: UUID) -> Schedule:
        row = self.persistence.get_schedule(schedule_id)
        if row is None or row.get("status") == "deleted":
            raise NotFoundError("recurring transaction", schedule_id)
        schedule = Schedule.from_row(row)
        if schedule.owner_id != owner_id:
            raise ForbiddenError("recurring transaction", schedule_id)
        return schedule

    def _write(self, updated: Schedule, expected_version: int) -> Schedule:
        if not self.persistence.save_schedule(updated.to_row(), expected_version):
            raise ConcurrentModificationError(
                f"recurring transaction {updated.id} was modified concurrently", field="id"
            )
        return replace(updated, version=expected_version + 1)

    def create(self, owner_id: UUID, payload: RecurringTransactionInput, now: datetime | None = None) -> Schedule:
        now = self._now(now)
        anchor = payload.startDate
        if anchor is None:
            today = local_today(self.timezones.timezone_for(owner_id), now)
            anchor = add_occurrences(today, payload.occurrence, payload.interval)
        template = payload.payload_template()
        schedule = Schedule(
            id=uuid4(),
            owner_id=owner_id,
            occurrence_unit=payload.occurrence,
            interval=payload.interval,
            anchor_date=anchor,
            next_due_date=anchor,
            amount=template["amount"],
            type=template["type"],
            category=template["category"],
            category2=template["category2"],
            category3=template["category3"],
            payment_mode=template["payment_mode"],
            description=template["description"],
            created_at=now,
            updated_at=now,
        )
        self.persistence.create_schedule(schedule.to_row())
        logger.info("created recurring transaction %s for owner %s, first due %s", schedule.id, owner_id, anchor)
        return schedule

    def get(self, owner_id: UUID, schedule_id: UUID) -> Schedule:
        return self._load_owned(owner_id, schedule_id)

    def list_for_owner(self, owner_id: UUID) -> list[Schedule]:
        return [Schedule.from_row(r) for r in self.persistence.list_schedules(owner_id)]

    def list_overdue(self, owner_id: UUID, now: datetime | None = None) -> list[Schedule]:
        today = local_today(self.timezones.timezone_for(owner_id), self._now(now))
        return [s for s in self.list_for_owner(owner_id) if s.next_due_date < today]

    def list_upcoming(self, owner_id: UUID, now: datetime | None = None) -> list[Schedule]:
        today = local_today(self.timezones.timezone_for(owner_id), self._now(now))
        horizon = today + timedelta(days=self.upcoming_days)
        return [s for s in self.list_for_owner(owner_id) if today <= s.next_due_date < horizon]

    def project_occurrences(self, owner_id: UUID, schedule_id: UUID, start: date, end: date) -> list[date]:
        schedule = self._load_owned(owner_id, schedule_id)
        start = max(start, schedule.next_due_date)
        return occurrences_between(schedule.anchor_date, schedule.occurrence_unit, schedule.interval, start, end)

    def edit(
        self, owner_id: UUID, schedule_id: UUID, payload: RecurringTransactionInput, now: datetime | None = None
    ) -> Schedule:
        now = self._now(now)
        current = self._load_owned(owner_id, schedule_id)
        anchor = payload.startDate or current.anchor_date
        template = payload.payload_template()
        updated = replace(
            current,
            occurrence_unit=payload.occurrence,
            interval=payload.interval,
            anchor_date=anchor,
            amount=template["amount"],
            type=template["type"],
            category=template["category"],
            category2=template["category2"],
            category3=template["category3"],
            payment_mode=template["payment_mode"],
            description=template["description"],
            updated_at=now,
        )
        rule_changed = (
            anchor != current.anchor_date
            or payload.occurrence != current.occurrence_unit
            or payload.interval != current.interval
        )
        if rule_changed:
            today = local_today(self.timezones.timezone_for(owner_id), now)
            if today < anchor:
                updated.next_due_date = anchor
            else:
                updated.next_due_date = compute_next_due_date(anchor, payload.occurrence, payload.interval, today)
            logger.info(
                "recurring transaction %s rule changed, next due reset to %s", schedule_id, updated.next_due_date
            )
        return self._write(updated, current.version)

    def _advance(self, owner_id: UUID, schedule_id: UUID, now: datetime | None) -> tuple[Schedule, Schedule]:
        now = self._now(now)
        current = self._load_owned(owner_id, schedule_id)
        tz_name = self.timezones.timezone_for(owner_id)
        if not is_actionable(current.next_due_date, tz_name, now, self.grace):
            raise NotDueYetError(
                f"recurring transaction {schedule_id} is not due until {current.next_due_date}", field="id"
            )
        next_due = compute_next_due_date(
            current.anchor_date, current.occurrence_unit, current.interval, current.next_due_date
        )
        advanced = self._write(replace(current, next_due_date=next_due, updated_at=now), current.version)
        return current, advanced

    def mark_done(
        self, owner_id: UUID, schedule_id: UUID, now: datetime | None = None
    ) -> tuple[Schedule, dict[str, Any]]:
        previous, advanced = self._advance(owner_id, schedule_id, now)
        transaction = {
            "id": uuid4(),
            "owner_id": owner_id,
            "recurring_transaction_id": schedule_id,
            "transaction_date": previous.next_due_date,
            "created_at": advanced.updated_at,
            **previous.payload_template(),
        }
        try:
            created = self.persistence.create_transaction(transaction)
        except Exception:
            logger.exception("materializing recurring transaction %s failed, reverting due date", schedule_id)
            reverted = replace(advanced, next_due_date=previous.next_due_date)
            if not self.persistence.save_schedule(reverted.to_row(), advanced.version):
                logger.error("could not revert recurring transaction %s after failed materialization", schedule_id)
            raise
        logger.info(
            "recurring transaction %s marked done for %s, next due %s",
            schedule_id,
            previous.next_due_date,
            advanced.next_due_date,
        )
        return advanced, created

    def skip(self, owner_id: UUID, schedule_id: UUID, now: datetime | None = None) -> Schedule:
        previous, advanced = self._advance(owner_id, schedule_id, now)
        logger.info(
            "recurring transaction %s skipped %s, next due %s",
            schedule_id,
            previous.next_due_date,
            advanced.next_due_date,
        )
        return advanced

    def delete(self, owner_id: UUID, schedule_id: UUID, now: datetime | None = None) -> None:
        current = self._load_owned(owner_id, schedule_id)
        self._write(replace(current, status="deleted", updated_at=self._now(now)), current.version)
        logger.info("recurring transaction %s deleted", schedule_id)

    def record_notified(self, owner_ids: Iterable[UUID], window_end: datetime) -> int:
        """Advance the watermark on every notified owner's schedules that were due by ``window_end``."""
        window_end = ensure_utc(window_end)
        if window_end > datetime.now(timezone.utc):
            logger.warning("refusing notification watermark in the future: %s", window_end.isoformat())
            return 0
        updated = 0
        for owner_id in set(owner_ids):
            tz_name = self.timezones.timezone_for(owner_id)
            for row in self.persistence.list_schedules(owner_id):
                if self._advance_watermark(Schedule.from_row(row), tz_name, window_end):
                    updated += 1
        return updated

    def _advance_watermark(self, schedule: Schedule, tz_name: str, window_end: datetime) -> bool:
        if due_instant(schedule.next_due_date, tz_name) >= window_end:
            return False
        watermark = schedule.last_notified_window_end
        if watermark is not None and watermark >= window_end:
            return False
        # Watermark writes leave the schedule version untouched.
        return self.persistence.save_watermark(schedule.id, window_end)
