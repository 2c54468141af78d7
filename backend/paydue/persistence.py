from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .errors import StorageError
from .services.calendar import ensure_utc
from .store import InMemoryStore, store

logger = logging.getLogger(__name__)

# Largest UTC offset in use (Pacific/Kiritimati). Any owner-local date that
# has already started at a given instant is on or before this date.
_MAX_UTC_OFFSET = timedelta(hours=14)

SCHEDULE_COLUMNS = [
    "id",
    "owner_id",
    "occurrence_unit",
    "interval",
    "anchor_date",
    "next_due_date",
    "last_notified_window_end",
    "status",
    "amount",
    "type",
    "category",
    "category2",
    "category3",
    "payment_mode",
    "description",
    "version",
    "created_at",
    "updated_at",
]

TRANSACTION_COLUMNS = [
    "id",
    "owner_id",
    "recurring_transaction_id",
    "transaction_date",
    "amount",
    "type",
    "category",
    "category2",
    "category3",
    "payment_mode",
    "description",
    "created_at",
]


def latest_local_date(instant: datetime) -> date:
    return (ensure_utc(instant) + _MAX_UTC_OFFSET).date()


class Persistence:
    def load_active_schedules_due_before(self, instant: datetime) -> list[dict[str, Any]]:
        """Active schedules whose next due date may have started before ``instant``.

        The result is a superset across timezones; callers refine it per owner.
        """
        raise NotImplementedError

    def get_schedule(self, schedule_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_schedules(self, owner_id: UUID, include_deleted: bool = False) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_schedule(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def save_schedule(self, row: dict[str, Any], expected_version: int) -> bool:
        """Compare-and-set write; False when the stored version moved on.

        The notification watermark is owned by ``save_watermark`` and is left as stored.
        """
        raise NotImplementedError

    def save_watermark(self, schedule_id: UUID, window_end: datetime) -> bool:
        """Move an active schedule's watermark forward to ``window_end``; never backward."""
        raise NotImplementedError

    def load_device_tokens(self, owner_ids: Iterable[UUID]) -> list[tuple[UUID, str]]:
        raise NotImplementedError

    def save_device_token(self, owner_id: UUID, token: str) -> None:
        raise NotImplementedError

    def delete_tokens(self, tokens: Iterable[str]) -> int:
        raise NotImplementedError

    def create_transaction(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_transactions(self, owner_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_owner_timezone(self, owner_id: UUID) -> str | None:
        raise NotImplementedError

    def set_owner_timezone(self, owner_id: UUID, timezone_name: str) -> None:
        raise NotImplementedError

    def debug_counts(self) -> dict[str, int]:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def __init__(self, backing_store: InMemoryStore | None = None) -> None:
        self.store = backing_store or store

    def load_active_schedules_due_before(self, instant: datetime) -> list[dict[str, Any]]:
        cutoff = latest_local_date(instant)
        with self.store.lock:
            return [
                dict(r)
                for r in self.store.recurring_transactions.values()
                if r["status"] == "active" and r["next_due_date"] <= cutoff
            ]

    def get_schedule(self, schedule_id: UUID) -> dict[str, Any] | None:
        with self.store.lock:
            row = self.store.recurring_transactions.get(schedule_id)
            return dict(row) if row is not None else None

    def list_schedules(self, owner_id: UUID, include_deleted: bool = False) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [
                dict(r)
                for r in self.store.recurring_transactions.values()
                if r["owner_id"] == owner_id and (include_deleted or r["status"] == "active")
            ]
        return sorted(rows, key=lambda r: (r["next_due_date"], r["created_at"]))

    def create_schedule(self, row: dict[str, Any]) -> dict[str, Any]:
        with self.store.lock:
            self.store.recurring_transactions[row["id"]] = dict(row)
        return dict(row)

    def save_schedule(self, row: dict[str, Any], expected_version: int) -> bool:
        with self.store.lock:
            current = self.store.recurring_transactions.get(row["id"])
            if current is None or current["version"] != expected_version:
                return False
            self.store.recurring_transactions[row["id"]] = {
                **row,
                "last_notified_window_end": current["last_notified_window_end"],
                "version": expected_version + 1,
            }
            return True

    def save_watermark(self, schedule_id: UUID, window_end: datetime) -> bool:
        with self.store.lock:
            current = self.store.recurring_transactions.get(schedule_id)
            if current is None or current["status"] != "active":
                return False
            watermark = current["last_notified_window_end"]
            if watermark is not None and watermark >= window_end:
                return False
            current["last_notified_window_end"] = window_end
            return True

    def load_device_tokens(self, owner_ids: Iterable[UUID]) -> list[tuple[UUID, str]]:
        wanted = set(owner_ids)
        with self.store.lock:
            return [(owner, token) for token, owner in self.store.notification_tokens.items() if owner in wanted]

    def save_device_token(self, owner_id: UUID, token: str) -> None:
        with self.store.lock:
            self.store.notification_tokens[token] = owner_id

    def delete_tokens(self, tokens: Iterable[str]) -> int:
        deleted = 0
        with self.store.lock:
            for token in set(tokens):
                if self.store.notification_tokens.pop(token, None) is not None:
                    deleted += 1
        return deleted

    def create_transaction(self, row: dict[str, Any]) -> dict[str, Any]:
        with self.store.lock:
            self.store.transactions[row["id"]] = dict(row)
        return dict(row)

    def list_transactions(self, owner_id: UUID) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [dict(t) for t in self.store.transactions.values() if t["owner_id"] == owner_id]
        return sorted(rows, key=lambda t: (t["transaction_date"], t["created_at"]), reverse=True)

    def get_owner_timezone(self, owner_id: UUID) -> str | None:
        return self.store.owner_timezones.get(owner_id)

    def set_owner_timezone(self, owner_id: UUID, timezone_name: str) -> None:
        self.store.owner_timezones[owner_id] = timezone_name

    def debug_counts(self) -> dict[str, int]:
        with self.store.lock:
            return {
                "recurringTransactions": len(self.store.recurring_transactions),
                "activeRecurringTransactions": sum(
                    1 for r in self.store.recurring_transactions.values() if r["status"] == "active"
                ),
                "transactions": len(self.store.transactions),
                "notificationTokens": len(self.store.notification_tokens),
                "ownerTimezones": len(self.store.owner_timezones),
            }


class PostgresPersistence(Persistence):
    def __init__(self, database_url: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._schema_ready = False

    def _run(self, sql: Any, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql) if isinstance(sql, str) else sql, params or {})
                if result.returns_rows:
                    return [dict(row._mapping) for row in result.fetchall()]
                return []
        except SQLAlchemyError as exc:
            logger.error("postgres error: %s", exc.__class__.__name__)
            raise StorageError(f"postgres error: {exc.__class__.__name__}") from exc

    def _rowcount(self, sql: Any, params: dict[str, Any]) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql) if isinstance(sql, str) else sql, params)
                return result.rowcount
        except SQLAlchemyError as exc:
            logger.error("postgres error: %s", exc.__class__.__name__)
            raise StorageError(f"postgres error: {exc.__class__.__name__}") from exc

    def _ensure_tables(self) -> None:
        if self._schema_ready:
            return
        self._run(
            """
            create table if not exists recurring_transactions (
              id uuid primary key,
              owner_id uuid not null,
              occurrence_unit text not null,
              interval integer not null check (interval >= 1),
              anchor_date date not null,
              next_due_date date not null,
              last_notified_window_end timestamptz,
              status text not null default 'active',
              amount numeric(14,2) not null,
              type text not null,
              category text not null,
              category2 text,
              category3 text,
              payment_mode text not null,
              description text,
              version integer not null default 0,
              created_at timestamptz not null default now(),
              updated_at timestamptz not null default now(),
              check (next_due_date >= anchor_date)
            )
            """
        )
        self._run(
            "create index if not exists idx_recurring_due on recurring_transactions(status, next_due_date)"
        )
        self._run(
            "create index if not exists idx_recurring_owner on recurring_transactions(owner_id, next_due_date)"
        )
        self._run(
            """
            create table if not exists transactions (
              id uuid primary key,
              owner_id uuid not null,
              recurring_transaction_id uuid references recurring_transactions(id),
              transaction_date date not null,
              amount numeric(14,2) not null,
              type text not null,
              category text not null,
              category2 text,
              category3 text,
              payment_mode text not null,
              description text,
              created_at timestamptz not null default now()
            )
            """
        )
        self._run(
            """
            create table if not exists notification_tokens (
              token text primary key,
              owner_id uuid not null,
              created_at timestamptz not null default now()
            )
            """
        )
        self._run("create index if not exists idx_notification_tokens_owner on notification_tokens(owner_id)")
        self._run(
            """
            create table if not exists owner_settings (
              owner_id uuid primary key,
              timezone text not null,
              updated_at timestamptz not null default now()
            )
            """
        )
        self._schema_ready = True

    def load_active_schedules_due_before(self, instant: datetime) -> list[dict[str, Any]]:
        self._ensure_tables()
        return self._run(
            """
            select * from recurring_transactions
            where status = 'active' and next_due_date <= :cutoff
            order by owner_id, next_due_date
            """,
            {"cutoff": latest_local_date(instant)},
        )

    def get_schedule(self, schedule_id: UUID) -> dict[str, Any] | None:
        self._ensure_tables()
        rows = self._run("select * from recurring_transactions where id = :id limit 1", {"id": schedule_id})
        return rows[0] if rows else None

    def list_schedules(self, owner_id: UUID, include_deleted: bool = False) -> list[dict[str, Any]]:
        self._ensure_tables()
        status_filter = "" if include_deleted else "and status = 'active'"
        return self._run(
            f"""
            select * from recurring_transactions
            where owner_id = :owner_id {status_filter}
            order by next_due_date, created_at
            """,
            {"owner_id": owner_id},
        )

    def create_schedule(self, row: dict[str, Any]) -> dict[str, Any]:
        self._ensure_tables()
        cols = ", ".join(SCHEDULE_COLUMNS)
        values = ", ".join(f":{c}" for c in SCHEDULE_COLUMNS)
        return self._run(
            f"insert into recurring_transactions ({cols}) values ({values}) returning *",
            {c: row.get(c) for c in SCHEDULE_COLUMNS},
        )[0]

    def save_schedule(self, row: dict[str, Any], expected_version: int) -> bool:
        self._ensure_tables()
        fixed = {"id", "owner_id", "version", "created_at", "last_notified_window_end"}
        mutable = [c for c in SCHEDULE_COLUMNS if c not in fixed]
        assignments = ", ".join(f"{c} = :{c}" for c in mutable)
        params = {c: row.get(c) for c in mutable}
        params.update({"id": row["id"], "expected_version": expected_version})
        updated = self._rowcount(
            f"""
            update recurring_transactions
            set {assignments}, version = version + 1
            where id = :id and version = :expected_version
            """,
            params,
        )
        return updated == 1

    def save_watermark(self, schedule_id: UUID, window_end: datetime) -> bool:
        self._ensure_tables()
        updated = self._rowcount(
            """
            update recurring_transactions
            set last_notified_window_end = :window_end
            where id = :id and status = 'active'
              and (last_notified_window_end is null or last_notified_window_end < :window_end)
            """,
            {"id": schedule_id, "window_end": window_end},
        )
        return updated == 1

    def load_device_tokens(self, owner_ids: Iterable[UUID]) -> list[tuple[UUID, str]]:
        ids = list(owner_ids)
        if not ids:
            return []
        self._ensure_tables()
        stmt = text(
            "select owner_id, token from notification_tokens where owner_id in :owner_ids order by created_at"
        ).bindparams(bindparam("owner_ids", expanding=True))
        return [(r["owner_id"], r["token"]) for r in self._run(stmt, {"owner_ids": ids})]

    def save_device_token(self, owner_id: UUID, token: str) -> None:
        self._ensure_tables()
        self._run(
            """
            insert into notification_tokens (token, owner_id) values (:token, :owner_id)
            on conflict (token) do update set owner_id = excluded.owner_id
            """,
            {"token": token, "owner_id": owner_id},
        )

    def delete_tokens(self, tokens: Iterable[str]) -> int:
        values = sorted(set(tokens))
        if not values:
            return 0
        self._ensure_tables()
        stmt = text("delete from notification_tokens where token in :tokens").bindparams(
            bindparam("tokens", expanding=True)
        )
        return self._rowcount(stmt, {"tokens": values})

    def create_transaction(self, row: dict[str, Any]) -> dict[str, Any]:
        self._ensure_tables()
        cols = ", ".join(TRANSACTION_COLUMNS)
        values = ", ".join(f":{c}" for c in TRANSACTION_COLUMNS)
        return self._run(
            f"insert into transactions ({cols}) values ({values}) returning *",
            {c: row.get(c) for c in TRANSACTION_COLUMNS},
        )[0]

    def list_transactions(self, owner_id: UUID) -> list[dict[str, Any]]:
        self._ensure_tables()
        return self._run(
            "select * from transactions where owner_id = :owner_id order by transaction_date desc, created_at desc",
            {"owner_id": owner_id},
        )

    def get_owner_timezone(self, owner_id: UUID) -> str | None:
        self._ensure_tables()
        rows = self._run("select timezone from owner_settings where owner_id = :owner_id", {"owner_id": owner_id})
        return rows[0]["timezone"] if rows else None

    def set_owner_timezone(self, owner_id: UUID, timezone_name: str) -> None:
        self._ensure_tables()
        self._run(
            """
            insert into owner_settings (owner_id, timezone) values (:owner_id, :timezone)
            on conflict (owner_id) do update set timezone = excluded.timezone, updated_at = now()
            """,
            {"owner_id": owner_id, "timezone": timezone_name},
        )

    def debug_counts(self) -> dict[str, int]:
        self._ensure_tables()
        queries = {
            "recurringTransactions": "select count(*) as c from recurring_transactions",
            "activeRecurringTransactions": "select count(*) as c from recurring_transactions where status = 'active'",
            "transactions": "select count(*) as c from transactions",
            "notificationTokens": "select count(*) as c from notification_tokens",
            "ownerTimezones": "select count(*) as c from owner_settings",
        }
        return {key: int(self._run(sql)[0]["c"]) for key, sql in queries.items()}


def get_persistence() -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url)
    return InMemoryPersistence()
