import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from paydue.persistence import InMemoryPersistence
from paydue.schemas import RecurringTransactionInput
from paydue.services.calendar import DueWindow, TimezoneProvider
from paydue.services.dispatcher import NOTIFICATION_BODY, NotificationDispatcher, get_batch, notification_title
from paydue.services.lifecycle import RecurringLifecycle
from paydue.services.transport import TOKEN_NOT_REGISTERED, InMemoryTransport, SendResult
from paydue.store import InMemoryStore

WINDOW = DueWindow.ending_at(datetime(2024, 3, 10, 0, 30, tzinfo=timezone.utc), timedelta(hours=1))


def _setup(transport, batch_size: int = 500, timeout_seconds: float | None = 30.0):
    persistence = InMemoryPersistence(InMemoryStore())
    lifecycle = RecurringLifecycle(persistence, TimezoneProvider(persistence, "UTC"))
    dispatcher = NotificationDispatcher(
        persistence, transport, lifecycle, batch_size=batch_size, timeout_seconds=timeout_seconds
    )
    return persistence, lifecycle, dispatcher


def _due_schedule(lifecycle: RecurringLifecycle, owner) -> None:
    lifecycle.create(
        owner,
        RecurringTransactionInput(
            occurrence="week",
            interval=1,
            startDate=date(2024, 3, 10),
            amount=Decimal("5.00"),
            type="expense",
            category="Groceries",
            paymentMode="Cash",
        ),
    )


def test_notification_title() -> None:
    assert notification_title(1) == "1 Payment due"
    assert notification_title(3) == "3 Payments due"


def test_get_batch() -> None:
    assert list(get_batch(list(range(5)), 2)) == [[0, 1], [2, 3], [4]]
    assert list(get_batch([], 500)) == []
    with pytest.raises(ValueError):
        list(get_batch([1], 0))


def test_dispatch_prunes_unregistered_tokens_and_records_watermark() -> None:
    transport = InMemoryTransport(token_errors={"stale-token": TOKEN_NOT_REGISTERED})
    persistence, lifecycle, dispatcher = _setup(transport)
    owner = uuid4()
    _due_schedule(lifecycle, owner)
    _due_schedule(lifecycle, owner)
    persistence.save_device_token(owner, "good-token")
    persistence.save_device_token(owner, "stale-token")

    result = asyncio.run(dispatcher.dispatch({owner: 2}, WINDOW))

    assert result.notifications_sent
    assert result.sent == 1
    assert result.failed == 1
    assert result.invalid_tokens == {"stale-token"}
    assert [m.token for m in transport.sent] == ["good-token"]
    assert transport.sent[0].title == "2 Payments due"
    assert transport.sent[0].body == NOTIFICATION_BODY
    assert persistence.load_device_tokens([owner]) == [(owner, "good-token")]
    assert all(r["last_notified_window_end"] == WINDOW.end for r in persistence.list_schedules(owner))


def test_failed_batch_does_not_stop_the_others() -> None:
    transport = InMemoryTransport(failing_calls={1})
    persistence, lifecycle, dispatcher = _setup(transport, batch_size=1)
    owners = [uuid4(), uuid4(), uuid4()]
    for index, owner in enumerate(owners):
        _due_schedule(lifecycle, owner)
        persistence.save_device_token(owner, f"token-{index}")

    result = asyncio.run(dispatcher.dispatch({owner: 1 for owner in owners}, WINDOW))

    assert result.batches == 3
    assert result.batches_failed == 1
    assert result.sent == 2
    assert result.notified_owners == {owners[0], owners[2]}
    assert persistence.list_schedules(owners[1])[0]["last_notified_window_end"] is None
    assert persistence.list_schedules(owners[0])[0]["last_notified_window_end"] == WINDOW.end
    assert len(persistence.load_device_tokens(owners)) == 3


def test_nothing_due_sends_nothing() -> None:
    transport = InMemoryTransport()
    _, _, dispatcher = _setup(transport)
    result = asyncio.run(dispatcher.dispatch({}, WINDOW))
    assert result.skipped_reason == "no_due_owners"
    assert not result.notifications_sent
    assert transport.calls == 0


def test_due_owners_without_tokens() -> None:
    transport = InMemoryTransport()
    _, lifecycle, dispatcher = _setup(transport)
    owner = uuid4()
    _due_schedule(lifecycle, owner)
    result = asyncio.run(dispatcher.dispatch({owner: 1}, WINDOW))
    assert result.skipped_reason == "no_tokens"
    assert not result.notifications_sent
    assert transport.calls == 0


def test_other_delivery_errors_keep_the_token() -> None:
    transport = InMemoryTransport(token_errors={"flaky": "internal-error"})
    persistence, lifecycle, dispatcher = _setup(transport)
    owner = uuid4()
    _due_schedule(lifecycle, owner)
    persistence.save_device_token(owner, "flaky")

    result = asyncio.run(dispatcher.dispatch({owner: 1}, WINDOW))

    assert result.failed == 1
    assert not result.invalid_tokens
    assert not result.notifications_sent
    assert persistence.load_device_tokens([owner]) == [(owner, "flaky")]
    assert persistence.list_schedules(owner)[0]["last_notified_window_end"] is None


class _SlowTransport:
    async def send_batch(self, messages):
        await asyncio.sleep(1)
        return [SendResult(success=True) for _ in messages]


def test_slow_batch_times_out_as_failed() -> None:
    persistence, lifecycle, dispatcher = _setup(_SlowTransport(), timeout_seconds=0.01)
    owner = uuid4()
    _due_schedule(lifecycle, owner)
    persistence.save_device_token(owner, "token")

    result = asyncio.run(dispatcher.dispatch({owner: 1}, WINDOW))

    assert result.batches_failed == 1
    assert result.failed == 1
    assert not result.notified_owners
