"""Batched push-notification dispatch for due recurring transactions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterator, Sequence, TypeVar
from uuid import UUID

from ..persistence import Persistence
from .calendar import DueWindow
from .lifecycle import RecurringLifecycle
from .transport import TOKEN_NOT_REGISTERED, NotificationMessage, NotificationTransport, SendResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTIFICATION_BODY = "Tap here to check your pending payments"


def get_batch(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size < 1:
        raise ValueError("batch size must be >= 1")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def notification_title(due_count: int) -> str:
    return f"{due_count} Payments due" if due_count > 1 else "1 Payment due"


@dataclass
class DispatchResult:
    batches: int = 0
    batches_failed: int = 0
    sent: int = 0
    failed: int = 0
    invalid_tokens: set[str] = field(default_factory=set)
    notified_owners: set[UUID] = field(default_factory=set)
    skipped_reason: str | None = None

    @property
    def notifications_sent(self) -> bool:
        return self.sent > 0


class NotificationDispatcher:
    def __init__(
        self,
        persistence: Persistence,
        transport: NotificationTransport,
        lifecycle: RecurringLifecycle,
        batch_size: int = 500,
        timeout_seconds: float | None = 30.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch size must be >= 1")
        self.persistence = persistence
        self.transport = transport
        self.lifecycle = lifecycle
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds

    def build_messages(self, due_counts: dict[UUID, int]) -> list[NotificationMessage]:
        owners = [owner for owner, count in due_counts.items() if count > 0]
        if not owners:
            return []
        messages = []
        for owner_id, token in self.persistence.load_device_tokens(owners):
            count = due_counts.get(owner_id, 0)
            if count <= 0:
                continue
            messages.append(
                NotificationMessage(owner_id=owner_id, token=token, title=notification_title(count), body=NOTIFICATION_BODY)
            )
        return messages

    async def dispatch(self, due_counts: dict[UUID, int], window: DueWindow) -> DispatchResult:
        result = DispatchResult()
        if not any(count > 0 for count in due_counts.values()):
            result.skipped_reason = "no_due_owners"
            logger.info("no due owners for window ending %s", window.end.isoformat())
            return result

        messages = self.build_messages(due_counts)
        if not messages:
            result.skipped_reason = "no_tokens"
            logger.info("no notification tokens for %d due owners", len(due_counts))
            return result

        batches = list(get_batch(messages, self.batch_size))
        result.batches = len(batches)
        lock = asyncio.Lock()
        await asyncio.gather(*(self._send_batch(index, batch, result, lock) for index, batch in enumerate(batches)))

        if result.invalid_tokens:
            pruned = self.persistence.delete_tokens(result.invalid_tokens)
            logger.info("pruned %d unregistered notification tokens", pruned)

        if result.notified_owners:
            logger.info("notified owners: %s", sorted(str(o) for o in result.notified_owners))
            self.lifecycle.record_notified(result.notified_owners, window.end)

        logger.info(
            "dispatch finished: %d batches (%d failed), %d sent, %d failed",
            result.batches,
            result.batches_failed,
            result.sent,
            result.failed,
        )
        return result

    async def _send_batch(
        self, index: int, batch: list[NotificationMessage], result: DispatchResult, lock: asyncio.Lock
    ) -> None:
        try:
            if self.timeout_seconds:
                responses = await asyncio.wait_for(self.transport.send_batch(batch), timeout=self.timeout_seconds)
            else:
                responses = await self.transport.send_batch(batch)
        except asyncio.TimeoutError:
            logger.error("notification batch %d timed out after %ss", index, self.timeout_seconds)
            async with lock:
                result.batches_failed += 1
                result.failed += len(batch)
            return
        except Exception:
            # One failed batch must not stop the others; its owners stay due for the next pass.
            logger.exception("notification batch %d failed", index)
            async with lock:
                result.batches_failed += 1
                result.failed += len(batch)
            return

        if len(responses) != len(batch):
            logger.error("notification batch %d returned %d results for %d messages", index, len(responses), len(batch))
            responses = list(responses)[: len(batch)]
            responses += [SendResult(success=False, error_code="missing-result")] * (len(batch) - len(responses))

        async with lock:
            for message, response in zip(batch, responses):
                if response.success:
                    result.sent += 1
                    result.notified_owners.add(message.owner_id)
                    continue
                result.failed += 1
                if response.error_code == TOKEN_NOT_REGISTERED:
                    result.invalid_tokens.add(message.token)
                else:
                    logger.warning(
                        "notification to owner %s failed: %s", message.owner_id, response.error_code or "unknown error"
                    )
