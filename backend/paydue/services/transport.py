from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from ..errors import TransportError

logger = logging.getLogger(__name__)

TOKEN_NOT_REGISTERED = "registration-token-not-registered"


@dataclass(frozen=True)
class NotificationMessage:
    owner_id: UUID
    token: str
    title: str
    body: str


@dataclass(frozen=True)
class SendResult:
    success: bool
    error_code: str | None = None


class NotificationTransport(Protocol):
    async def send_batch(self, messages: list[NotificationMessage]) -> list[SendResult]:
        """One result per message, in message order."""
        ...


class LoggingTransport:
    """Development transport: logs every message and reports success."""

    async def send_batch(self, messages: list[NotificationMessage]) -> list[SendResult]:
        for message in messages:
            logger.info("push to owner %s: %s", message.owner_id, message.title)
        return [SendResult(success=True) for _ in messages]


@dataclass
class InMemoryTransport:
    """Records every sent message; failures can be scripted per token or per call."""

    token_errors: dict[str, str] = field(default_factory=dict)
    failing_calls: set[int] = field(default_factory=set)
    sent: list[NotificationMessage] = field(default_factory=list)
    calls: int = 0

    async def send_batch(self, messages: list[NotificationMessage]) -> list[SendResult]:
        call_index = self.calls
        self.calls += 1
        if call_index in self.failing_calls:
            raise TransportError(f"transport unavailable for batch call {call_index}")
        results: list[SendResult] = []
        for message in messages:
            error_code = self.token_errors.get(message.token)
            if error_code:
                results.append(SendResult(success=False, error_code=error_code))
            else:
                self.sent.append(message)
                results.append(SendResult(success=True))
        return results
