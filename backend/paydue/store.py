from threading import RLock
from uuid import UUID


class InMemoryStore:
    def __init__(self) -> None:
        # Guards compare-and-set writes on schedules.
        self.lock = RLock()
        self.recurring_transactions: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        # token -> owner id
        self.notification_tokens: dict[str, UUID] = {}
        self.owner_timezones: dict[UUID, str] = {}

    def reset(self) -> None:
        with self.lock:
            self.recurring_transactions.clear()
            self.transactions.clear()
            self.notification_tokens.clear()
            self.owner_timezones.clear()


store = InMemoryStore()
