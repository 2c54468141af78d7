from uuid import UUID


class PaydueError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, field: str = "body") -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ScheduleValidationError(PaydueError, ValueError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(PaydueError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: UUID) -> None:
        super().__init__(f"{entity} not found: {entity_id}", field="id")
        self.entity_id = entity_id


class ForbiddenError(PaydueError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, entity: str, entity_id: UUID) -> None:
        super().__init__(f"{entity} is owned by another user: {entity_id}", field="id")
        self.entity_id = entity_id


class NotDueYetError(PaydueError):
    code = "NOT_DUE_YET"
    status_code = 409


class ConcurrentModificationError(PaydueError):
    code = "CONFLICT"
    status_code = 409


class StorageError(PaydueError):
    code = "STORAGE_ERROR"
    status_code = 500


class AggregationError(PaydueError):
    """Due schedules could not be read; the whole pass is abandoned."""

    code = "AGGREGATION_FAILED"
    status_code = 503


class TransportError(PaydueError):
    """A notification batch could not be delivered to the push transport."""

    code = "TRANSPORT_ERROR"
    status_code = 502
