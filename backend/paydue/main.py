import asyncio
import logging
from datetime import date, timedelta
from typing import Any
from uuid import UUID

from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .errors import PaydueError, ScheduleValidationError
from .persistence import get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    DueNotificationRunRequest,
    DueNotificationRunResponse,
    HealthResponse,
    MarkDoneResponse,
    NotificationTokenCreate,
    NotificationTokenResponse,
    OccurrencesResponse,
    RecurringTransactionInput,
    RecurringTransactionResponse,
    TimezoneResponse,
    TimezoneUpdate,
)
from .services.aggregation import DueAggregator
from .services.calendar import TimezoneProvider
from .services.dispatcher import NotificationDispatcher
from .services.lifecycle import RecurringLifecycle, Schedule
from .services.notification_pass import DueNotificationPass
from .services.transport import LoggingTransport

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="paydue API",
    version="0.1.0",
    description="Recurring transactions, due-date tracking and batched payment reminders.",
)

MAX_PROJECTION_DAYS = 3660

persistence = get_persistence()
timezones = TimezoneProvider(persistence, settings.default_timezone)
due_window = timedelta(minutes=settings.due_window_minutes)
lifecycle = RecurringLifecycle(persistence, timezones, grace=due_window, upcoming_days=settings.upcoming_days)
aggregator = DueAggregator(persistence, timezones)
dispatcher = NotificationDispatcher(
    persistence,
    LoggingTransport(),
    lifecycle,
    batch_size=settings.notification_batch_size,
    timeout_seconds=settings.transport_timeout_seconds,
)
due_notification_pass = DueNotificationPass(aggregator, dispatcher, due_window)
due_notification_task: asyncio.Task | None = None


def _require_user(x_user_id: str | None) -> UUID:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="authentication required")
    try:
        return UUID(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="authentication required") from exc


def build_error_response(
    details: list[ApiErrorDetail],
    message: str = "Invalid request payload",
    code: str = "VALIDATION_ERROR",
    status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
) -> JSONResponse:
    payload = ApiErrorResponse(error=ApiErrorPayload(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(PaydueError)
async def paydue_error_handler(request: Request, exc: PaydueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return build_error_response(
        [ApiErrorDetail(field=exc.field, message=exc.message)],
        message=exc.message,
        code=exc.code,
        status_code=exc.status_code,
    )


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


def _to_response(schedule: Schedule) -> RecurringTransactionResponse:
    return RecurringTransactionResponse(
        id=schedule.id,
        occurrence=schedule.occurrence_unit,
        interval=schedule.interval,
        anchorDate=schedule.anchor_date,
        executionDate=schedule.next_due_date,
        status=schedule.status,
        lastNotifiedWindowEnd=schedule.last_notified_window_end,
        amount=schedule.amount,
        type=schedule.type,
        category=schedule.category,
        category2=schedule.category2,
        category3=schedule.category3,
        paymentMode=schedule.payment_mode,
        description=schedule.description,
    )


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.put("/api/v1/profile/timezone", response_model=TimezoneResponse)
async def update_timezone(payload: TimezoneUpdate, x_user_id: str | None = Header(default=None)) -> TimezoneResponse:
    owner_id = _require_user(x_user_id)
    persistence.set_owner_timezone(owner_id, payload.timezone)
    return TimezoneResponse(timezone=payload.timezone)


@app.post("/api/v1/notification-tokens", response_model=NotificationTokenResponse, status_code=201)
async def register_notification_token(
    payload: NotificationTokenCreate, x_user_id: str | None = Header(default=None)
) -> NotificationTokenResponse:
    owner_id = _require_user(x_user_id)
    persistence.save_device_token(owner_id, payload.token)
    return NotificationTokenResponse(token=payload.token, registered=True)


@app.post("/api/v1/recurring-transactions", response_model=RecurringTransactionResponse, status_code=201)
async def create_recurring_transaction(
    payload: RecurringTransactionInput, x_user_id: str | None = Header(default=None)
) -> RecurringTransactionResponse:
    owner_id = _require_user(x_user_id)
    return _to_response(lifecycle.create(owner_id, payload))


@app.get("/api/v1/recurring-transactions", response_model=list[RecurringTransactionResponse])
async def list_recurring_transactions(x_user_id: str | None = Header(default=None)) -> list[RecurringTransactionResponse]:
    owner_id = _require_user(x_user_id)
    return [_to_response(s) for s in lifecycle.list_for_owner(owner_id)]


@app.get("/api/v1/recurring-transactions/overdue", response_model=list[RecurringTransactionResponse])
async def list_overdue(x_user_id: str | None = Header(default=None)) -> list[RecurringTransactionResponse]:
    owner_id = _require_user(x_user_id)
    return [_to_response(s) for s in lifecycle.list_overdue(owner_id)]


@app.get("/api/v1/recurring-transactions/upcoming", response_model=list[RecurringTransactionResponse])
async def list_upcoming(x_user_id: str | None = Header(default=None)) -> list[RecurringTransactionResponse]:
    owner_id = _require_user(x_user_id)
    return [_to_response(s) for s in lifecycle.list_upcoming(owner_id)]


@app.get("/api/v1/recurring-transactions/{transaction_id}", response_model=RecurringTransactionResponse)
async def get_recurring_transaction(
    transaction_id: UUID, x_user_id: str | None = Header(default=None)
) -> RecurringTransactionResponse:
    owner_id = _require_user(x_user_id)
    return _to_response(lifecycle.get(owner_id, transaction_id))


@app.get("/api/v1/recurring-transactions/{transaction_id}/occurrences", response_model=OccurrencesResponse)
async def list_occurrences(
    transaction_id: UUID,
    start: date | None = None,
    end: date | None = None,
    x_user_id: str | None = Header(default=None),
) -> OccurrencesResponse:
    owner_id = _require_user(x_user_id)
    schedule = lifecycle.get(owner_id, transaction_id)
    start = start or schedule.next_due_date
    end = end or start + timedelta(days=365)
    if end < start:
        raise ScheduleValidationError("end must be >= start", field="end")
    if (end - start).days > MAX_PROJECTION_DAYS:
        raise ScheduleValidationError(f"range must not exceed {MAX_PROJECTION_DAYS} days", field="end")
    return OccurrencesResponse(id=transaction_id, dates=lifecycle.project_occurrences(owner_id, transaction_id, start, end))


@app.put("/api/v1/recurring-transactions/{transaction_id}", response_model=RecurringTransactionResponse)
async def edit_recurring_transaction(
    transaction_id: UUID, payload: RecurringTransactionInput, x_user_id: str | None = Header(default=None)
) -> RecurringTransactionResponse:
    owner_id = _require_user(x_user_id)
    return _to_response(lifecycle.edit(owner_id, transaction_id, payload))


@app.post("/api/v1/recurring-transactions/{transaction_id}/done", response_model=MarkDoneResponse)
async def mark_recurring_transaction_done(
    transaction_id: UUID, x_user_id: str | None = Header(default=None)
) -> MarkDoneResponse:
    owner_id = _require_user(x_user_id)
    schedule, transaction = lifecycle.mark_done(owner_id, transaction_id)
    return MarkDoneResponse(
        recurringTransaction=_to_response(schedule),
        transactionId=transaction["id"],
        transactionDate=transaction["transaction_date"],
    )


@app.post("/api/v1/recurring-transactions/{transaction_id}/skip", response_model=RecurringTransactionResponse)
async def skip_recurring_transaction(
    transaction_id: UUID, x_user_id: str | None = Header(default=None)
) -> RecurringTransactionResponse:
    owner_id = _require_user(x_user_id)
    return _to_response(lifecycle.skip(owner_id, transaction_id))


@app.delete("/api/v1/recurring-transactions/{transaction_id}", status_code=204)
async def delete_recurring_transaction(transaction_id: UUID, x_user_id: str | None = Header(default=None)) -> Response:
    owner_id = _require_user(x_user_id)
    lifecycle.delete(owner_id, transaction_id)
    return Response(status_code=204)


@app.post("/api/v1/jobs/due-notifications/run", response_model=DueNotificationRunResponse)
async def run_due_notifications(payload: DueNotificationRunRequest | None = None) -> DueNotificationRunResponse:
    result = await due_notification_pass.run(payload.now if payload else None)
    return DueNotificationRunResponse(
        notificationsSent=result.notifications_sent,
        noTokens=result.no_tokens,
        windowStart=result.window.start,
        windowEnd=result.window.end,
        dueOwners=result.due_owners,
        sent=result.dispatch.sent,
        failed=result.dispatch.failed,
        invalidTokensPruned=len(result.dispatch.invalid_tokens),
    )


@app.get("/api/v1/debug/state")
async def debug_state() -> dict[str, Any]:
    return persistence.debug_counts()


async def _due_notification_loop() -> None:
    while True:
        await asyncio.sleep(settings.due_notification_interval_minutes * 60)
        try:
            await due_notification_pass.run()
        except Exception:
            # Keep the loop alive; still-due schedules are picked up next tick.
            logger.exception("due notification pass failed")
            continue


@app.on_event("startup")
async def on_startup() -> None:
    global due_notification_task
    if settings.due_notification_loop_enabled and due_notification_task is None:
        logger.info("starting due notification loop every %d minutes", settings.due_notification_interval_minutes)
        due_notification_task = asyncio.create_task(_due_notification_loop())


@app.on_event("shutdown")
async def on_shutdown() -> None:
    global due_notification_task
    if due_notification_task is not None:
        due_notification_task.cancel()
        due_notification_task = None


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
