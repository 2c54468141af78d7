from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .services.due_dates import OccurrenceUnit


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    investment = "investment"


class ScheduleStatus(str, Enum):
    active = "active"
    deleted = "deleted"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str


class RecurringTransactionInput(BaseModel):
    occurrence: OccurrenceUnit
    interval: int = Field(ge=1, le=500)
    startDate: Optional[date] = None
    amount: Decimal = Field(gt=Decimal("0"), decimal_places=2)
    type: TransactionType
    category: str = Field(min_length=1)
    category2: Optional[str] = None
    category3: Optional[str] = None
    paymentMode: str = Field(min_length=1)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("category", "paymentMode")
    @classmethod
    def strip_required(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("category2", "category3")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        v = value.strip()
        return v or None

    @model_validator(mode="after")
    def validate_categories(self) -> "RecurringTransactionInput":
        if self.category2 is not None and self.category2 == self.category:
            raise ValueError("categories must be unique")
        if self.category3 is not None and self.category3 in {self.category, self.category2}:
            raise ValueError("categories must be unique")
        return self

    def payload_template(self) -> dict:
        return {
            "amount": self.amount,
            "type": self.type.value,
            "category": self.category,
            "category2": self.category2,
            "category3": self.category3,
            "payment_mode": self.paymentMode,
            "description": self.description,
        }


class RecurringTransactionResponse(BaseModel):
    id: UUID
    occurrence: OccurrenceUnit
    interval: int
    anchorDate: date
    executionDate: date
    status: ScheduleStatus
    lastNotifiedWindowEnd: Optional[datetime] = None
    amount: Decimal
    type: TransactionType
    category: str
    category2: Optional[str] = None
    category3: Optional[str] = None
    paymentMode: str
    description: Optional[str] = None


class MarkDoneResponse(BaseModel):
    recurringTransaction: RecurringTransactionResponse
    transactionId: UUID
    transactionDate: date


class OccurrencesResponse(BaseModel):
    id: UUID
    dates: list[date]


class NotificationTokenCreate(BaseModel):
    token: str = Field(min_length=1, max_length=4096)


class NotificationTokenResponse(BaseModel):
    token: str
    registered: bool


class TimezoneUpdate(BaseModel):
    timezone: str

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        v = value.strip()
        if v not in pytz.all_timezones_set:
            raise ValueError("must be an IANA timezone name")
        return v


class TimezoneResponse(BaseModel):
    timezone: str


class DueNotificationRunRequest(BaseModel):
    now: Optional[datetime] = None


class DueNotificationRunResponse(BaseModel):
    notificationsSent: bool
    noTokens: bool = False
    windowStart: datetime
    windowEnd: datetime
    dueOwners: int = 0
    sent: int = 0
    failed: int = 0
    invalidTokensPruned: int = 0
