"""Request/response schemas for payment admission."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paynotify.services.notification.schemas import NotificationResponse, Pagination


EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
CENT = Decimal("0.01")


class PaymentCreateBody(BaseModel):
    """Payload accepted by `POST /payments` (the idempotency key travels as a header)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: Literal["COP", "USD"] = "COP"
    account_id: str = Field(min_length=1, max_length=50)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    description: str | None = Field(default=None, max_length=255)

    @field_validator("amount")
    @classmethod
    def _two_places(cls, value: Decimal) -> Decimal:
        return value.quantize(CENT)

    @field_validator("description")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        return value or None


class PaymentCreateRequest(PaymentCreateBody):
    """Full admission input validated before any I/O happens."""

    idempotency_key: str = Field(min_length=1, max_length=255)


class PaymentResponse(BaseModel):
    """Externally visible payment representation; also what the idempotency cache stores."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Decimal
    currency: str
    account_id: str
    email: str
    description: str | None
    status: str
    created_at: datetime
    updated_at: datetime


class PaymentDetailResponse(PaymentResponse):
    notification: NotificationResponse | None = None


class PaymentPage(BaseModel):
    payments: list[PaymentResponse]
    pagination: Pagination
