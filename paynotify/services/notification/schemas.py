"""API response schemas for notification and dead-letter endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class NotificationResponse(BaseModel):
    """Externally visible state of one notification."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    type: str
    recipient: str
    status: str
    attempts: int
    last_attempt_at: datetime | None
    sent_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class NotificationPage(BaseModel):
    notifications: list[NotificationResponse]
    pagination: Pagination


class SenderStatus(BaseModel):
    service: str
    enabled: bool
    status: str


class NotificationStatusResponse(BaseModel):
    service: SenderStatus
    notifications: dict[str, int]


class SimulationResponse(BaseModel):
    success: bool
    message: str
    status: SenderStatus


class DeadLetterEntry(BaseModel):
    """Inspection view of one dead-lettered delivery event."""

    message_id: str
    payment_id: str | None
    notification_id: str | None
    original_queue: str
    reason: str
    failed_at: str | None
    event_type: str | None
    timestamp: str | None


class DeadLetterListResponse(BaseModel):
    count: int
    messages: list[DeadLetterEntry]


class ReplayResponse(BaseModel):
    success: bool
    message_id: str
    message: str


class ReplayAllResponse(BaseModel):
    success: bool
    retried_count: int
    message: str
