"""Notification persistence models (delivery state + dead-letter side table)."""

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from paynotify.common.db import Base
from paynotify.common.state_machine import FAILED, PENDING, PROCESSING, RETRIED, SENT, validate_transition


NOTIFICATION_TYPE_EMAIL = "EMAIL"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Notification(Base):
    """Delivery state of the confirmation for one payment.

    Transitions go through `validate_transition`; `attempts` only moves
    forward, on entry into PROCESSING.
    """

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    payment_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    type: Mapped[str] = mapped_column(String, default=NOTIFICATION_TYPE_EMAIL)
    recipient: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String, default=PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @classmethod
    def pending(cls, notification_id: str, payment_id: str, recipient: str) -> "Notification":
        now = _utcnow()
        return cls(
            id=notification_id,
            payment_id=payment_id,
            type=NOTIFICATION_TYPE_EMAIL,
            recipient=recipient,
            status=PENDING,
            attempts=0,
            created_at=now,
            updated_at=now,
        )

    def _move(self, new_status: str) -> None:
        validate_transition(self.status, new_status)
        self.status = new_status
        self.updated_at = _utcnow()

    def mark_as_processing(self) -> None:
        self._move(PROCESSING)
        self.attempts += 1
        self.last_attempt_at = self.updated_at

    def mark_as_sent(self) -> None:
        self._move(SENT)
        self.sent_at = self.updated_at
        self.error_message = None

    def mark_as_failed(self, error_message: str) -> None:
        self._move(FAILED)
        self.error_message = error_message

    def mark_as_retried(self) -> None:
        """Flag a notification as replayed. The consumer's replay path resets to PENDING instead."""

        self._move(RETRIED)

    def reset_for_retry(self) -> None:
        self._move(PENDING)
        self.error_message = None

    def can_be_processed(self) -> bool:
        return self.status in (PENDING, RETRIED)

    def is_sent(self) -> bool:
        return self.status == SENT

    def is_failed(self) -> bool:
        return self.status == FAILED


class DeadLetterRecord(Base):
    """Durable metadata for a dead-lettered delivery event, keyed by bus message id."""

    __tablename__ = "dead_letters"

    message_id: Mapped[str] = mapped_column(String, primary_key=True)
    notification_id: Mapped[str] = mapped_column(String, index=True)
    payment_id: Mapped[str] = mapped_column(String, index=True)
    original_queue: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(Text)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    replayed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON)
