"""Notification persistence over a SQLAlchemy session factory."""

from datetime import datetime

from sqlalchemy import func, select, update

from paynotify.common.state_machine import STATUSES
from paynotify.services.notification.models import DeadLetterRecord, Notification


class NotificationStore:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def save(self, notification: Notification) -> Notification:
        with self.session_factory() as db:
            db.add(notification)
            db.commit()
            return notification

    def update(self, notification: Notification) -> Notification:
        with self.session_factory() as db:
            db.merge(notification)
            db.commit()
            return notification

    def find_by_id(self, notification_id: str) -> Notification | None:
        with self.session_factory() as db:
            return db.get(Notification, notification_id)

    def find_by_payment_id(self, payment_id: str) -> Notification | None:
        with self.session_factory() as db:
            return db.execute(
                select(Notification).where(Notification.payment_id == payment_id)
            ).scalar_one_or_none()

    def find_all(
        self,
        status: str | None = None,
        payment_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Notification], int]:
        """Filtered page of notifications, newest first, plus the unpaged total."""

        filters = []
        if status:
            filters.append(Notification.status == status)
        if payment_id:
            filters.append(Notification.payment_id == payment_id)
        with self.session_factory() as db:
            items = list(
                db.execute(
                    select(Notification)
                    .where(*filters)
                    .order_by(Notification.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                ).scalars()
            )
            total = db.execute(select(func.count()).select_from(Notification).where(*filters)).scalar_one()
        return items, total

    def count_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        with self.session_factory() as db:
            rows = db.execute(select(Notification.status, func.count()).group_by(Notification.status)).all()
        for status, count in rows:
            counts[status] = count
        return counts

    def mark_failed(self, notification: Notification, dead_letter: DeadLetterRecord | None = None) -> None:
        """Persist a FAILED notification and its dead-letter metadata in one transaction."""

        with self.session_factory() as db:
            db.merge(notification)
            if dead_letter is not None:
                db.merge(dead_letter)
            db.commit()

    def find_dead_letter(self, message_id: str) -> DeadLetterRecord | None:
        with self.session_factory() as db:
            return db.get(DeadLetterRecord, message_id)

    def record_replay(self, message_id: str, replayed_at: datetime) -> None:
        with self.session_factory() as db:
            db.execute(
                update(DeadLetterRecord)
                .where(DeadLetterRecord.message_id == message_id)
                .values(replayed_at=replayed_at)
            )
            db.commit()
