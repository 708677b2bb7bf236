"""Payment persistence over a SQLAlchemy session factory."""

from sqlalchemy import func, select

from paynotify.services.payments.models import Payment


class PaymentStore:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def save(self, payment: Payment) -> Payment:
        with self.session_factory() as db:
            db.add(payment)
            db.commit()
            return payment

    def find_by_id(self, payment_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def find_by_idempotency_key(self, idempotency_key: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.idempotency_key == idempotency_key)
            ).scalar_one_or_none()

    def find_by_account_id(self, account_id: str, limit: int = 50, offset: int = 0) -> list[Payment]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment)
                    .where(Payment.account_id == account_id)
                    .order_by(Payment.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                ).scalars()
            )

    def count_by_account_id(self, account_id: str) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(Payment).where(Payment.account_id == account_id)
            ).scalar_one()
