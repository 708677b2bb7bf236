"""Payment admission.

Admission runs inside a per-key Redis lock and consults the idempotency
cache before doing any work, so a key produces at most one payment, one
notification and one delivery event within the cache TTL.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import ValidationError

from paynotify.common import ids
from paynotify.common.errors import LockAcquisitionTimeout, PaymentNotFound, PaymentValidationError
from paynotify.common.events import DeliveryEvent, DeliveryPayload
from paynotify.common.locks import RedisLockStore
from paynotify.common.logging import logger, payment_id_ctx
from paynotify.common.metrics import (
    idempotent_replays_total,
    lock_timeouts_total,
    payment_created_total,
    payment_latency_seconds,
    payment_requests_total,
)
from paynotify.services.notification.models import Notification
from paynotify.services.notification.schemas import NotificationResponse, Pagination
from paynotify.services.notification.store import NotificationStore
from paynotify.services.payments.models import PAYMENT_STATUS_SUCCESS, Payment
from paynotify.services.payments.schemas import (
    PaymentCreateRequest,
    PaymentDetailResponse,
    PaymentPage,
    PaymentResponse,
)
from paynotify.services.payments.store import PaymentStore


FIELD_ERROR_CODES = {
    "amount": "INVALID_AMOUNT",
    "currency": "INVALID_CURRENCY",
    "account_id": "INVALID_ACCOUNT",
    "email": "INVALID_EMAIL",
    "description": "INVALID_DESCRIPTION",
    "idempotency_key": "IDEMPOTENCY_KEY_REQUIRED",
}


def validate_payment_request(**fields) -> PaymentCreateRequest:
    """Validate admission input, mapping the first failing field to its error code."""

    try:
        return PaymentCreateRequest(**fields)
    except ValidationError as exc:
        errors = exc.errors()
        loc = errors[0]["loc"]
        field = str(loc[0]) if loc else ""
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in errors
        ]
        raise PaymentValidationError(
            f"{field}: {errors[0]['msg']}",
            code=FIELD_ERROR_CODES.get(field, PaymentValidationError.code),
            details=details,
        ) from exc


class PaymentService:
    def __init__(
        self,
        payment_store: PaymentStore,
        notification_store: NotificationStore,
        locks: RedisLockStore,
        bus,
        topic: str = "payments.events",
        lock_ttl_ms: int = 10_000,
        lock_max_wait_ms: int = 5_000,
        idempotency_ttl_hours: int = 24,
        service_name: str = "payments",
    ) -> None:
        self.payment_store = payment_store
        self.notification_store = notification_store
        self.locks = locks
        self.bus = bus
        self.topic = topic
        self.lock_ttl_ms = lock_ttl_ms
        self.lock_max_wait_ms = lock_max_wait_ms
        self.idempotency_ttl_hours = idempotency_ttl_hours
        self.service_name = service_name

    async def create_payment(
        self,
        *,
        amount: Decimal | str | float,
        currency: str | None = "COP",
        account_id: str,
        email: str,
        description: str | None = None,
        idempotency_key: str,
    ) -> PaymentResponse:
        """Admit one payment for `idempotency_key` or replay the cached result.

        Input is validated before any I/O. Persistence and publish failures
        propagate without rollback.
        """

        fields = {
            "amount": amount,
            "account_id": account_id,
            "email": email,
            "description": description,
            "idempotency_key": idempotency_key,
        }
        if currency is not None:
            fields["currency"] = currency
        request = validate_payment_request(**fields)

        payment_requests_total.labels(service=self.service_name).inc()
        started = time.perf_counter()

        async def admit() -> PaymentResponse:
            cached = await self.locks.get_idempotency_result(request.idempotency_key)
            if cached is not None:
                idempotent_replays_total.labels(service=self.service_name).inc()
                logger.info(
                    "payment_idempotent_replay idempotency_key=%s payment_id=%s",
                    request.idempotency_key,
                    cached.get("id"),
                )
                return PaymentResponse.model_validate(cached)
            existing = self.payment_store.find_by_idempotency_key(request.idempotency_key)
            if existing is not None:
                # Cache entry expired or was evicted; the row is authoritative.
                result = PaymentResponse.model_validate(existing)
                await self.locks.set_idempotency_result(
                    request.idempotency_key,
                    result.model_dump(mode="json"),
                    ttl_hours=self.idempotency_ttl_hours,
                )
                idempotent_replays_total.labels(service=self.service_name).inc()
                logger.info(
                    "payment_idempotent_replay_from_store idempotency_key=%s payment_id=%s",
                    request.idempotency_key,
                    existing.id,
                )
                return result
            return await self._admit(request)

        try:
            result = await self.locks.with_lock(
                f"payment:{request.idempotency_key}",
                admit,
                ttl_ms=self.lock_ttl_ms,
                max_wait_ms=self.lock_max_wait_ms,
            )
        except LockAcquisitionTimeout:
            lock_timeouts_total.labels(service=self.service_name).inc()
            raise
        payment_latency_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)
        return result

    async def _admit(self, request: PaymentCreateRequest) -> PaymentResponse:
        now = datetime.now(timezone.utc)
        payment = Payment(
            id=ids.payment_id(),
            amount=request.amount,
            currency=request.currency,
            account_id=request.account_id,
            email=request.email,
            description=request.description,
            status=PAYMENT_STATUS_SUCCESS,
            idempotency_key=request.idempotency_key,
            created_at=now,
            updated_at=now,
        )
        notification = Notification.pending(ids.notification_id(), payment.id, request.email)
        token = payment_id_ctx.set(payment.id)
        try:
            self.payment_store.save(payment)
            self.notification_store.save(notification)

            event = DeliveryEvent(
                payload=DeliveryPayload(
                    payment_id=payment.id,
                    notification_id=notification.id,
                    amount=payment.amount,
                    currency=payment.currency,
                    account_id=payment.account_id,
                    email=payment.email,
                )
            )
            await self.bus.publish(
                self.topic,
                event.model_dump(mode="json"),
                key=payment.id,
                headers=event.headers(),
                message_id=event.id,
            )

            result = PaymentResponse.model_validate(payment)
            await self.locks.set_idempotency_result(
                request.idempotency_key,
                result.model_dump(mode="json"),
                ttl_hours=self.idempotency_ttl_hours,
            )
            payment_created_total.labels(service=self.service_name).inc()
            logger.info(
                "payment_created payment_id=%s notification_id=%s event_id=%s amount=%s currency=%s",
                payment.id,
                notification.id,
                event.id,
                payment.amount,
                payment.currency,
            )
            return result
        finally:
            payment_id_ctx.reset(token)

    def get_payment(self, payment_id: str) -> PaymentDetailResponse:
        payment = self.payment_store.find_by_id(payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)
        notification = self.notification_store.find_by_payment_id(payment_id)
        detail = PaymentDetailResponse.model_validate(payment)
        if notification is not None:
            detail.notification = NotificationResponse.model_validate(notification)
        return detail

    def list_payments(self, account_id: str, limit: int = 50, offset: int = 0) -> PaymentPage:
        payments = self.payment_store.find_by_account_id(account_id, limit=limit, offset=offset)
        total = self.payment_store.count_by_account_id(account_id)
        return PaymentPage(
            payments=[PaymentResponse.model_validate(payment) for payment in payments],
            pagination=Pagination(
                total=total,
                limit=limit,
                offset=offset,
                has_more=offset + len(payments) < total,
            ),
        )
