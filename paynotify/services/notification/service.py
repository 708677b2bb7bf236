"""Notification consumer: delivery retries, FAILED marking and dead-lettering."""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable

from paynotify.common.errors import NotificationNotFound
from paynotify.common.events import REPLAYED_HEADER, BusMessage, DeliveryEvent
from paynotify.common.logging import logger, notification_id_ctx, payment_id_ctx
from paynotify.common.metrics import notification_failures_total, notifications_sent_total, retries_total
from paynotify.services.notification.models import DeadLetterRecord
from paynotify.services.notification.sender import EmailSender, confirmation_email
from paynotify.services.notification.store import NotificationStore


class NotificationConsumer:
    """Delivers one confirmation email per delivery event.

    Each message gets up to `max_retries` in-process attempts with
    exponential backoff between them. When the last attempt fails the
    notification is marked FAILED and the message is rejected, which the
    bus routes to the dead-letter topic of `queue`.
    """

    def __init__(
        self,
        store: NotificationStore,
        sender: EmailSender,
        queue: str = "notifications.payment-events",
        max_retries: int = 3,
        backoff_base_ms: int = 1000,
        send_timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        service_name: str = "notification",
    ) -> None:
        self.store = store
        self.sender = sender
        self.queue = queue
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.send_timeout_seconds = send_timeout_seconds
        self.sleep = sleep
        self.service_name = service_name

    def backoff_seconds(self, attempt: int) -> float:
        return (2**attempt) * self.backoff_base_ms / 1000

    async def handle(self, message: BusMessage) -> None:
        try:
            event = DeliveryEvent.model_validate(message.json())
        except ValueError as exc:
            logger.error("malformed_delivery_event message_id=%s error=%s", message.message_id, exc)
            await message.nack(requeue=False)
            return

        payment_token = payment_id_ctx.set(event.payload.payment_id)
        notification_token = notification_id_ctx.set(event.payload.notification_id)
        try:
            if message.headers.get(REPLAYED_HEADER) == "true":
                self._reset_for_retry(event.payload.notification_id)
            await self._deliver(event, message)
        except Exception as exc:
            logger.error("notification_handler_error message_id=%s error=%s", message.message_id, exc)
            await message.nack(requeue=False)
        finally:
            notification_id_ctx.reset(notification_token)
            payment_id_ctx.reset(payment_token)

    async def _deliver(self, event: DeliveryEvent, message: BusMessage) -> None:
        payload = event.payload
        subject, body = confirmation_email(payload.payment_id, payload.amount, payload.currency)

        for attempt in range(self.max_retries):
            try:
                notification = self.store.find_by_id(payload.notification_id)
                if notification is None:
                    raise NotificationNotFound(payload.notification_id)
                if notification.is_sent():
                    logger.info("notification_already_sent notification_id=%s", notification.id)
                    await message.ack()
                    return

                notification.mark_as_processing()
                self.store.update(notification)
                logger.info(
                    "notification_processing notification_id=%s attempt=%s of=%s attempts=%s",
                    notification.id,
                    attempt + 1,
                    self.max_retries,
                    notification.attempts,
                )
                await asyncio.wait_for(
                    self.sender.send(payload.email, subject, body),
                    timeout=self.send_timeout_seconds,
                )
                notification.mark_as_sent()
                self.store.update(notification)
            except NotificationNotFound as exc:
                logger.error("notification_missing notification_id=%s", exc.notification_id)
                await message.nack(requeue=False)
                return
            except Exception as exc:
                if isinstance(exc, asyncio.TimeoutError):
                    error = f"email send timed out after {self.send_timeout_seconds}s"
                else:
                    error = str(exc) or type(exc).__name__
                logger.warning(
                    "notification_attempt_failed notification_id=%s attempt=%s of=%s error=%s",
                    payload.notification_id,
                    attempt + 1,
                    self.max_retries,
                    error,
                )
                if attempt < self.max_retries - 1:
                    retries_total.labels(service=self.service_name, dependency="email").inc()
                    await self.sleep(self.backoff_seconds(attempt))
                    continue
                self._mark_failed(payload.notification_id, error, message)
                notification_failures_total.labels(service=self.service_name).inc()
                await message.nack(requeue=False)
                return

            notifications_sent_total.labels(service=self.service_name).inc()
            logger.info("notification_sent notification_id=%s recipient=%s", payload.notification_id, payload.email)
            await message.ack()
            return

    def _reset_for_retry(self, notification_id: str) -> None:
        try:
            notification = self.store.find_by_id(notification_id)
            if notification is not None and notification.is_failed():
                notification.reset_for_retry()
                self.store.update(notification)
                logger.info("notification_reset_for_retry notification_id=%s", notification_id)
        except Exception:
            logger.exception("notification_reset_failed notification_id=%s", notification_id)

    def _mark_failed(self, notification_id: str, error: str, message: BusMessage) -> None:
        try:
            notification = self.store.find_by_id(notification_id)
            if notification is None:
                return
            notification.mark_as_failed(error)
            record = DeadLetterRecord(
                message_id=message.message_id,
                notification_id=notification.id,
                payment_id=notification.payment_id,
                original_queue=self.queue,
                reason=error,
                failed_at=datetime.now(timezone.utc),
                replayed_at=None,
                payload=message.json(),
            )
            self.store.mark_failed(notification, record)
            logger.error("notification_failed notification_id=%s attempts=%s", notification_id, notification.attempts)
        except Exception:
            logger.exception("notification_mark_failed_error notification_id=%s", notification_id)

    async def start_consumers(self, bus, topic: str) -> None:
        """Consume delivery events from `topic` with the queue's consumer group."""

        logger.info("notification_consumer_started topic=%s group=%s max_retries=%s", topic, self.queue, self.max_retries)
        await bus.consume(topic, self.queue, self.handle)
