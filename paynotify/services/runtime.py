"""Process-wide dependency wiring.

`open_runtime` builds every client and service once per process and
tears them down in reverse order on exit. Apps receive the resulting
`Runtime` instead of reaching for module-level singletons.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import redis.asyncio as aioredis
from sqlalchemy import Engine, text

from paynotify.common.config import CommonSettings
from paynotify.common.db import init_db, make_engine, make_session_factory
from paynotify.common.events import KafkaBus
from paynotify.common.locks import RedisLockStore
from paynotify.common.logging import logger
from paynotify.services.notification.dead_letter import DeadLetterService
from paynotify.services.notification.sender import EmailSender
from paynotify.services.notification.service import NotificationConsumer
from paynotify.services.notification.store import NotificationStore
from paynotify.services.payments.service import PaymentService
from paynotify.services.payments.store import PaymentStore


@dataclass
class Runtime:
    settings: CommonSettings
    engine: Engine
    redis: aioredis.Redis
    bus: KafkaBus
    locks: RedisLockStore
    payment_store: PaymentStore
    notification_store: NotificationStore
    sender: EmailSender
    payments: PaymentService
    consumer: NotificationConsumer
    dead_letters: DeadLetterService

    async def health(self) -> dict[str, dict]:
        """Probe the database and Redis; each entry reports `healthy` or `unhealthy`."""

        checks = {}
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            checks["database"] = {"status": "healthy"}
        except Exception as exc:
            logger.warning("health_check_failed dependency=database error=%s", exc)
            checks["database"] = {"status": "unhealthy", "error": str(exc)}
        try:
            await self.locks.ping()
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.warning("health_check_failed dependency=redis error=%s", exc)
            checks["redis"] = {"status": "unhealthy", "error": str(exc)}
        return checks

    async def run_consumer(self) -> None:
        await self.consumer.start_consumers(self.bus, self.settings.payments_topic)


def build_runtime(settings: CommonSettings, engine: Engine, redis_client: aioredis.Redis, bus) -> Runtime:
    """Wire services over already-open clients."""

    session_factory = make_session_factory(engine)
    locks = RedisLockStore(redis_client, poll_interval_seconds=settings.lock_poll_interval_ms / 1000)
    payment_store = PaymentStore(session_factory)
    notification_store = NotificationStore(session_factory)
    sender = EmailSender(
        enabled=settings.notification_service_enabled,
        latency_ms=(settings.email_latency_min_ms, settings.email_latency_max_ms),
    )
    return Runtime(
        settings=settings,
        engine=engine,
        redis=redis_client,
        bus=bus,
        locks=locks,
        payment_store=payment_store,
        notification_store=notification_store,
        sender=sender,
        payments=PaymentService(
            payment_store,
            notification_store,
            locks,
            bus,
            topic=settings.payments_topic,
            lock_ttl_ms=settings.payment_lock_ttl_ms,
            lock_max_wait_ms=settings.payment_lock_max_wait_ms,
            idempotency_ttl_hours=settings.idempotency_ttl_hours,
            service_name=settings.service_name,
        ),
        consumer=NotificationConsumer(
            notification_store,
            sender,
            queue=settings.notification_queue,
            max_retries=settings.notification_max_retries,
            backoff_base_ms=settings.notification_backoff_base_ms,
            send_timeout_seconds=settings.email_send_timeout_seconds,
            service_name=settings.service_name,
        ),
        dead_letters=DeadLetterService(
            bus,
            notification_store,
            dead_letter_topic=settings.dead_letter_topic,
            target_topic=settings.payments_topic,
            service_name=settings.service_name,
        ),
    )


@asynccontextmanager
async def open_runtime(settings: CommonSettings) -> AsyncIterator[Runtime]:
    engine = make_engine(settings.postgres_dsn)
    init_db(engine)
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    bus = KafkaBus(
        settings.kafka_bootstrap_servers,
        dead_letter_topics={settings.notification_queue: settings.dead_letter_topic},
        service_name=settings.service_name,
        poll_timeout_ms=settings.dlq_poll_timeout_ms,
    )
    logger.info(
        "runtime_opened topic=%s queue=%s dead_letter_topic=%s",
        settings.payments_topic,
        settings.notification_queue,
        settings.dead_letter_topic,
    )
    try:
        yield build_runtime(settings, engine, redis_client, bus)
    finally:
        await bus.close()
        await redis_client.aclose()
        engine.dispose()
        logger.info("runtime_closed")
