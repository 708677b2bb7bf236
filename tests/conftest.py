"""Shared fixtures: in-memory SQLite, fakeredis and an in-memory bus."""

import asyncio
import json
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal

import fakeredis
import fakeredis.aioredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from paynotify.common.config import CommonSettings
from paynotify.common.db import init_db, make_session_factory
from paynotify.common.events import MESSAGE_ID_HEADER, BusMessage, dead_letter_headers
from paynotify.common.locks import RedisLockStore
from paynotify.services.notification.dead_letter import DeadLetterService
from paynotify.services.notification.sender import EmailSender
from paynotify.services.notification.service import NotificationConsumer
from paynotify.services.notification.store import NotificationStore
from paynotify.services.payments.service import PaymentService
from paynotify.services.payments.store import PaymentStore
from paynotify.services.runtime import build_runtime


TOPIC = "payments.events"
QUEUE = "notifications.payment-events"
DLQ = "notifications.dead-letter"


@dataclass
class Record:
    topic: str
    body: bytes
    key: bytes | None
    headers: dict[str, str] = field(default_factory=dict)


class InMemoryBus:
    """Queue-per-topic stand-in for `KafkaBus` with the same settle semantics."""

    def __init__(self, dead_letter_topics: dict[str, str] | None = None) -> None:
        self.dead_letter_topics = dict(dead_letter_topics or {})
        self.queues: dict[str, deque[Record]] = defaultdict(deque)
        self.published: list[Record] = []
        self._counter = 0

    async def publish(self, topic, payload, *, key=None, headers=None, message_id=None) -> None:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        merged = dict(headers or {})
        if message_id is not None:
            merged[MESSAGE_ID_HEADER] = message_id
        if isinstance(key, str):
            key = key.encode("utf-8")
        record = Record(topic=topic, body=body, key=key, headers=merged)
        self.queues[topic].append(record)
        self.published.append(record)

    def _message(self, record: Record, on_ack, on_nack) -> BusMessage:
        self._counter += 1
        return BusMessage(
            topic=record.topic,
            body=record.body,
            headers=dict(record.headers),
            message_id=record.headers.get(MESSAGE_ID_HEADER) or f"{record.topic}-{self._counter}",
            key=record.key,
            on_ack=on_ack,
            on_nack=on_nack,
        )

    def deliver(self, topic: str, group_id: str) -> BusMessage | None:
        """Hand the head of `topic` to a consumer of `group_id`."""

        queue = self.queues[topic]
        if not queue:
            return None
        record = queue.popleft()

        async def ack() -> None:
            return None

        async def nack(requeue: bool) -> None:
            if requeue:
                queue.appendleft(record)
                return
            dead_letter_topic = self.dead_letter_topics.get(group_id)
            if dead_letter_topic is not None:
                await self.publish(
                    dead_letter_topic,
                    record.body,
                    key=record.key,
                    headers=dead_letter_headers(record.headers, group_id, "rejected"),
                )

        return self._message(record, ack, nack)

    async def drain(self, topic: str, group_id: str, handler) -> int:
        handled = 0
        while True:
            message = self.deliver(topic, group_id)
            if message is None:
                return handled
            await handler(message)
            if not message.settled:
                await message.nack(requeue=False)
            handled += 1

    async def consume(self, topic: str, group_id: str, handler) -> None:
        while True:
            await self.drain(topic, group_id, handler)
            await asyncio.sleep(0.01)

    async def queue_depth(self, topic: str) -> int:
        return len(self.queues[topic])

    async def get(self, topic: str) -> BusMessage | None:
        queue = self.queues[topic]
        if not queue:
            return None
        record = queue.popleft()

        async def ack() -> None:
            return None

        async def nack(requeue: bool) -> None:
            if requeue:
                queue.append(record)

        return self._message(record, ack, nack)

    def bodies(self, topic: str) -> list[dict]:
        return [json.loads(record.body) for record in self.queues[topic]]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def redis_client():
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def locks(redis_client):
    return RedisLockStore(redis_client, poll_interval_seconds=0.01)


@pytest.fixture
def bus():
    return InMemoryBus({QUEUE: DLQ})


@pytest.fixture
def payment_store(session_factory):
    return PaymentStore(session_factory)


@pytest.fixture
def notification_store(session_factory):
    return NotificationStore(session_factory)


@pytest.fixture
def sender():
    return EmailSender(enabled=True, latency_ms=(0, 0))


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def payment_service(payment_store, notification_store, locks, bus):
    return PaymentService(payment_store, notification_store, locks, bus, topic=TOPIC)


@pytest.fixture
def make_consumer(notification_store, sleeps):
    def make(sender, **overrides):
        options = {
            "queue": QUEUE,
            "max_retries": 3,
            "backoff_base_ms": 1000,
            "send_timeout_seconds": 1.0,
            "sleep": sleeps,
        }
        options.update(overrides)
        return NotificationConsumer(notification_store, sender, **options)

    return make


@pytest.fixture
def consumer(make_consumer, sender):
    return make_consumer(sender)


@pytest.fixture
def dead_letters(bus, notification_store):
    return DeadLetterService(bus, notification_store, dead_letter_topic=DLQ, target_topic=TOPIC)


@pytest.fixture
def admit(payment_service):
    """Create a payment with sensible defaults; returns the response model."""

    async def create(idempotency_key: str = "key-1", **overrides):
        fields = {
            "amount": Decimal("150000.50"),
            "currency": "COP",
            "account_id": "acc-001",
            "email": "buyer@example.com",
            "description": "order #1",
            "idempotency_key": idempotency_key,
        }
        fields.update(overrides)
        return await payment_service.create_payment(**fields)

    return create


@pytest.fixture
def test_settings():
    return CommonSettings(
        otel_enabled=False,
        run_consumer=False,
        email_latency_min_ms=0,
        email_latency_max_ms=0,
        lock_poll_interval_ms=10,
    )


@pytest.fixture
def app_runtime_factory(engine):
    """Runtime factory for apps under test; the Redis client is built inside the app loop."""

    @asynccontextmanager
    async def factory(settings):
        client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        bus = InMemoryBus({settings.notification_queue: settings.dead_letter_topic})
        try:
            yield build_runtime(settings, engine, client, bus)
        finally:
            await client.aclose()

    return factory
