"""Delivery event schema and the Kafka bus adapter.

The adapter gives queue-style semantics on top of Kafka consumer groups:

* `ack` commits the message offset;
* `nack(requeue=True)` makes the message visible again;
* `nack(requeue=False)` routes the message to the dead-letter topic
  configured for the consuming group, then commits.

Dead-letter topics are configured once per group (topology), never per
message.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from pydantic import BaseModel, Field

from paynotify.common import ids
from paynotify.common.logging import event_id_ctx, logger
from paynotify.common.metrics import dlq_published_total, event_queue_delay_seconds


PAYMENT_SUCCESS = "payment.success"

MESSAGE_ID_HEADER = "message-id"
EVENT_TYPE_HEADER = "x-event-type"
TIMESTAMP_HEADER = "x-timestamp"
REPLAYED_HEADER = "x-retried-from-dlq"
REPLAY_TIMESTAMP_HEADER = "x-retry-timestamp"
DEATH_QUEUE_HEADER = "x-first-death-queue"
DEATH_REASON_HEADER = "x-first-death-reason"
DEATH_TIME_HEADER = "x-death-time"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeliveryPayload(BaseModel):
    """Everything the notification consumer needs to send the confirmation."""

    payment_id: str
    notification_id: str
    amount: Decimal
    currency: str
    account_id: str
    email: str


class DeliveryEvent(BaseModel):
    """Event published once per admitted payment."""

    id: str = Field(default_factory=ids.event_id)
    type: str = PAYMENT_SUCCESS
    timestamp: str = Field(default_factory=utcnow_iso)
    payload: DeliveryPayload

    def headers(self) -> dict[str, str]:
        return {EVENT_TYPE_HEADER: self.type, TIMESTAMP_HEADER: self.timestamp}


def dead_letter_headers(headers: dict[str, str], queue: str, reason: str) -> dict[str, str]:
    """Routing metadata attached to a message on its way to a dead-letter topic."""

    routed = dict(headers)
    routed.setdefault(DEATH_QUEUE_HEADER, queue)
    routed.setdefault(DEATH_REASON_HEADER, reason)
    routed.setdefault(DEATH_TIME_HEADER, utcnow_iso())
    return routed


@dataclass
class BusMessage:
    """One delivered message plus the settle callbacks of the channel it came from."""

    topic: str
    body: bytes
    headers: dict[str, str]
    message_id: str
    key: bytes | None = None
    on_ack: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)
    on_nack: Callable[[bool], Awaitable[None]] | None = field(default=None, repr=False)
    settled: bool = False

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    async def ack(self) -> None:
        if self.settled:
            return
        if self.on_ack is not None:
            await self.on_ack()
        self.settled = True

    async def nack(self, requeue: bool = False) -> None:
        if self.settled:
            return
        if self.on_nack is not None:
            await self.on_nack(requeue)
        self.settled = True


def _decode_headers(raw_headers) -> dict[str, str]:
    return {name: (value or b"").decode("utf-8") for name, value in raw_headers or ()}


def _encode_key(key: str | bytes | None) -> bytes | None:
    if key is None or isinstance(key, bytes):
        return key
    return key.encode("utf-8")


class KafkaBus:
    """Lazy Kafka producer plus per-group consumers with ack/nack semantics."""

    def __init__(
        self,
        bootstrap_servers: str,
        dead_letter_topics: dict[str, str] | None = None,
        service_name: str = "paynotify",
        poll_timeout_ms: int = 1000,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.dead_letter_topics = dict(dead_letter_topics or {})
        self.service_name = service_name
        self.poll_timeout_ms = poll_timeout_ms
        self._producer: AIOKafkaProducer | None = None
        self._scan_consumers: dict[str, AIOKafkaConsumer] = {}
        self._scan_limits: dict[str, dict[TopicPartition, int]] = {}

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any] | bytes,
        *,
        key: str | bytes | None = None,
        headers: dict[str, str] | None = None,
        message_id: str | None = None,
    ) -> None:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        merged = dict(headers or {})
        if message_id is not None:
            merged[MESSAGE_ID_HEADER] = message_id
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            body,
            key=_encode_key(key),
            headers=[(name, str(value).encode("utf-8")) for name, value in merged.items()],
        )
        logger.debug("message_published topic=%s message_id=%s", topic, merged.get(MESSAGE_ID_HEADER, ""))

    def _message(self, record, on_ack, on_nack) -> BusMessage:
        headers = _decode_headers(record.headers)
        message_id = headers.get(MESSAGE_ID_HEADER) or f"{record.topic}-{record.partition}-{record.offset}"
        return BusMessage(
            topic=record.topic,
            body=record.value,
            headers=headers,
            message_id=message_id,
            key=record.key,
            on_ack=on_ack,
            on_nack=on_nack,
        )

    def _consumer_message(self, consumer: AIOKafkaConsumer, tp: TopicPartition, record, group_id: str) -> BusMessage:
        """Wrap a record delivered to a consumer group."""

        async def ack() -> None:
            await consumer.commit({tp: record.offset + 1})

        async def nack(requeue: bool) -> None:
            if requeue:
                consumer.seek(tp, record.offset)
                return
            dead_letter_topic = self.dead_letter_topics.get(group_id)
            if dead_letter_topic is None:
                logger.warning(
                    "message_dropped topic=%s group=%s offset=%s reason=no_dead_letter_topic",
                    record.topic,
                    group_id,
                    record.offset,
                )
            else:
                await self.publish(
                    dead_letter_topic,
                    record.value,
                    key=record.key,
                    headers=dead_letter_headers(_decode_headers(record.headers), group_id, "rejected"),
                )
                dlq_published_total.labels(
                    service=self.service_name,
                    topic=dead_letter_topic,
                    error_type="rejected",
                ).inc()
            await consumer.commit({tp: record.offset + 1})

        return self._message(record, ack, nack)

    def _scan_message(self, consumer: AIOKafkaConsumer, tp: TopicPartition, record) -> BusMessage:
        """Wrap a record fetched directly by an operator scan.

        Requeue re-appends the record to the tail of its topic, so a scan
        bounded by the depth at its start never meets the copy again.
        """

        async def ack() -> None:
            await consumer.commit({tp: record.offset + 1})

        async def nack(requeue: bool) -> None:
            if requeue:
                await self.publish(record.topic, record.value, key=record.key, headers=_decode_headers(record.headers))
            else:
                logger.warning("message_discarded topic=%s offset=%s", record.topic, record.offset)
            await consumer.commit({tp: record.offset + 1})

        return self._message(record, ack, nack)

    async def make_consumer(self, topic: str, group_id: str) -> AIOKafkaConsumer:
        """Create a configured Kafka consumer for one topic/group (prefetch 1, manual commit)."""

        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            max_poll_records=1,
        )
        await consumer.start()
        return consumer

    async def consume(
        self,
        topic: str,
        group_id: str,
        handler: Callable[[BusMessage], Awaitable[None]],
    ) -> None:
        """Continuously consume one topic, one message at a time.

        The handler settles each message itself; anything it leaves
        unsettled, or raises on, is dead-lettered.
        """

        while True:
            consumer = None
            try:
                consumer = await self.make_consumer(topic, group_id)
                while True:
                    results = await consumer.getmany(timeout_ms=500, max_records=1)
                    for tp, records in results.items():
                        for record in records:
                            message = self._consumer_message(consumer, tp, record, group_id)
                            if record.timestamp:
                                event_queue_delay_seconds.labels(
                                    service=self.service_name,
                                    topic=topic,
                                ).observe(max(0.0, datetime.now(timezone.utc).timestamp() - record.timestamp / 1000))
                            token = event_id_ctx.set(message.message_id)
                            try:
                                logger.info(
                                    "message_received topic=%s group=%s offset=%s message_id=%s",
                                    topic,
                                    group_id,
                                    record.offset,
                                    message.message_id,
                                )
                                try:
                                    await handler(message)
                                except Exception as exc:
                                    logger.error(
                                        "handler_error topic=%s group=%s offset=%s error=%s",
                                        topic,
                                        group_id,
                                        record.offset,
                                        exc,
                                    )
                                if not message.settled:
                                    await message.nack(requeue=False)
                            finally:
                                event_id_ctx.reset(token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
                await asyncio.sleep(2)
            finally:
                if consumer is not None:
                    await consumer.stop()
                await asyncio.sleep(0)

    async def _scan_consumer(self, topic: str) -> AIOKafkaConsumer | None:
        consumer = self._scan_consumers.get(topic)
        if consumer is not None:
            return consumer
        consumer = AIOKafkaConsumer(
            bootstrap_servers=self.bootstrap_servers,
            group_id=f"{topic}.operator",
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        await consumer.start()
        # Refresh cluster metadata so partitions of `topic` are known.
        await consumer.topics()
        partitions = consumer.partitions_for_topic(topic)
        if not partitions:
            await consumer.stop()
            return None
        consumer.assign([TopicPartition(topic, partition) for partition in sorted(partitions)])
        self._scan_consumers[topic] = consumer
        return consumer

    async def queue_depth(self, topic: str) -> int:
        """Messages currently waiting for the operator group on `topic`.

        Also starts a scan: positions are reset to the group's committed
        offsets, and `get` stops reading each partition at the end offset
        measured here.
        """

        consumer = await self._scan_consumer(topic)
        if consumer is None:
            return 0
        partitions = list(consumer.assignment())
        # Other processes share the operator group.
        await consumer.seek_to_committed(*partitions)
        end_offsets = await consumer.end_offsets(partitions)
        self._scan_limits[topic] = dict(end_offsets)
        depth = 0
        for tp in partitions:
            position = await consumer.position(tp)
            depth += max(0, end_offsets[tp] - position)
        return depth

    async def get(self, topic: str) -> BusMessage | None:
        """Fetch the next message of `topic` for an operator scan, if any."""

        consumer = await self._scan_consumer(topic)
        if consumer is None:
            return None
        limits = self._scan_limits.get(topic)
        partitions = list(consumer.assignment())
        if limits is not None:
            partitions = [tp for tp in partitions if await consumer.position(tp) < limits.get(tp, 0)]
            if not partitions:
                return None
        results = await consumer.getmany(*partitions, timeout_ms=self.poll_timeout_ms, max_records=1)
        for tp, records in results.items():
            for record in records:
                return self._scan_message(consumer, tp, record)
        return None

    async def close(self) -> None:
        for consumer in self._scan_consumers.values():
            await consumer.stop()
        self._scan_consumers.clear()
        self._scan_limits.clear()
        if self._producer:
            await self._producer.stop()
            self._producer = None
