"""Operator tooling for the notification dead-letter topic.

Scans are bounded by the topic depth measured when they start. Requeued
messages go back to the tail, so a bounded scan visits each waiting
message at most once and never touches messages that arrive mid-scan.
"""

import asyncio
from datetime import datetime, timezone

from paynotify.common.errors import DeadLetterMessageNotFound
from paynotify.common.events import (
    DEATH_QUEUE_HEADER,
    DEATH_REASON_HEADER,
    DEATH_TIME_HEADER,
    EVENT_TYPE_HEADER,
    MESSAGE_ID_HEADER,
    REPLAY_TIMESTAMP_HEADER,
    REPLAYED_HEADER,
    BusMessage,
    utcnow_iso,
)
from paynotify.common.logging import logger
from paynotify.common.metrics import dlq_replayed_total
from paynotify.services.notification.schemas import (
    DeadLetterEntry,
    DeadLetterListResponse,
    ReplayAllResponse,
    ReplayResponse,
)
from paynotify.services.notification.store import NotificationStore


DEATH_HEADERS = (DEATH_QUEUE_HEADER, DEATH_REASON_HEADER, DEATH_TIME_HEADER, MESSAGE_ID_HEADER)


def describe(message: BusMessage) -> DeadLetterEntry:
    """Inspection view of a dead-lettered message; tolerates undecodable bodies."""

    try:
        content = message.json()
    except ValueError:
        content = {}
    if not isinstance(content, dict):
        content = {}
    payload = content.get("payload") if isinstance(content.get("payload"), dict) else {}
    return DeadLetterEntry(
        message_id=message.message_id,
        payment_id=payload.get("payment_id"),
        notification_id=payload.get("notification_id"),
        original_queue=message.headers.get(DEATH_QUEUE_HEADER, "unknown"),
        reason=message.headers.get(DEATH_REASON_HEADER, "unknown"),
        failed_at=message.headers.get(DEATH_TIME_HEADER),
        event_type=content.get("type") or message.headers.get(EVENT_TYPE_HEADER),
        timestamp=content.get("timestamp"),
    )


class DeadLetterService:
    def __init__(
        self,
        bus,
        store: NotificationStore,
        dead_letter_topic: str = "notifications.dead-letter",
        target_topic: str = "payments.events",
        service_name: str = "notification",
    ) -> None:
        self.bus = bus
        self.store = store
        self.dead_letter_topic = dead_letter_topic
        self.target_topic = target_topic
        self.service_name = service_name
        self._scan_lock = asyncio.Lock()

    async def list_messages(self, max_messages: int = 100) -> DeadLetterListResponse:
        """Inspect up to `max_messages` dead letters without removing any."""

        entries = []
        async with self._scan_lock:
            depth = await self.bus.queue_depth(self.dead_letter_topic)
            for _ in range(min(depth, max_messages)):
                message = await self.bus.get(self.dead_letter_topic)
                if message is None:
                    break
                try:
                    entries.append(self._describe(message))
                finally:
                    await message.nack(requeue=True)
        logger.info("dead_letters_listed topic=%s count=%s", self.dead_letter_topic, len(entries))
        return DeadLetterListResponse(count=len(entries), messages=entries)

    def _describe(self, message: BusMessage) -> DeadLetterEntry:
        entry = describe(message)
        record = self.store.find_dead_letter(message.message_id)
        if record is not None:
            # The bus only knows the message was rejected; the row has the delivery error.
            entry.reason = record.reason
        return entry

    async def replay_one(self, message_id: str) -> ReplayResponse:
        async with self._scan_lock:
            depth = await self.bus.queue_depth(self.dead_letter_topic)
            for _ in range(depth):
                message = await self.bus.get(self.dead_letter_topic)
                if message is None:
                    break
                if message.message_id == message_id:
                    await self._replay(message)
                    return ReplayResponse(
                        success=True,
                        message_id=message_id,
                        message="Message requeued for processing",
                    )
                await message.nack(requeue=True)

        logger.warning("dead_letter_not_found message_id=%s", message_id)
        raise DeadLetterMessageNotFound(message_id)

    async def replay_all(self) -> ReplayAllResponse:
        """Replay every dead letter present when the scan starts."""

        replayed = 0
        async with self._scan_lock:
            depth = await self.bus.queue_depth(self.dead_letter_topic)
            for _ in range(depth):
                message = await self.bus.get(self.dead_letter_topic)
                if message is None:
                    break
                await self._replay(message)
                replayed += 1
        logger.info("dead_letters_replayed topic=%s count=%s", self.dead_letter_topic, replayed)
        return ReplayAllResponse(
            success=True,
            retried_count=replayed,
            message=f"{replayed} messages requeued for processing",
        )

    async def _replay(self, message: BusMessage) -> None:
        headers = {name: value for name, value in message.headers.items() if name not in DEATH_HEADERS}
        headers[REPLAYED_HEADER] = "true"
        headers[REPLAY_TIMESTAMP_HEADER] = utcnow_iso()
        await self.bus.publish(
            self.target_topic,
            message.body,
            key=message.key,
            headers=headers,
            message_id=message.message_id,
        )
        await message.ack()
        dlq_replayed_total.labels(service=self.service_name, topic=self.dead_letter_topic).inc()
        logger.info("dead_letter_replayed message_id=%s target=%s", message.message_id, self.target_topic)
        try:
            self.store.record_replay(message.message_id, datetime.now(timezone.utc))
        except Exception:
            logger.exception("dead_letter_replay_stamp_failed message_id=%s", message.message_id)
