"""Payment admission: idempotency, concurrency, validation and lock timeouts."""

import asyncio
import json
from decimal import Decimal

import pytest

from paynotify.common.errors import LockAcquisitionTimeout, PaymentNotFound, PaymentValidationError
from paynotify.common.events import EVENT_TYPE_HEADER, MESSAGE_ID_HEADER, PAYMENT_SUCCESS
from paynotify.common.state_machine import PENDING
from paynotify.services.payments.service import PaymentService

TOPIC = "payments.events"


async def test_create_payment_persists_and_publishes(admit, bus, payment_store, notification_store):
    payment = await admit("key-1")

    assert payment.id.startswith("pay_")
    assert payment.amount == Decimal("150000.50")
    assert payment.status == "SUCCESS"
    assert payment_store.find_by_idempotency_key("key-1").id == payment.id

    notification = notification_store.find_by_payment_id(payment.id)
    assert notification.id.startswith("ntf_")
    assert notification.status == PENDING
    assert notification.attempts == 0
    assert notification.recipient == "buyer@example.com"

    [record] = bus.queues[TOPIC]
    event = json.loads(record.body)
    assert event["type"] == PAYMENT_SUCCESS
    assert event["id"].startswith("evt_")
    assert event["payload"] == {
        "payment_id": payment.id,
        "notification_id": notification.id,
        "amount": "150000.50",
        "currency": "COP",
        "account_id": "acc-001",
        "email": "buyer@example.com",
    }
    assert record.key == payment.id.encode()
    assert record.headers[MESSAGE_ID_HEADER] == event["id"]
    assert record.headers[EVENT_TYPE_HEADER] == PAYMENT_SUCCESS


async def test_repeated_key_returns_cached_representation(admit, bus, payment_store):
    first = await admit("key-1")
    second = await admit("key-1", amount=Decimal("1.00"))

    assert second == first
    assert second.model_dump(mode="json") == first.model_dump(mode="json")
    assert len(bus.published) == 1
    assert len(payment_store.find_by_account_id("acc-001")) == 1


async def test_repeated_key_after_cache_loss_returns_stored_payment(admit, bus, payment_store, redis_client):
    first = await admit("key-exp")
    await redis_client.delete("idempotency:key-exp")

    second = await admit("key-exp")

    assert second.id == first.id
    assert len(bus.published) == 1
    assert len(payment_store.find_by_account_id("acc-001")) == 1
    assert await redis_client.exists("idempotency:key-exp") == 1


async def test_concurrent_duplicates_create_one_payment(admit, bus, payment_store):
    results = await asyncio.gather(*(admit("race-key") for _ in range(5)))

    assert len({result.id for result in results}) == 1
    assert len(bus.published) == 1
    assert payment_store.count_by_account_id("acc-001") == 1


async def test_distinct_keys_create_distinct_payments(admit, bus):
    first = await admit("key-a")
    second = await admit("key-b")

    assert first.id != second.id
    assert len(bus.published) == 2


async def test_amount_is_quantized_and_currency_defaults(payment_service):
    payment = await payment_service.create_payment(
        amount="10.5",
        currency=None,
        account_id="acc-002",
        email="x@y.co",
        idempotency_key="key-q",
    )

    assert payment.amount == Decimal("10.50")
    assert payment.currency == "COP"
    assert payment.description is None


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"amount": 0}, "INVALID_AMOUNT"),
        ({"amount": Decimal("-5")}, "INVALID_AMOUNT"),
        ({"amount": Decimal("1.234")}, "INVALID_AMOUNT"),
        ({"amount": "abc"}, "INVALID_AMOUNT"),
        ({"currency": "EUR"}, "INVALID_CURRENCY"),
        ({"account_id": ""}, "INVALID_ACCOUNT"),
        ({"account_id": "a" * 51}, "INVALID_ACCOUNT"),
        ({"email": "not-an-email"}, "INVALID_EMAIL"),
        ({"email": "a@b"}, "INVALID_EMAIL"),
        ({"description": "d" * 256}, "INVALID_DESCRIPTION"),
        ({"idempotency_key": ""}, "IDEMPOTENCY_KEY_REQUIRED"),
        ({"idempotency_key": "k" * 256}, "IDEMPOTENCY_KEY_REQUIRED"),
    ],
)
async def test_invalid_input_is_rejected_before_any_io(admit, bus, redis_client, overrides, code):
    with pytest.raises(PaymentValidationError) as exc_info:
        await admit(**overrides)

    assert exc_info.value.code == code
    assert exc_info.value.to_dict()["error"]["details"]
    assert bus.published == []
    assert await redis_client.keys("*") == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": Decimal("0.01")},
        {"account_id": "a" * 50},
        {"description": "d" * 255},
        {"idempotency_key": "k" * 255},
        {"currency": "USD"},
    ],
)
async def test_boundary_values_are_accepted(admit, overrides):
    fields = {"idempotency_key": "boundary-key", **overrides}

    payment = await admit(**fields)

    assert payment.id.startswith("pay_")


async def test_lock_timeout_creates_nothing(payment_store, notification_store, locks, bus):
    service = PaymentService(payment_store, notification_store, locks, bus, topic=TOPIC, lock_max_wait_ms=50)
    await locks.acquire_lock("payment:held-key", ttl_ms=10_000)

    with pytest.raises(LockAcquisitionTimeout):
        await service.create_payment(
            amount=Decimal("5.00"),
            account_id="acc-001",
            email="buyer@example.com",
            idempotency_key="held-key",
        )

    assert payment_store.find_by_idempotency_key("held-key") is None
    assert bus.published == []


async def test_publish_failure_propagates_after_persisting(payment_store, notification_store, locks, bus):
    async def broken_publish(*args, **kwargs):
        raise ConnectionError("broker down")

    bus.publish = broken_publish
    service = PaymentService(payment_store, notification_store, locks, bus, topic=TOPIC)

    with pytest.raises(ConnectionError):
        await service.create_payment(
            amount=Decimal("5.00"),
            account_id="acc-001",
            email="buyer@example.com",
            idempotency_key="no-broker",
        )

    assert payment_store.find_by_idempotency_key("no-broker") is not None
    assert await locks.get_idempotency_result("no-broker") is None
    assert await locks.acquire_lock("payment:no-broker")


async def test_get_payment_includes_notification(admit, payment_service):
    created = await admit("key-1")

    detail = payment_service.get_payment(created.id)

    assert detail.id == created.id
    assert detail.notification is not None
    assert detail.notification.payment_id == created.id
    assert detail.notification.status == PENDING


async def test_get_unknown_payment_raises(payment_service):
    with pytest.raises(PaymentNotFound) as exc_info:
        payment_service.get_payment("pay_missing")

    assert exc_info.value.status_code == 404


async def test_list_payments_pages_by_account(admit, payment_service):
    for i in range(3):
        await admit(f"key-{i}")
    await admit("other", account_id="acc-999")

    page = payment_service.list_payments("acc-001", limit=2, offset=0)

    assert len(page.payments) == 2
    assert page.pagination.total == 3
    assert page.pagination.has_more
    assert payment_service.list_payments("acc-001", limit=2, offset=2).pagination.has_more is False
