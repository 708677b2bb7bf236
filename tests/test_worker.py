"""Notification worker app: probes plus the background consumer loop."""

import time
from decimal import Decimal
from functools import partial

import pytest
from fastapi.testclient import TestClient

from paynotify.services.notification.main import create_app


@pytest.fixture
def worker(test_settings, app_runtime_factory):
    with TestClient(create_app(test_settings, app_runtime_factory)) as client:
        yield client


def test_worker_probes(worker):
    health = worker.get("/health")

    assert health.status_code == 200
    assert health.json()["ok"] is True
    assert worker.get("/metrics").status_code == 200


def test_worker_consumes_published_events(worker):
    runtime = worker.app.state.runtime
    payment = worker.portal.call(
        partial(
            runtime.payments.create_payment,
            amount=Decimal("42.00"),
            currency="USD",
            account_id="acc-w",
            email="worker@example.com",
            idempotency_key="worker-key",
        )
    )

    async def notification_status():
        return runtime.notification_store.find_by_payment_id(payment.id).status

    deadline = time.monotonic() + 5
    status = None
    while time.monotonic() < deadline:
        status = worker.portal.call(notification_status)
        if status == "SENT":
            break
        time.sleep(0.05)

    assert status == "SENT"
