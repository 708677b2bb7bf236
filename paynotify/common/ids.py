"""Prefixed identifiers (`pay_…`, `ntf_…`, `evt_…`)."""

from uuid import uuid4


PAYMENT_PREFIX = "pay"
NOTIFICATION_PREFIX = "ntf"
EVENT_PREFIX = "evt"


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def payment_id() -> str:
    return generate_id(PAYMENT_PREFIX)


def notification_id() -> str:
    return generate_id(NOTIFICATION_PREFIX)


def event_id() -> str:
    return generate_id(EVENT_PREFIX)
