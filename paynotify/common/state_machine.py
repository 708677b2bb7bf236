"""Notification state machine transitions enforced by the consumer."""

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"
FAILED = "FAILED"
RETRIED = "RETRIED"

STATUSES = (PENDING, PROCESSING, SENT, FAILED, RETRIED)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PROCESSING, FAILED},
    # In-process retries re-enter PROCESSING and bump `attempts` again.
    PROCESSING: {PROCESSING, SENT, FAILED},
    SENT: set(),
    # PROCESSING covers a redelivery that arrives after FAILED was committed.
    FAILED: {PENDING, RETRIED, PROCESSING},
    RETRIED: {PROCESSING, PENDING},
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
