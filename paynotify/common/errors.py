"""Domain error taxonomy.

Every error carries a stable `code` and an HTTP-equivalent `status_code`;
the API boundary renders them as `{"success": false, "error": {...}}` and
the consumer treats them as terminal for the current message.
"""


class DomainError(Exception):
    """Base class for value-like domain failures."""

    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "error": {"code": self.code, "message": self.message}}


class PaymentValidationError(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str | None = None, details: list[dict] | None = None) -> None:
        super().__init__(message, code)
        self.details = details or []

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.details:
            body["error"]["details"] = self.details
        return body


class PaymentNotFound(DomainError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, payment_id: str) -> None:
        super().__init__(f"payment not found: {payment_id}")
        self.payment_id = payment_id


class LockAcquisitionTimeout(DomainError):
    """Admission could not obtain mutual exclusion in time; safe for the caller to retry."""

    code = "LOCK_TIMEOUT"
    status_code = 409

    def __init__(self, lock_name: str, max_wait_ms: int) -> None:
        super().__init__(f"could not acquire lock {lock_name} within {max_wait_ms}ms")
        self.lock_name = lock_name


class NotificationNotFound(DomainError):
    code = "NOTIFICATION_NOT_FOUND"
    status_code = 404

    def __init__(self, notification_id: str) -> None:
        super().__init__(f"notification not found: {notification_id}")
        self.notification_id = notification_id


class NotificationServiceUnavailable(DomainError):
    code = "NOTIFICATION_SERVICE_UNAVAILABLE"
    status_code = 503


class DeadLetterMessageNotFound(DomainError):
    code = "DLQ_MESSAGE_NOT_FOUND"
    status_code = 404

    def __init__(self, message_id: str) -> None:
        super().__init__(f"message not found in dead-letter queue: {message_id}")
        self.message_id = message_id
