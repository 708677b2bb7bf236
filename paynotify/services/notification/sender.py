"""Simulated email provider with a failure toggle."""

import asyncio
import random
from datetime import datetime, timezone
from decimal import Decimal

from paynotify.common.errors import NotificationServiceUnavailable
from paynotify.common.logging import logger


# es-CO grouping: "." for thousands, "," for decimals.
CURRENCY_FORMATS = {
    "COP": "$ {}",
    "USD": "US$ {}",
}


def format_amount(amount: Decimal | str, currency: str = "COP") -> str:
    grouped = f"{Decimal(amount):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    template = CURRENCY_FORMATS.get(currency, f"{currency} {{}}")
    return template.format(grouped)


def confirmation_email(payment_id: str, amount: Decimal | str, currency: str) -> tuple[str, str]:
    subject = f"Payment confirmation {payment_id}"
    body = (
        f"Your payment of {format_amount(amount, currency)} was processed successfully. "
        f"Transaction ID: {payment_id}"
    )
    return subject, body


class EmailSender:
    def __init__(self, enabled: bool = True, latency_ms: tuple[int, int] = (100, 300)) -> None:
        self.enabled = enabled
        self.latency_ms = latency_ms

    def is_enabled(self) -> bool:
        return self.enabled

    def enable(self) -> None:
        self.enabled = True
        logger.info("email_sender_enabled")

    def disable(self) -> None:
        self.enabled = False
        logger.warning("email_sender_disabled")

    async def send(self, to: str, subject: str, body: str) -> dict:
        """Pretend to deliver one email; fails while the sender is disabled."""

        low, high = self.latency_ms
        if high > 0:
            await asyncio.sleep(random.randint(low, high) / 1000)
        if not self.enabled:
            logger.error("email_send_unavailable to=%s subject=%s", to, subject)
            raise NotificationServiceUnavailable("Email service is unavailable")
        logger.info("email_sent to=%s subject=%s", to, subject)
        return {
            "success": True,
            "to": to,
            "subject": subject,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }

    def get_status(self) -> dict:
        return {
            "service": "email",
            "enabled": self.enabled,
            "status": "operational" if self.enabled else "unavailable",
        }
