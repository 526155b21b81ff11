"""
Notification Sink — fire-and-forget WhatsApp / push delivery.

Delivery never blocks or fails a core operation: `deliver()` catches every
sink error, logs it, and reports a boolean.

Sinks:
    WhatsAppSink  — POSTs {to, message} to the configured gateway webhook
    LoggingSink   — logs the message only (no gateway configured)
"""
import logging

import httpx

from config import settings

logger = logging.getLogger(__name__)


class NotificationSink:
    """Destination address + message body; subclasses implement send()."""

    async def send(self, destination: str, message: str) -> None:
        raise NotImplementedError


class LoggingSink(NotificationSink):
    async def send(self, destination: str, message: str) -> None:
        logger.info(f"[notify→{destination}] {message.splitlines()[0] if message else ''}")


class WhatsAppSink(NotificationSink):
    """Sends through the WhatsApp gateway webhook."""

    def __init__(self, webhook_url: str, api_token: str = "", timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.api_token = api_token
        self.timeout = timeout

    async def send(self, destination: str, message: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.webhook_url,
                json={"to": destination, "message": message},
                headers=headers,
            )
            response.raise_for_status()


async def deliver(sink: NotificationSink, destination: str | None, message: str) -> bool:
    """
    Best-effort send. Returns True when the sink accepted the message.

    A missing destination or any sink failure is logged and reported as False.
    """
    if not destination:
        logger.info("Notification skipped: no destination address")
        return False
    try:
        await sink.send(destination, message)
        return True
    except Exception as e:
        logger.warning(f"Notification to {destination} failed (ignored): {e}")
        return False


# Singleton sink instance
_sink: NotificationSink | None = None


def get_notification_sink() -> NotificationSink:
    """Sink configured from settings; LoggingSink when no webhook is set."""
    global _sink
    if _sink is None:
        if settings.whatsapp_webhook_url:
            _sink = WhatsAppSink(
                settings.whatsapp_webhook_url,
                api_token=settings.whatsapp_api_token,
                timeout=settings.notification_timeout_seconds,
            )
        else:
            _sink = LoggingSink()
    return _sink
